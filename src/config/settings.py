# src/config/settings.py
from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Dict, List, Tuple

# Get project root (2 levels up from this file)
PROJECT_ROOT = Path(__file__).parent.parent.parent

class Settings(BaseSettings):
    # OpenAI
    openai_api_key: str
    openai_embedding_model: str = "text-embedding-3-small"
    openai_model_cheap: str = "gpt-5-nano"
    openai_model_mid: str = "gpt-5-mini"
    openai_model_premium: str = "gpt-5"

    # USD per 1k tokens (input + output), by tier
    price_per_1k_cheap: float = 0.0005
    price_per_1k_mid: float = 0.002
    price_per_1k_premium: float = 0.01

    # PostgreSQL (canonical store)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_database: str = "feedback_pipeline"
    postgres_username: str = "postgres"
    postgres_password: str = ""
    postgres_sslmode: str = "require"
    postgres_pool_size: int = 10

    # SQL Server feedback source
    sql_server_host: str = ""
    sql_server_port: int = 1433
    sql_server_database: str = ""
    sql_server_username: str = ""
    sql_server_password: str = ""

    # Webhook source
    webhook_secret: str = ""

    # Jira target
    jira_base_url: str = ""
    jira_username: str = ""
    jira_api_token: str = ""
    jira_project_key: str = ""
    jira_issue_type: str = "Story"

    # Ingestion
    max_content_length: int = 4000
    default_rating_scale: Tuple[float, float] = (1.0, 5.0)
    rating_scales: Dict[str, Tuple[float, float]] = {"nps": (0.0, 10.0), "sentiment": (-1.0, 1.0)}

    # Deduplication
    embedding_dimension: int = 1536
    similarity_threshold: float = 0.92

    # LLM router
    complexity_mid_threshold: float = 0.35
    complexity_premium_threshold: float = 0.70
    cache_ttl_hours: int = 24
    llm_max_attempts: int = 3
    retry_base_delay: float = 1.0
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: int = 30

    # Priority scoring
    priority_weight_size: float = 1.0
    priority_weight_sentiment: float = 1.0
    priority_weight_recency: float = 1.0
    recency_half_life_days: float = 14.0
    priority_medium_threshold: float = 1.0
    priority_high_threshold: float = 2.0

    # Requirement synthesis
    synthesis_style: str = "user-story"
    synthesis_max_acceptance_criteria: int = 5
    synthesis_tone: str = "neutral"
    synthesis_batch_size: int = 25

    # Sync
    sync_targets: List[str] = ["jira"]
    sync_max_attempts: int = 5

    # Concurrency
    max_workers: int = 4
    source_requests_per_second: float = 5.0
    provider_requests_per_second: float = 3.0
    rate_limit_burst: int = 5
    rate_limit_wait_seconds: float = 10.0
    job_max_attempts: int = 5
    queue_poll_seconds: float = 1.0

    # Per-call timeouts (seconds)
    llm_timeout_seconds: float = 60.0
    embedding_timeout_seconds: float = 30.0
    pm_tool_timeout_seconds: float = 30.0
    source_timeout_seconds: float = 30.0

    # Pipeline config
    batch_size: int = 100

    class Config:
        env_file = str(PROJECT_ROOT / ".env")
        case_sensitive = False
