from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime, timezone
from typing import Optional, List, Set, Dict, Any, Literal
from enum import Enum
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def feedback_item_id(workspace_id: str, source_system: str, external_id: str) -> str:
    """Deterministic item id for a (workspace, source, external id) triple."""
    return uuid.uuid5(uuid.NAMESPACE_URL, f"{workspace_id}/{source_system}/{external_id}").hex


class Tier(str, Enum):
    CHEAP = "cheap"
    MID = "mid"
    PREMIUM = "premium"


# Cheapest first; the router falls back leftwards.
TIER_ORDER = [Tier.CHEAP, Tier.MID, Tier.PREMIUM]


class TaskKind(str, Enum):
    FEEDBACK_ANALYSIS = "feedbackAnalysis"
    REQUIREMENT_SYNTHESIS = "requirementSynthesis"


class RequirementStatus(str, Enum):
    DRAFT = "draft"
    REVIEW = "review"
    SYNTHESIZED = "synthesized"
    EXPORTED = "exported"


class SyncState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PriorityBucket(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Stage(str, Enum):
    INGESTION = "ingestion"
    EMBEDDING = "embedding"
    DEDUP = "dedup"
    ANALYSIS = "analysis"
    SYNTHESIS = "synthesis"
    SYNC = "sync"


class TicketQueue(str, Enum):
    MANUAL_REVIEW = "manual_review"
    OPERATOR = "operator"


class RawFeedback(BaseModel):
    """Feedback record as delivered by a source connector."""
    external_id: Optional[str] = None
    content: Optional[str] = None
    author: Optional[str] = None
    created_at: datetime
    rating: Optional[float] = None


class FeedbackItem(BaseModel):
    """Canonical, normalized customer feedback item."""
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    id: str
    workspace_id: str
    source_system: str
    external_id: str
    content: str
    author: Optional[str] = None
    created_at: datetime
    sentiment: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    embedding_id: Optional[str] = None
    embedding_stale: bool = True
    content_hash: str
    updated_at: datetime = Field(default_factory=utcnow)


class EmbeddingVector(BaseModel):
    """Embedding vector for a feedback item."""
    id: str = Field(default_factory=new_id)
    feedback_item_id: str
    vector: List[float] = Field(..., min_length=1)
    model: str
    content_hash: str
    computed_at: datetime = Field(default_factory=utcnow)


class Cluster(BaseModel):
    """Set of feedback items judged semantically duplicate."""
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    id: str = Field(default_factory=new_id)
    workspace_id: str
    representative_item_id: Optional[str] = None
    member_item_ids: Set[str] = Field(default_factory=set)
    # item id -> id of the embedding the item was placed with
    member_embedding_ids: Dict[str, str] = Field(default_factory=dict)
    centroid: Optional[List[float]] = None
    priority_score: float = 0.0
    priority_bucket: PriorityBucket = PriorityBucket.LOW
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AnalysisResult(BaseModel):
    """Model analysis of a cluster. Superseded results are kept with active=False."""
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    id: str = Field(default_factory=new_id)
    cluster_id: Optional[str] = None
    tier: Tier
    sentiment: float = Field(..., ge=-1.0, le=1.0)
    themes: Set[str] = Field(default_factory=set)
    cache_key: str
    cost: float = Field(default=0.0, ge=0.0)
    cache_hit: bool = False
    active: bool = True
    computed_at: datetime = Field(default_factory=utcnow)


class RequirementExport(BaseModel):
    """Literal JSON shape consumed by external PM tools."""
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    title: str
    user_story: str = Field(..., alias="userStory")
    acceptance_criteria: List[str] = Field(..., alias="acceptanceCriteria", min_length=1)
    priority: PriorityBucket
    source_feedback_ids: List[str] = Field(..., alias="sourceFeedbackIds", min_length=1)


class Requirement(BaseModel):
    """Structured requirement synthesized from a cluster."""
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    id: str = Field(default_factory=new_id)
    cluster_id: str
    workspace_id: str
    title: str = ""
    user_story: str = ""
    acceptance_criteria: List[str] = Field(default_factory=list)
    priority_score: float = 0.0
    priority_bucket: PriorityBucket = PriorityBucket.LOW
    source_feedback_ids: Set[str] = Field(..., min_length=1)
    status: RequirementStatus = RequirementStatus.DRAFT
    failure_reason: Optional[str] = None
    superseded_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_export(self) -> Dict[str, Any]:
        """Render the external export JSON."""
        export = RequirementExport(
            title=self.title,
            user_story=self.user_story,
            acceptance_criteria=list(self.acceptance_criteria),
            priority=self.priority_bucket,
            source_feedback_ids=sorted(self.source_feedback_ids),
        )
        return export.model_dump(by_alias=True)


class SyncRecord(BaseModel):
    """Outbound push of a requirement to one target system."""
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    id: str = Field(default_factory=new_id)
    requirement_id: str
    target_system: str
    idempotency_key: str
    external_ref: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    attempt_count: int = 0
    state: SyncState = SyncState.PENDING
    failure_reason: Optional[str] = None


class CostEntry(BaseModel):
    """Cumulative model spend for one workspace and billing period."""
    workspace_id: str
    period: str
    cost: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    calls: int = 0


class StageJob(BaseModel):
    """Queued message for one pipeline stage. Payload carries entity ids only."""
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    id: str = Field(default_factory=new_id)
    stage: Stage
    workspace_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    available_at: datetime = Field(default_factory=utcnow)


class OperatorTicket(BaseModel):
    """Entry in the manual-review or operator queue."""
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    id: str = Field(default_factory=new_id)
    queue: TicketQueue
    entity_type: str
    entity_id: str
    workspace_id: str
    reason: str
    created_at: datetime = Field(default_factory=utcnow)


class SynthesisTemplate(BaseModel):
    """Prompt template options for requirement synthesis."""
    style: Literal["user-story", "bug-report"] = "user-story"
    max_acceptance_criteria: int = Field(default=5, ge=1)
    tone: str = "neutral"
