import pymssql
from typing import Optional
from datetime import datetime
from src.config.settings import Settings
from src.models.errors import FatalConfigError, TransientProviderError
from src.models.schemas import RawFeedback
from src.sources.base import FeedbackSource, FetchResult, SourceKind


class SQLServerFeedbackSource(FeedbackSource):
    """Pulls feedback rows from the SQL Server feedback table."""

    kind = SourceKind.SQL_SERVER

    def __init__(self, config: Settings, source_system: str = "sql_server", page_size: Optional[int] = None):
        self.config = config
        self.source_system = source_system
        self.page_size = page_size or config.batch_size
        self.conn = None

    def authenticate(self):
        """Establish database connection."""
        if not self.config.sql_server_host or not self.config.sql_server_username:
            raise FatalConfigError("SQL Server source credentials are not configured")
        try:
            self.conn = pymssql.connect(
                server=self.config.sql_server_host,
                port=self.config.sql_server_port,
                user=self.config.sql_server_username,
                password=self.config.sql_server_password,
                database=self.config.sql_server_database,
                login_timeout=int(self.config.source_timeout_seconds),
                timeout=int(self.config.source_timeout_seconds),
            )
        except pymssql.OperationalError as e:
            raise TransientProviderError(f"SQL Server connection failed: {e}") from e
        return self.conn

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def fetch_since(self, cursor: Optional[str]) -> FetchResult:
        """
        Fetch one page of feedback created after ``cursor``.

        Args:
            cursor: ISO-8601 created_at of the last record already consumed, or None

        Returns:
            FetchResult whose next_cursor is the created_at of the last row returned
        """
        if not self.conn:
            self.authenticate()

        query = f"""
            SELECT TOP {int(self.page_size)} feedback_id, feedback_text, customer_name, created_at, rating
            FROM customer_insights.feedback
            WHERE created_at IS NOT NULL
              AND feedback_source = %s
        """
        params = [self.source_system]
        if cursor:
            query += " AND created_at > %s"
            params.append(datetime.fromisoformat(cursor))
        query += " ORDER BY created_at"

        try:
            with self.conn.cursor(as_dict=True) as db_cursor:
                db_cursor.execute(query, tuple(params))
                rows = db_cursor.fetchall()
        except pymssql.OperationalError as e:
            raise TransientProviderError(f"SQL Server query failed: {e}") from e

        records = [
            RawFeedback(
                external_id=str(row['feedback_id']) if row.get('feedback_id') is not None else None,
                content=row.get('feedback_text'),
                author=row.get('customer_name'),
                created_at=row['created_at'],
                rating=row.get('rating'),
            )
            for row in rows
        ]
        next_cursor = records[-1].created_at.isoformat() if records else cursor
        return FetchResult(records=records, next_cursor=next_cursor)

    def validate_webhook(self, signature: str, payload: bytes) -> bool:
        # Pull-only source
        return False
