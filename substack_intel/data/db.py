"""Database models and helpers for the pipeline store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Text,
    TypeDecorator,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine

from substack_intel.core.models import (
    EmailStatus,
    EmbeddingJobStatus,
    EnrichmentStatus,
    FundingStatus,
    utcnow,
)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every dialect.

    SQLite keeps no offset, so values are stored as UTC wall time and get
    their tzinfo back on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class EmailRecord(SQLModel, table=True):
    """One fetched newsletter email and its processing state."""

    __tablename__ = "emails"
    __table_args__ = (UniqueConstraint("tenant_id", "message_id", name="uq_emails_tenant_message"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    message_id: str
    subject: str = ""
    sender: str = ""
    newsletter_name: str = "Unknown"
    received_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
    raw_content: Optional[str] = Field(default=None, sa_column=Column(Text))
    clean_text: Optional[str] = Field(default=None, sa_column=Column(Text))
    status: str = Field(default=EmailStatus.UNPROCESSED.value, index=True)
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    processing_started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    processed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class CompanyRecord(SQLModel, table=True):
    """Deduplicated company keyed by normalized name within a tenant."""

    __tablename__ = "companies"
    __table_args__ = (
        UniqueConstraint("tenant_id", "normalized_name", name="uq_companies_tenant_name"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    name: str
    normalized_name: str = Field(index=True)
    description: Optional[str] = Field(default=None, sa_column=Column(Text))
    website: Optional[str] = None
    funding_status: str = Field(default=FundingStatus.UNKNOWN.value)
    industry: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    mention_count: int = 1
    newsletter_diversity: int = 1
    first_seen_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    last_updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    enrichment_status: str = Field(default=EnrichmentStatus.PENDING.value)
    embedding: Optional[List[float]] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))


class MentionRecord(SQLModel, table=True):
    """One (email, company) occurrence."""

    __tablename__ = "company_mentions"
    __table_args__ = (UniqueConstraint("email_id", "company_id", name="uq_mentions_email_company"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    email_id: int = Field(
        sa_column=Column(
            Integer, ForeignKey("emails.id", ondelete="CASCADE"), nullable=False, index=True
        )
    )
    company_id: int = Field(
        sa_column=Column(
            Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
        )
    )
    context: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    sentiment: str = "neutral"
    confidence: float = 0.0
    newsletter_name: str = "Unknown"
    extracted_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class PipelineUpdateRecord(SQLModel, table=True):
    """Progress event waiting to be polled by the dashboard."""

    __tablename__ = "pipeline_updates"

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    update_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    consumed: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class PipelineLockRecord(SQLModel, table=True):
    """At most one active pipeline run per tenant."""

    __tablename__ = "pipeline_locks"

    tenant_id: str = Field(primary_key=True)
    owner: str
    acquired_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    heartbeat_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    expires_at: datetime = Field(sa_type=UTCDateTime)


class PipelineRunRecord(SQLModel, table=True):
    """History of orchestrator runs."""

    __tablename__ = "pipeline_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    trigger: str
    status: str
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    emails_fetched: int = 0
    emails_processed: int = 0
    emails_completed: int = 0
    emails_failed: int = 0
    companies_extracted: int = 0
    new_companies: int = 0
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))


class EmbeddingJobRecord(SQLModel, table=True):
    """Queued embedding backfill for one company."""

    __tablename__ = "embedding_queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("companies.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        )
    )
    status: str = Field(default=EmbeddingJobStatus.PENDING.value, index=True)
    attempts: int = 0
    error: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine_for_url(url: str, echo: bool = False) -> Engine:
    """Return an engine for ``url``; SQLite engines enforce foreign keys."""
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # Every session must see the same in-memory database
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


_engines: Dict[str, Engine] = {}


def get_engine(url: str, echo: bool = False) -> Engine:
    """Process-wide engine for ``url`` with the schema created."""
    engine = _engines.get(url)
    if engine is None:
        engine = create_engine_for_url(url, echo=echo)
        init_db(engine)
        _engines[url] = engine
    return engine


def init_db(engine: Engine) -> None:
    """Ensure all tables exist."""
    SQLModel.metadata.create_all(engine)


def get_session(engine: Engine) -> Session:
    """Create a session bound to the shared engine."""
    return Session(engine)


def upsert_insert(session: Session, model):
    """Dialect-specific INSERT supporting ``on_conflict_do_*``."""
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(model)
    if dialect == "postgresql":
        return postgresql.insert(model)
    raise NotImplementedError(f"Atomic upsert not supported for dialect '{dialect}'")
