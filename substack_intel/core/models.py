"""
Data models and type definitions for the Substack Intelligence pipeline.

Provides type-safe data structures with validation for values passed
between the connector, normalizer, extractor, resolver and orchestrator.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import clamp_lookback_days


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def enum_value(value: Any) -> Any:
    """Plain value for enum members, unchanged otherwise."""
    return value.value if isinstance(value, Enum) else value


class EmailStatus(str, Enum):
    """Processing status of a stored email."""

    UNPROCESSED = "unprocessed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Forward edges plus the two recovery edges used by operators and
# stuck-run recovery.
EMAIL_TRANSITIONS: Dict[EmailStatus, FrozenSet[EmailStatus]] = {
    EmailStatus.UNPROCESSED: frozenset({EmailStatus.PROCESSING}),
    EmailStatus.PROCESSING: frozenset(
        {EmailStatus.COMPLETED, EmailStatus.FAILED, EmailStatus.UNPROCESSED}
    ),
    EmailStatus.COMPLETED: frozenset(),
    EmailStatus.FAILED: frozenset({EmailStatus.UNPROCESSED}),
}


def can_transition(current: str, target: str) -> bool:
    """Return True when an email may move from ``current`` to ``target``."""
    try:
        src = EmailStatus(current)
        dst = EmailStatus(target)
    except ValueError:
        return False
    return dst in EMAIL_TRANSITIONS[src]


def transition_sources(target: EmailStatus) -> FrozenSet[EmailStatus]:
    """Statuses an email may leave to reach ``target``."""
    return frozenset(src for src, targets in EMAIL_TRANSITIONS.items() if target in targets)


class FundingStatus(str, Enum):
    UNKNOWN = "unknown"
    SEED = "seed"
    SERIES_A = "series-a"
    SERIES_B = "series-b"
    SERIES_C = "series-c"
    PUBLIC = "public"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class EnrichmentStatus(str, Enum):
    PENDING = "pending"
    ENRICHED = "enriched"
    FAILED = "failed"


class EmbeddingJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Status of a whole pipeline run."""

    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


# Mailbox and content models


class RawMessage(BaseModel):
    """One message as returned by the mailbox provider."""

    message_id: str = Field(..., min_length=1)
    subject: str = ""
    sender: str = ""
    body: str = ""
    is_html: bool = True
    received_at: datetime = Field(default_factory=utcnow)
    thread_id: Optional[str] = None
    rfc822_message_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class NormalizedContent(BaseModel):
    """Cleaned text plus the newsletter it came from."""

    clean_text: str
    newsletter_name: str = "Unknown"

    model_config = ConfigDict(frozen=True)


# Extraction models


class ExtractionCandidate(BaseModel):
    """An unresolved company mention proposed by the LLM."""

    name: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    website: Optional[str] = None
    funding_status: Optional[FundingStatus] = None
    industry: List[str] = Field(default_factory=list)
    sentiment: Sentiment = Sentiment.NEUTRAL
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    context: str = ""

    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("sentiment", mode="before")
    @classmethod
    def coerce_sentiment(cls, v):
        if isinstance(v, Sentiment):
            return v
        text = str(v or "").strip().lower()
        return text if text in {s.value for s in Sentiment} else Sentiment.NEUTRAL

    @field_validator("confidence", mode="before")
    @classmethod
    def coerce_confidence(cls, v):
        if v is None or v == "":
            return 0.0
        if isinstance(v, str):
            text = v.strip()
            percent = text.endswith("%")
            value = float(text.rstrip("%").strip())
            return value / 100.0 if percent else value
        value = float(v)
        # Some responses use a 0-100 scale
        if 1.0 < value <= 100.0:
            value = value / 100.0
        return value

    @field_validator("context", mode="before")
    @classmethod
    def clip_context(cls, v):
        return (v or "").strip()[:500]


class ExtractionMetadata(BaseModel):
    model: Optional[str] = None
    processing_ms: int = 0
    token_count: Optional[int] = None
    raw_candidates: int = 0
    dropped_candidates: int = 0
    parse_failed: bool = False
    cached: bool = False
    verified: bool = False


class ExtractionResult(BaseModel):
    """Filtered candidates for one email."""

    candidates: List[ExtractionCandidate] = Field(default_factory=list)
    metadata: ExtractionMetadata = Field(default_factory=ExtractionMetadata)

    def __len__(self) -> int:
        return len(self.candidates)

    @property
    def is_empty(self) -> bool:
        return not self.candidates


class ResolutionResult(BaseModel):
    """Outcome of resolving one candidate against the company table."""

    company_id: int
    mention_id: int
    normalized_name: str
    is_new_company: bool = False
    mention_created: bool = True


# Progress, triggers and sessions


class ProgressEvent(BaseModel):
    """Update pushed to the dashboard progress channel."""

    status: str = "running"
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    emails_processed: int = Field(default=0, alias="emailsProcessed")
    emails_failed: int = Field(default=0, alias="emailsFailed")
    companies_extracted: int = Field(default=0, alias="companiesExtracted")
    current_email_subject: Optional[str] = Field(default=None, alias="currentEmailSubject")
    last_error: Optional[str] = Field(default=None, alias="lastError")
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TriggerRequest(BaseModel):
    """Options for one pipeline run; an unset lookback uses PIPELINE_LOOKBACK_DAYS."""

    force_refresh: bool = Field(default=False, alias="forceRefresh")
    lookback_days: Optional[int] = Field(default=None, alias="lookbackDays")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("lookback_days", mode="before")
    @classmethod
    def clamp_days(cls, v):
        return None if v is None else clamp_lookback_days(v)


class Session(BaseModel):
    """Authenticated caller; ``user_id`` scopes the tenant."""

    user_id: str = Field(..., min_length=1)
    permissions: List[str] = Field(default_factory=list)

    def can(self, permission: str) -> bool:
        return "*" in self.permissions or permission in self.permissions


class PipelineRunResult(BaseModel):
    """Result of one orchestrator run."""

    run_id: Optional[int] = None
    trigger: TriggerType = TriggerType.MANUAL
    status: RunStatus = RunStatus.RUNNING
    tenant_id: str = "default"

    # Timing
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    # Results
    emails_fetched: int = Field(default=0, ge=0)
    emails_processed: int = Field(default=0, ge=0)
    emails_completed: int = Field(default=0, ge=0)
    emails_failed: int = Field(default=0, ge=0)
    companies_extracted: int = Field(default=0, ge=0)
    new_companies: int = Field(default=0, ge=0)

    # Error tracking
    error_message: Optional[str] = None
    error_details: Dict[str, Any] = Field(default_factory=dict)
    skipped_reason: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    def finish(self, status: RunStatus, error_message: Optional[str] = None) -> "PipelineRunResult":
        self.status = status
        self.completed_at = utcnow()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()
        if error_message:
            self.error_message = error_message
        return self
