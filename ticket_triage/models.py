"""
Data models for the ticket triage pipeline.

Uses Pydantic for validation and serialization. Records handed between
pipeline steps are frozen; tickets stay mutable because the orchestrator
and the human-side actions update them in place.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate an opaque record identifier."""
    return uuid4().hex


class Category(str, Enum):
    """Ticket and article categories."""

    BILLING = "billing"
    TECH = "tech"
    SHIPPING = "shipping"
    OTHER = "other"


class TicketStatus(str, Enum):
    """Lifecycle states of a ticket."""

    OPEN = "open"
    TRIAGED = "triaged"
    WAITING_HUMAN = "waiting_human"
    RESOLVED = "resolved"
    CLOSED = "closed"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ArticleStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"


class AuditActor(str, Enum):
    SYSTEM = "system"
    AGENT = "agent"
    USER = "user"


class AuditAction(str, Enum):
    """Closed vocabulary of audit actions."""

    TICKET_CREATED = "TICKET_CREATED"
    AGENT_CLASSIFIED = "AGENT_CLASSIFIED"
    KB_RETRIEVED = "KB_RETRIEVED"
    DRAFT_GENERATED = "DRAFT_GENERATED"
    DECISION_MADE = "DECISION_MADE"
    AUTO_CLOSED = "AUTO_CLOSED"
    ASSIGNED_TO_HUMAN = "ASSIGNED_TO_HUMAN"
    REPLY_SENT = "REPLY_SENT"
    STATUS_CHANGED = "STATUS_CHANGED"
    TICKET_RESOLVED = "TICKET_RESOLVED"
    TICKET_REOPENED = "TICKET_REOPENED"
    TRIAGE_FAILED = "TRIAGE_FAILED"


class Reply(BaseModel):
    """A single reply on a ticket. ``author`` is None for system replies."""

    author: Optional[str] = Field(default=None, description="Author id, None for system")
    content: str = Field(..., max_length=5000)
    is_internal: bool = Field(default=False)
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class Ticket(BaseModel):
    """
    A support ticket.

    Attributes:
        id: Unique ticket identifier
        title: Short summary written by the requester
        description: Full problem description
        category: Current category (overwritten by triage)
        status: Lifecycle state, see ``ticket_triage.tickets``
        replies: Ordered conversation on the ticket
        suggestion_ref: Id of the most recent agent suggestion
    """

    id: str = Field(default_factory=new_id)
    title: str = Field(..., max_length=200)
    description: str = Field(..., max_length=5000)
    category: Category = Field(default=Category.OTHER)
    status: TicketStatus = Field(default=TicketStatus.OPEN)
    priority: Priority = Field(default=Priority.MEDIUM)
    created_by: Optional[str] = Field(default=None)
    replies: list[Reply] = Field(default_factory=list)
    suggestion_ref: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    model_config = {"frozen": False}

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        return v.strip()

    def classification_text(self) -> str:
        """Text handed to the classifier and the drafter."""
        return f"{self.title}\n\n{self.description}"

    def search_text(self) -> str:
        """Text used for knowledge-base retrieval."""
        return f"{self.title} {self.description}"


class Article(BaseModel):
    """Knowledge-base article. ``relevance_score`` is set on retrieval results."""

    id: str = Field(default_factory=new_id)
    title: str = Field(..., max_length=200)
    body: str = Field(..., max_length=10000)
    tags: list[str] = Field(default_factory=list)
    status: ArticleStatus = Field(default=ArticleStatus.DRAFT)
    category: Category = Field(default=Category.OTHER)
    updated_at: datetime = Field(default_factory=utcnow)
    relevance_score: Optional[float] = None

    model_config = {"frozen": True}

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: list[str]) -> list[str]:
        """Tags are stored trimmed and lowercased."""
        return [tag.strip().lower() for tag in v if tag and tag.strip()]


class ModelInfo(BaseModel):
    """Which provider and model produced a result, and how long it took."""

    provider: str = Field(default="stub")
    model: str = Field(default="deterministic-v1")
    prompt_version: str = Field(default="1.0.0")
    latency_ms: int = Field(default=0, ge=0)
    matched_keywords: Optional[list[str]] = None

    model_config = {"frozen": True}


class Classification(BaseModel):
    """Result of classifying ticket text."""

    predicted_category: Category
    confidence: float = Field(..., ge=0.0, le=1.0)
    model_info: ModelInfo = Field(default_factory=ModelInfo)

    model_config = {"frozen": True}


class DraftResult(BaseModel):
    """Drafted reply plus the ids of the articles it cites."""

    draft_reply: str
    citations: list[str] = Field(default_factory=list)
    model_info: ModelInfo = Field(default_factory=ModelInfo)

    model_config = {"frozen": True}


class Decision(BaseModel):
    """Auto-close vs. handoff decision."""

    auto_closed: bool
    confidence: float
    threshold: float
    auto_close_enabled: bool
    reasoning: str
    error: Optional[str] = None

    model_config = {"frozen": True}


DEFAULT_CATEGORY_THRESHOLDS: dict[Category, float] = {
    Category.BILLING: 0.75,
    Category.TECH: 0.80,
    Category.SHIPPING: 0.70,
    Category.OTHER: 0.85,
}


class TriageConfig(BaseModel):
    """
    Operator-tunable triage policy.

    A frozen snapshot of this model is captured once per triage run.
    ``category_thresholds`` is stored and validated but the decision policy
    compares against ``confidence_threshold`` only.
    """

    auto_close_enabled: bool = Field(default=True)
    confidence_threshold: float = Field(default=0.78, ge=0.0, le=1.0)
    category_thresholds: dict[Category, float] = Field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_THRESHOLDS)
    )
    sla_hours: int = Field(default=24, ge=1)

    model_config = {"frozen": True}

    @field_validator("category_thresholds")
    @classmethod
    def validate_thresholds(cls, v: dict[Category, float]) -> dict[Category, float]:
        """Fill missing categories with defaults and bound every value."""
        merged = dict(DEFAULT_CATEGORY_THRESHOLDS)
        merged.update(v)
        for category, threshold in merged.items():
            if not 0.0 <= threshold <= 1.0:
                raise ValueError(
                    f"Threshold for {category.value} must be between 0 and 1"
                )
        return merged


class AgentSuggestion(BaseModel):
    """
    Suggestion produced by one triage run.

    ``approved``/``approved_by``/``approved_at`` are only written by human
    review.
    """

    id: str = Field(default_factory=new_id)
    ticket_id: str
    trace_id: str
    predicted_category: Category
    article_ids: list[str] = Field(default_factory=list)
    draft_reply: str = Field(..., max_length=5000)
    confidence: float = Field(..., ge=0.0, le=1.0)
    auto_closed: bool = Field(default=False)
    model_info: ModelInfo = Field(default_factory=ModelInfo)
    approved: bool = Field(default=False)
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class AuditLogEntry(BaseModel):
    """Append-only audit record, correlated by ``trace_id``."""

    id: str = Field(default_factory=new_id)
    ticket_id: str
    trace_id: str
    actor: AuditActor = Field(default=AuditActor.SYSTEM)
    actor_id: Optional[str] = None
    action: AuditAction
    meta: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class TriageResult(BaseModel):
    """What ``TriageOrchestrator.triage`` returns to its caller."""

    ticket_id: str
    trace_id: str
    classification: Classification
    retrieved_articles: list[Article] = Field(default_factory=list)
    draft: DraftResult
    decision: Decision
    suggestion_id: str

    model_config = {"frozen": True}
