import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TypedDict, Optional, List, Dict, Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Stage(str, Enum):
    NEW = "NEW"
    QUALIFYING = "QUALIFYING"
    HOT_ENGAGED = "HOT_ENGAGED"
    WARM_NURTURING = "WARM_NURTURING"
    COLD_ARCHIVED = "COLD_ARCHIVED"
    MEETING_SCHEDULED = "MEETING_SCHEDULED"
    PROPOSAL_SENT = "PROPOSAL_SENT"
    NEGOTIATION = "NEGOTIATION"
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"
    DISQUALIFIED = "DISQUALIFIED"


# Once a lead reaches these, automation stops touching it
TERMINAL_STAGES = {
    Stage.COLD_ARCHIVED,
    Stage.CLOSED_WON,
    Stage.CLOSED_LOST,
    Stage.DISQUALIFIED,
}

# Stages the stale-lead scan keeps warm with follow-ups
ACTIVE_STAGES = {
    Stage.QUALIFYING,
    Stage.HOT_ENGAGED,
    Stage.WARM_NURTURING,
}


class Category(str, Enum):
    HOT = "HOT"                  # 80-100
    WARM = "WARM"                # 50-79
    COLD = "COLD"                # 20-49
    UNQUALIFIED = "UNQUALIFIED"  # <20


CATEGORY_STAGE = {
    Category.HOT: Stage.HOT_ENGAGED,
    Category.WARM: Stage.WARM_NURTURING,
    Category.COLD: Stage.COLD_ARCHIVED,
    Category.UNQUALIFIED: Stage.DISQUALIFIED,
}


def clamp_score(score: float) -> int:
    return max(0, min(100, int(round(score))))


def category_for_score(score: int) -> Category:
    """Derive the lead tier from its 0-100 score."""
    if score >= 80:
        return Category.HOT
    if score >= 50:
        return Category.WARM
    if score >= 20:
        return Category.COLD
    return Category.UNQUALIFIED


class MeetingStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"
    CANCELLED = "CANCELLED"
    RESCHEDULED = "RESCHEDULED"


class Direction(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class ActivityType(str, Enum):
    LEAD_CREATED = "LEAD_CREATED"
    LEAD_ENRICHED = "LEAD_ENRICHED"
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_RECEIVED = "EMAIL_RECEIVED"
    STAGE_CHANGED = "STAGE_CHANGED"
    SCORE_UPDATED = "SCORE_UPDATED"
    MEETING_SCHEDULED = "MEETING_SCHEDULED"
    MEETING_HELD = "MEETING_HELD"
    MEETING_CANCELLED = "MEETING_CANCELLED"
    MEETING_NO_SHOW = "MEETING_NO_SHOW"
    TASK_CREATED = "TASK_CREATED"
    DOCUMENT_SENT = "DOCUMENT_SENT"
    WORKFLOW_TRIGGERED = "WORKFLOW_TRIGGERED"


@dataclass
class Lead:
    """
    A single lead moving through the pipeline.
    `stage` is the single source of truth for state-machine checks.
    """
    id: str = field(default_factory=new_id)
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    industry: Optional[str] = None
    country: Optional[str] = None
    domain: Optional[str] = None
    original_message: Optional[str] = None
    source: str = "api"

    score: int = 0
    stage: Stage = Stage.NEW
    category: Optional[Category] = None
    enrichment: Dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def context(self) -> Dict[str, Any]:
        """Flat view of the lead handed to content generation and scoring."""
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "company": self.company,
            "job_title": self.job_title,
            "industry": self.industry,
            "country": self.country,
            "domain": self.domain,
            "original_message": self.original_message,
            "source": self.source,
            "score": self.score,
            "stage": self.stage.value,
            "category": self.category.value if self.category else None,
            "enrichment": self.enrichment,
        }


@dataclass(frozen=True)
class StageHistoryEntry:
    """Append-only audit row written once per successful transition."""
    lead_id: str
    from_stage: Stage
    to_stage: Stage
    reason: str
    automated: bool
    occurred_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass
class Meeting:
    lead_id: str
    start_time: datetime
    end_time: datetime
    status: MeetingStatus = MeetingStatus.SCHEDULED
    outcome: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)


@dataclass
class Activity:
    lead_id: str
    type: ActivityType
    content: str
    automated: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass
class Communication:
    lead_id: str
    direction: Direction
    subject: str
    body: str = ""
    channel: str = "EMAIL"
    message_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    @property
    def type(self) -> Optional[str]:
        return self.metadata.get("type")


@dataclass
class Escalation:
    """Record raised for human review (manager follow-up)."""
    lead_id: str
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


# Task payloads

class LeadTaskPayload(TypedDict, total=False):
    lead_id: str
    step: str                        # "qualification" | "enrichment" | "follow-up"
    follow_up_number: int            # follow-up only: which follow-up this task sends


class NoShowTaskPayload(TypedDict):
    lead_id: str
    meeting_id: str
    step: str                        # "apology" | "rep-call" | "formal-reschedule" | "finalize"


class HandoffPayload(TypedDict, total=False):
    capability: str
    input: Any
    context: Dict[str, Any]          # lead_id, hops, origin


class SequenceStepPayload(TypedDict):
    lead_id: str
    sequence_id: str
    step_index: int


class StepResult(TypedDict, total=False):
    """Outcome of one task handler invocation."""
    status: str                      # "ok" | "skipped" | "failed"
    lead_id: str
    step: str
    reason: str
    message_id: Optional[str]
    errors: List[str]
    data: Dict[str, Any]
