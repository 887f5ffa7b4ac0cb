import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from loguru import logger

from connectors.queue import TaskQueue
from connectors.store import LeadStore
from orchestration.errors import UnknownSequenceError
from orchestration.state import utcnow

SEQUENCE_TASK = "sequence-step"


@dataclass(frozen=True)
class SequenceStep:
    content_kind: str
    delay_days: float                  # after the previous step
    condition: str = "always"          # "always" | "no_response"


@dataclass(frozen=True)
class SequenceDefinition:
    id: str
    name: str
    steps: List[SequenceStep]
    exit_on_reply: bool = True
    exit_on_meeting: bool = True


SEQUENCES = [
    SequenceDefinition(
        id="new-lead-nurture",
        name="New Lead Nurture",
        steps=[
            SequenceStep("acknowledgment", 0),
            SequenceStep("follow_up", 2, "no_response"),
            SequenceStep("demo_offer", 4, "no_response"),
        ],
    ),
    SequenceDefinition(
        id="hot-lead-engagement",
        name="Hot Lead Engagement",
        steps=[
            SequenceStep("demo_offer", 0),
            SequenceStep("follow_up", 1, "no_response"),
        ],
    ),
]


@dataclass
class ActiveSequence:
    key: str
    lead_id: str
    sequence_id: str
    current_step: int = 0
    status: str = "ACTIVE"             # "ACTIVE" | "COMPLETED" | "STOPPED"
    started_at: datetime = field(default_factory=utcnow)
    stop_reason: Optional[str] = None


class SequenceTracker:
    """
    Tracks which leads are in which email sequence.

    State lives in this process only: a restart forgets active sequences and
    their queued steps become no-ops.
    """

    def __init__(self, store: LeadStore, queue: TaskQueue, definitions: Optional[List[SequenceDefinition]] = None):
        self.store = store
        self.queue = queue
        self.definitions = {d.id: d for d in (definitions or SEQUENCES)}
        self._lock = threading.Lock()
        self._active: Dict[str, ActiveSequence] = {}

    def definition(self, sequence_id: str) -> SequenceDefinition:
        definition = self.definitions.get(sequence_id)
        if definition is None:
            raise UnknownSequenceError(sequence_id)
        return definition

    def start(self, lead_id: str, sequence_id: str) -> ActiveSequence:
        """
        Enroll a lead and queue the first step.

        Raises:
            UnknownSequenceError: no such sequence
            LeadNotFoundError: lead missing or deleted
        """
        definition = self.definition(sequence_id)
        self.store.require(lead_id)
        key = f"{lead_id}-{sequence_id}"

        with self._lock:
            existing = self._active.get(key)
            if existing and existing.status == "ACTIVE":
                logger.warning(f"Lead {lead_id} already in sequence {sequence_id}")
                return replace(existing)
            active = ActiveSequence(key=key, lead_id=lead_id, sequence_id=sequence_id, started_at=self.store.clock())
            self._active[key] = active

        logger.info(f"Started sequence {definition.name} for lead {lead_id}")
        self._enqueue_step(active, 0)
        return replace(active)

    def _enqueue_step(self, active: ActiveSequence, step_index: int) -> str:
        step = self.definition(active.sequence_id).steps[step_index]
        return self.queue.enqueue(
            SEQUENCE_TASK,
            {"lead_id": active.lead_id, "sequence_id": active.sequence_id, "step_index": step_index},
            delay=timedelta(days=step.delay_days),
        )

    def get(self, lead_id: str, sequence_id: str) -> Optional[ActiveSequence]:
        with self._lock:
            active = self._active.get(f"{lead_id}-{sequence_id}")
            return replace(active) if active else None

    def for_lead(self, lead_id: str) -> List[ActiveSequence]:
        with self._lock:
            return [replace(a) for a in self._active.values() if a.lead_id == lead_id]

    def advance(self, lead_id: str, sequence_id: str, step_index: int) -> Optional[ActiveSequence]:
        """Record a completed step; queue the next one or complete the sequence."""
        definition = self.definition(sequence_id)
        with self._lock:
            active = self._active.get(f"{lead_id}-{sequence_id}")
            if active is None or active.status != "ACTIVE":
                return None
            active.current_step = step_index + 1
            finished = active.current_step >= len(definition.steps)
            if finished:
                active.status = "COMPLETED"
            snapshot = replace(active)

        if finished:
            logger.info(f"Sequence {snapshot.key} completed")
        else:
            self._enqueue_step(snapshot, snapshot.current_step)
        return snapshot

    def stop(self, lead_id: str, sequence_id: str, reason: str) -> Optional[ActiveSequence]:
        with self._lock:
            active = self._active.get(f"{lead_id}-{sequence_id}")
            if active is None or active.status != "ACTIVE":
                return None
            active.status = "STOPPED"
            active.stop_reason = reason
            snapshot = replace(active)
        logger.info(f"Stopped sequence {snapshot.key}: {reason}")
        return snapshot
