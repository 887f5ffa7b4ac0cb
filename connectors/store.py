import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Iterator
from loguru import logger

from orchestration.errors import LeadNotFoundError, MeetingNotFoundError
from orchestration.state import (
    Lead, Meeting, MeetingStatus, StageHistoryEntry, Activity, ActivityType,
    Communication, Direction, Escalation, utcnow,
)


class LeadStore:
    """
    In-process lead store: the narrow contract the orchestration core reads
    and writes through.

    Reads return copies, so a handler never sees another worker's half-applied
    change and always re-reads state at point of use. Individual operations are
    serialised; `transaction()` holds the lock across several writes so a stage
    change, its history row and its activity land together.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._lock = threading.RLock()
        self._leads: Dict[str, Lead] = {}
        self._meetings: Dict[str, Meeting] = {}
        self._history: List[StageHistoryEntry] = []
        self._activities: List[Activity] = []
        self._communications: List[Communication] = []
        self._escalations: List[Escalation] = []
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator["LeadStore"]:
        """
        Hold the lock across several writes. If the block raises, the
        outermost transaction restores leads and meetings and drops every
        record appended inside it.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            snapshot = self._snapshot()
            self._depth = 1
            try:
                yield self
            except Exception:
                self._restore(snapshot)
                logger.warning("Store transaction rolled back")
                raise
            finally:
                self._depth = 0

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "leads": {k: replace(v, enrichment=dict(v.enrichment)) for k, v in self._leads.items()},
            "meetings": {k: replace(v) for k, v in self._meetings.items()},
            "history": len(self._history),
            "activities": len(self._activities),
            "communications": len(self._communications),
            "escalations": len(self._escalations),
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self._leads = snapshot["leads"]
        self._meetings = snapshot["meetings"]
        del self._history[snapshot["history"]:]
        del self._activities[snapshot["activities"]:]
        del self._communications[snapshot["communications"]:]
        del self._escalations[snapshot["escalations"]:]

    # Leads

    def create_lead(self, **fields) -> Lead:
        now = self.clock()
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        lead = Lead(**fields)
        with self._lock:
            self._leads[lead.id] = lead
        logger.info(f"Lead created in store: {lead.id}")
        return replace(lead)

    def get(self, lead_id: str, include_deleted: bool = False) -> Optional[Lead]:
        with self._lock:
            lead = self._leads.get(lead_id)
            if lead is None or (lead.deleted_at and not include_deleted):
                return None
            return replace(lead, enrichment=dict(lead.enrichment))

    def require(self, lead_id: str) -> Lead:
        lead = self.get(lead_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        return lead

    def update(self, lead_id: str, **fields) -> Lead:
        with self._lock:
            lead = self._leads.get(lead_id)
            if lead is None or lead.deleted_at:
                raise LeadNotFoundError(lead_id)
            for name, value in fields.items():
                if not hasattr(lead, name):
                    raise AttributeError(f"Lead has no field {name}")
                setattr(lead, name, value)
            lead.updated_at = self.clock()
            return replace(lead, enrichment=dict(lead.enrichment))

    def soft_delete(self, lead_id: str) -> None:
        with self._lock:
            lead = self._leads.get(lead_id)
            if lead is None:
                raise LeadNotFoundError(lead_id)
            lead.deleted_at = self.clock()

    def find_leads(self, predicate: Callable[[Lead], bool]) -> List[Lead]:
        with self._lock:
            return [
                replace(lead, enrichment=dict(lead.enrichment))
                for lead in self._leads.values()
                if not lead.deleted_at and predicate(lead)
            ]

    # Meetings

    def create_meeting(self, lead_id: str, start_time: datetime, end_time: datetime,
                       status: MeetingStatus = MeetingStatus.SCHEDULED) -> Meeting:
        meeting = Meeting(lead_id=lead_id, start_time=start_time, end_time=end_time,
                          status=status, created_at=self.clock())
        with self._lock:
            self._meetings[meeting.id] = meeting
        return replace(meeting)

    def get_meeting(self, meeting_id: str) -> Optional[Meeting]:
        with self._lock:
            meeting = self._meetings.get(meeting_id)
            return replace(meeting) if meeting else None

    def update_meeting(self, meeting_id: str, **fields) -> Meeting:
        with self._lock:
            meeting = self._meetings.get(meeting_id)
            if meeting is None:
                raise MeetingNotFoundError(meeting_id)
            for name, value in fields.items():
                setattr(meeting, name, value)
            return replace(meeting)

    def find_meetings(self, predicate: Callable[[Meeting], bool]) -> List[Meeting]:
        with self._lock:
            return [replace(m) for m in self._meetings.values() if predicate(m)]

    def meetings_for(self, lead_id: str) -> List[Meeting]:
        return sorted(self.find_meetings(lambda m: m.lead_id == lead_id), key=lambda m: m.start_time)

    def count_no_shows(self, lead_id: str) -> int:
        with self._lock:
            return sum(
                1 for m in self._meetings.values()
                if m.lead_id == lead_id and m.status == MeetingStatus.NO_SHOW
            )

    # Stage history (append-only)

    def add_stage_history(self, entry: StageHistoryEntry) -> StageHistoryEntry:
        with self._lock:
            self._history.append(entry)
        return entry

    def stage_history(self, lead_id: str) -> List[StageHistoryEntry]:
        with self._lock:
            return [h for h in self._history if h.lead_id == lead_id]

    # Activities

    def add_activity(self, lead_id: str, type: ActivityType, content: str,
                     automated: bool = True, metadata: Optional[dict] = None) -> Activity:
        activity = Activity(
            lead_id=lead_id,
            type=type,
            content=content,
            automated=automated,
            metadata=dict(metadata or {}),
            created_at=self.clock(),
        )
        with self._lock:
            self._activities.append(activity)
        return activity

    def activities(self, lead_id: str, type: Optional[ActivityType] = None) -> List[Activity]:
        with self._lock:
            return [
                a for a in self._activities
                if a.lead_id == lead_id and (type is None or a.type == type)
            ]

    def last_activity_at(self, lead_id: str) -> Optional[datetime]:
        items = self.activities(lead_id)
        return max((a.created_at for a in items), default=None)

    # Communications

    def add_communication(self, lead_id: str, direction: Direction, subject: str,
                          body: str = "", message_id: Optional[str] = None,
                          metadata: Optional[dict] = None, channel: str = "EMAIL") -> Communication:
        communication = Communication(
            lead_id=lead_id,
            direction=direction,
            subject=subject,
            body=body,
            channel=channel,
            message_id=message_id,
            metadata=dict(metadata or {}),
            created_at=self.clock(),
        )
        with self._lock:
            self._communications.append(communication)
        return communication

    def communications(self, lead_id: str, direction: Optional[Direction] = None,
                       type: Optional[str] = None) -> List[Communication]:
        with self._lock:
            return [
                c for c in self._communications
                if c.lead_id == lead_id
                and (direction is None or c.direction == direction)
                and (type is None or c.type == type)
            ]

    def count_communications(self, lead_id: str, direction: Direction, type: str) -> int:
        return len(self.communications(lead_id, direction=direction, type=type))

    def last_communication(self, lead_id: str, direction: Direction) -> Optional[Communication]:
        items = self.communications(lead_id, direction=direction)
        return max(items, key=lambda c: c.created_at, default=None)

    # Escalations

    def add_escalation(self, lead_id: str, reason: str, metadata: Optional[dict] = None) -> Escalation:
        escalation = Escalation(
            lead_id=lead_id,
            reason=reason,
            metadata=dict(metadata or {}),
            created_at=self.clock(),
        )
        with self._lock:
            self._escalations.append(escalation)
        logger.warning(f"Escalation raised for lead {lead_id}: {reason}")
        return escalation

    def escalations(self, lead_id: str) -> List[Escalation]:
        with self._lock:
            return [e for e in self._escalations if e.lead_id == lead_id]

    # Aggregates

    def stage_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._lock:
            for lead in self._leads.values():
                if lead.deleted_at:
                    continue
                counts[lead.stage.value] = counts.get(lead.stage.value, 0) + 1
        return counts
