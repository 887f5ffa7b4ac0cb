"""
Lead Stage State Machine
========================
Same shape as any table-driven FSM: a static list of legal moves, each
optionally gated by a guard on the lead. Every successful move writes the
lead's stage, an immutable history row and an audit activity in one
store transaction.
"""

from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional, Union
from loguru import logger

from connectors.store import LeadStore
from orchestration.errors import InvalidTransitionError, LeadNotFoundError
from orchestration.state import Lead, Stage, StageHistoryEntry, ActivityType


@dataclass(frozen=True)
class Transition:
    sources: FrozenSet[Stage]
    target: Stage
    guard: Optional[Callable[[Lead], bool]] = None
    description: str = ""

    def allows(self, lead: Lead, from_stage: Stage, to_stage: Stage) -> bool:
        if from_stage not in self.sources or to_stage != self.target:
            return False
        return self.guard is None or bool(self.guard(lead))


def _edge(sources, target, guard=None, description=""):
    return Transition(frozenset(sources), target, guard, description)


TRANSITIONS: List[Transition] = [
    # Qualification
    _edge([Stage.NEW], Stage.QUALIFYING, description="qualify"),
    _edge([Stage.QUALIFYING], Stage.HOT_ENGAGED, lambda lead: lead.score >= 80, "score >= 80"),
    _edge([Stage.QUALIFYING], Stage.WARM_NURTURING, lambda lead: 50 <= lead.score < 80, "50 <= score < 80"),
    _edge([Stage.QUALIFYING], Stage.COLD_ARCHIVED, lambda lead: lead.score < 50, "score < 50"),
    _edge([Stage.QUALIFYING], Stage.DISQUALIFIED, description="disqualify"),

    # Sales motion
    _edge([Stage.HOT_ENGAGED, Stage.WARM_NURTURING], Stage.MEETING_SCHEDULED, description="meeting booked"),
    _edge([Stage.MEETING_SCHEDULED], Stage.PROPOSAL_SENT),
    _edge([Stage.PROPOSAL_SENT], Stage.NEGOTIATION),
    _edge([Stage.NEGOTIATION], Stage.CLOSED_WON),
    _edge([Stage.NEGOTIATION], Stage.CLOSED_LOST),
    _edge(
        [Stage.HOT_ENGAGED, Stage.WARM_NURTURING, Stage.MEETING_SCHEDULED, Stage.PROPOSAL_SENT],
        Stage.CLOSED_LOST,
        description="lost early",
    ),

    # Automated recovery paths (no-show finalization, follow-up exhaustion)
    _edge([Stage.HOT_ENGAGED, Stage.MEETING_SCHEDULED], Stage.WARM_NURTURING, description="demote to nurture"),
    _edge(
        [Stage.HOT_ENGAGED, Stage.WARM_NURTURING, Stage.MEETING_SCHEDULED],
        Stage.COLD_ARCHIVED,
        description="archive",
    ),
]


def _as_stage(value: Union[Stage, str]) -> Stage:
    return value if isinstance(value, Stage) else Stage(value)


def find_transition(lead: Lead, from_stage: Stage, to_stage: Stage) -> Optional[Transition]:
    for transition in TRANSITIONS:
        if transition.allows(lead, from_stage, to_stage):
            return transition
    return None


def is_valid_transition(lead: Lead, from_stage: Union[Stage, str], to_stage: Union[Stage, str]) -> bool:
    return find_transition(lead, _as_stage(from_stage), _as_stage(to_stage)) is not None


def available_transitions(stage: Union[Stage, str]) -> List[Stage]:
    """Stages reachable from `stage` ignoring guards."""
    stage = _as_stage(stage)
    targets: List[Stage] = []
    for transition in TRANSITIONS:
        if stage in transition.sources and transition.target not in targets:
            targets.append(transition.target)
    return targets


class StageTransitionEngine:
    """Validates and executes lead stage changes against TRANSITIONS."""

    def __init__(self, store: LeadStore):
        self.store = store

    def transition(
        self,
        lead_id: str,
        from_stage: Optional[Union[Stage, str]],
        to_stage: Union[Stage, str],
        reason: str,
        automated: bool = True,
        actor: Optional[str] = None,
    ) -> StageHistoryEntry:
        """
        Move a lead from `from_stage` to `to_stage`.

        `from_stage` is what the caller believes the current stage is; if the
        stored stage differs (a manual change raced an automated step) the move
        is rejected. Pass None to use whatever is stored.

        Raises:
            LeadNotFoundError: lead missing or soft-deleted
            InvalidTransitionError: no table entry allows the move
        """
        to_stage = _as_stage(to_stage)

        with self.store.transaction():
            lead = self.store.get(lead_id)
            if lead is None:
                raise LeadNotFoundError(lead_id)

            current = lead.stage
            expected = _as_stage(from_stage) if from_stage is not None else current
            if expected != current:
                raise InvalidTransitionError(
                    lead_id, expected, to_stage,
                    detail=f"lead is currently {current.value}",
                )

            if find_transition(lead, current, to_stage) is None:
                raise InvalidTransitionError(lead_id, current, to_stage)

            self.store.update(lead_id, stage=to_stage)

            entry = self.store.add_stage_history(StageHistoryEntry(
                lead_id=lead_id,
                from_stage=current,
                to_stage=to_stage,
                reason=reason,
                automated=automated,
                occurred_at=self.store.clock(),
            ))

            self.store.add_activity(
                lead_id,
                ActivityType.STAGE_CHANGED,
                f"Stage changed from {current.value} to {to_stage.value}",
                automated=automated,
                metadata={"from": current.value, "to": to_stage.value, "reason": reason, "actor": actor},
            )

        logger.info(f"Lead {lead_id} transitioned: {current.value} -> {to_stage.value} ({reason})")
        return entry

    def try_transition(self, lead_id: str, from_stage, to_stage, reason: str,
                       automated: bool = True) -> Optional[StageHistoryEntry]:
        """
        Transition for automated flows: an illegal move is logged and skipped
        instead of raised, so a background step racing a manual change never
        crashes the pipeline.
        """
        try:
            return self.transition(lead_id, from_stage, to_stage, reason, automated=automated)
        except InvalidTransitionError as e:
            logger.warning(f"Skipping automated transition: {e}")
            return None

    def stage_history(self, lead_id: str) -> List[StageHistoryEntry]:
        return self.store.stage_history(lead_id)

    def available_transitions(self, lead_id: str) -> List[Stage]:
        lead = self.store.require(lead_id)
        return [
            stage for stage in available_transitions(lead.stage)
            if is_valid_transition(lead, lead.stage, stage)
        ]
