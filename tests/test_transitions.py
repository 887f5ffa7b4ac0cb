from unittest.mock import patch

import pytest

from harness import FrozenClock
from connectors.store import LeadStore
from orchestration.errors import InvalidTransitionError, LeadNotFoundError
from orchestration.state import ActivityType, Stage
from orchestration.transitions import (
    StageTransitionEngine,
    TRANSITIONS,
    available_transitions,
    is_valid_transition,
)


class TestStageTransitions:
    """Stage changes only follow the transition table."""

    def setup_method(self):
        self.clock = FrozenClock()
        self.store = LeadStore(clock=self.clock)
        self.engine = StageTransitionEngine(self.store)
        self.lead = self.store.create_lead(email="jane@acme.io", first_name="Jane")

    def test_legal_transition_writes_stage_history_and_activity(self):
        entry = self.engine.transition(self.lead.id, Stage.NEW, Stage.QUALIFYING, "Qualification started")

        assert self.store.get(self.lead.id).stage == Stage.QUALIFYING
        assert entry.from_stage == Stage.NEW
        assert entry.to_stage == Stage.QUALIFYING
        assert entry.automated is True
        assert entry.occurred_at == self.clock()
        assert self.store.stage_history(self.lead.id) == [entry]

        activities = self.store.activities(self.lead.id, ActivityType.STAGE_CHANGED)
        assert len(activities) == 1
        assert activities[0].metadata["from"] == "NEW"
        assert activities[0].metadata["to"] == "QUALIFYING"

    def test_accepts_stage_names(self):
        entry = self.engine.transition(self.lead.id, "NEW", "QUALIFYING", "by name")
        assert entry.to_stage == Stage.QUALIFYING

    def test_edge_not_in_table_is_rejected(self):
        with pytest.raises(InvalidTransitionError):
            self.engine.transition(self.lead.id, Stage.NEW, Stage.CLOSED_WON, "skip ahead")

        assert self.store.get(self.lead.id).stage == Stage.NEW
        assert self.store.stage_history(self.lead.id) == []
        assert self.store.activities(self.lead.id, ActivityType.STAGE_CHANGED) == []

    def test_guard_blocks_hot_without_score(self):
        self.store.update(self.lead.id, stage=Stage.QUALIFYING, score=60)

        with pytest.raises(InvalidTransitionError):
            self.engine.transition(self.lead.id, Stage.QUALIFYING, Stage.HOT_ENGAGED, "too early")

        entry = self.engine.transition(self.lead.id, Stage.QUALIFYING, Stage.WARM_NURTURING, "scored 60")
        assert entry.to_stage == Stage.WARM_NURTURING

    def test_stale_from_stage_is_rejected(self):
        self.engine.transition(self.lead.id, Stage.NEW, Stage.QUALIFYING, "first")

        with pytest.raises(InvalidTransitionError) as exc:
            self.engine.transition(self.lead.id, Stage.NEW, Stage.QUALIFYING, "second")

        assert "currently QUALIFYING" in str(exc.value)
        assert len(self.store.stage_history(self.lead.id)) == 1

    def test_missing_and_deleted_leads(self):
        with pytest.raises(LeadNotFoundError):
            self.engine.transition("nope", Stage.NEW, Stage.QUALIFYING, "missing")

        self.store.soft_delete(self.lead.id)
        with pytest.raises(LeadNotFoundError):
            self.engine.transition(self.lead.id, Stage.NEW, Stage.QUALIFYING, "deleted")

    def test_try_transition_returns_none_on_illegal_move(self):
        assert self.engine.try_transition(self.lead.id, Stage.NEW, Stage.NEGOTIATION, "nope") is None
        assert self.store.get(self.lead.id).stage == Stage.NEW

    def test_failed_write_rolls_back_the_whole_transition(self):
        with patch.object(self.store, "add_activity", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                self.engine.transition(self.lead.id, Stage.NEW, Stage.QUALIFYING, "Qualification started")

        assert self.store.get(self.lead.id).stage == Stage.NEW
        assert self.store.stage_history(self.lead.id) == []
        assert self.store.activities(self.lead.id, ActivityType.STAGE_CHANGED) == []

        entry = self.engine.transition(self.lead.id, Stage.NEW, Stage.QUALIFYING, "retry")
        assert self.store.stage_history(self.lead.id) == [entry]

    def test_manual_transition_is_recorded_as_manual(self):
        entry = self.engine.transition(self.lead.id, None, Stage.QUALIFYING, "rep override",
                                       automated=False, actor="rep@acme.io")

        assert entry.automated is False
        activity = self.store.activities(self.lead.id, ActivityType.STAGE_CHANGED)[0]
        assert activity.automated is False
        assert activity.metadata["actor"] == "rep@acme.io"

    def test_available_transitions_ignore_guards_by_stage(self):
        assert available_transitions(Stage.NEW) == [Stage.QUALIFYING]
        assert available_transitions(Stage.CLOSED_WON) == []
        assert set(available_transitions(Stage.NEGOTIATION)) == {Stage.CLOSED_WON, Stage.CLOSED_LOST}

    def test_available_transitions_for_lead_apply_guards(self):
        self.store.update(self.lead.id, stage=Stage.QUALIFYING, score=85)

        stages = self.engine.available_transitions(self.lead.id)

        assert Stage.HOT_ENGAGED in stages
        assert Stage.DISQUALIFIED in stages
        assert Stage.WARM_NURTURING not in stages
        assert Stage.COLD_ARCHIVED not in stages

    def test_terminal_stages_have_no_way_out(self):
        for transition in TRANSITIONS:
            assert Stage.CLOSED_WON not in transition.sources
            assert Stage.DISQUALIFIED not in transition.sources
            assert Stage.COLD_ARCHIVED not in transition.sources

    def test_is_valid_transition(self):
        lead = self.store.update(self.lead.id, stage=Stage.QUALIFYING, score=30)

        assert is_valid_transition(lead, Stage.QUALIFYING, Stage.COLD_ARCHIVED)
        assert not is_valid_transition(lead, Stage.QUALIFYING, Stage.WARM_NURTURING)
        assert is_valid_transition(lead, "MEETING_SCHEDULED", "WARM_NURTURING")
