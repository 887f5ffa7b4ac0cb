from datetime import timedelta
from unittest.mock import patch

import pytest

from harness import FrozenClock, HOT_LEAD, SAMPLE_LEAD, build_orchestrator
from orchestration.capabilities import suggest_slots, urgency_for
from orchestration.errors import TransientError
from orchestration.nodes import handoff
from orchestration.state import ActivityType, Category, MeetingStatus, Stage


class TestCapabilityRouter:
    """Capability dispatch, activity logging and hand-offs."""

    def setup_method(self):
        self.clock = FrozenClock()
        self.orchestrator = build_orchestrator(self.clock)
        self.store = self.orchestrator.store
        self.queue = self.orchestrator.queue
        self.ctx = self.orchestrator.ctx

    def test_unknown_capability_returns_typed_result(self):
        lead = self.store.create_lead(**SAMPLE_LEAD)

        result = self.orchestrator.execute_capability("telepathy", None, {"lead_id": lead.id})

        assert result.success is False
        assert result.error_kind == "unknown_capability"
        assert self.queue.pending() == []
        activity = self.store.activities(lead.id, ActivityType.WORKFLOW_TRIGGERED)[0]
        assert activity.metadata["capability"] == "telepathy"

    def test_hot_qualification_hands_off_to_communication(self):
        lead = self.store.create_lead(**HOT_LEAD)

        result = self.orchestrator.execute_capability("qualification", None, {"lead_id": lead.id})

        assert result.success is True
        assert result.data["totalScore"] == 90
        assert result.next_capability == "communication"

        stored = self.store.get(lead.id)
        assert stored.stage == Stage.HOT_ENGAGED
        assert stored.category == Category.HOT
        assert self.ctx.notifier.sent[0]["kind"] == "hot_lead"

        pending = self.queue.pending(handoff.TASK_NAME)
        assert len(pending) == 1
        assert pending[0].payload["capability"] == "communication"
        assert pending[0].payload["input"]["totalScore"] == 90
        assert pending[0].payload["context"] == {"lead_id": lead.id, "hops": 1, "origin": "qualification"}

    def test_handoff_task_runs_next_capability(self):
        lead = self.store.create_lead(**HOT_LEAD)
        self.orchestrator.execute_capability("qualification", None, {"lead_id": lead.id})

        outcomes = self.queue.drain()

        assert len(outcomes) == 1
        assert outcomes[0].result["status"] == "ok"
        assert outcomes[0].result["step"] == "communication"
        capabilities = [a.metadata["capability"]
                        for a in self.store.activities(lead.id, ActivityType.WORKFLOW_TRIGGERED)]
        assert capabilities == ["qualification", "communication"]

    def test_handoff_depth_is_bounded(self):
        lead = self.store.create_lead(**HOT_LEAD)

        result = self.orchestrator.execute_capability(
            "qualification", None, {"lead_id": lead.id, "hops": self.ctx.settings.max_handoff_depth}
        )

        assert result.success is True
        assert self.queue.pending(handoff.TASK_NAME) == []

    def test_reasoning_is_truncated_in_activity(self):
        lead = self.store.create_lead(**SAMPLE_LEAD)
        with patch.object(self.ctx.scoring, "score", return_value={
            "totalScore": 55, "category": Category.WARM, "breakdown": {}, "reasoning": "x" * 500,
        }):
            self.orchestrator.execute_capability("qualification", None, {"lead_id": lead.id})

        activity = self.store.activities(lead.id, ActivityType.WORKFLOW_TRIGGERED)[0]
        assert len(activity.metadata["reasoning"]) == 200

    def test_transient_failure_propagates_for_retry(self):
        lead = self.store.create_lead(**SAMPLE_LEAD)

        with patch.object(self.ctx.scoring, "score", side_effect=TransientError("openai", "timeout")):
            with pytest.raises(TransientError):
                self.orchestrator.execute_capability("qualification", None, {"lead_id": lead.id})

        activity = self.store.activities(lead.id, ActivityType.WORKFLOW_TRIGGERED)[0]
        assert activity.metadata["error_kind"] == "transient"

    def test_other_failures_become_failed_results(self):
        result = self.orchestrator.execute_capability("qualification", None, {"lead_id": "ghost"})

        assert result.success is False
        assert result.error_kind == "LeadNotFoundError"

    def test_research_enriches_and_chains_qualification(self):
        lead = self.store.create_lead(**SAMPLE_LEAD)

        result = self.orchestrator.execute_capability("research", None, {"lead_id": lead.id})

        assert result.success is True
        assert result.next_capability == "qualification"
        stored = self.store.get(lead.id)
        assert stored.domain == "acme.io"
        assert stored.enrichment["company"]["employees"] == 120
        assert "insights" in stored.enrichment
        assert len(self.store.activities(lead.id, ActivityType.LEAD_ENRICHED)) == 1

    def test_communication_can_send(self):
        lead = self.store.create_lead(**SAMPLE_LEAD)

        result = self.orchestrator.execute_capability(
            "communication", {"type": "demo_offer", "send": True}, {"lead_id": lead.id}
        )

        assert result.success is True
        assert result.data["subject"] == "A personalized demo for Acme"
        assert result.data["message_id"].startswith("sim-")

    def test_document_rejects_unknown_type(self):
        lead = self.store.create_lead(**SAMPLE_LEAD)

        bad = self.orchestrator.execute_capability("document", {"type": "poem"}, {"lead_id": lead.id})
        good = self.orchestrator.execute_capability("document", {"type": "proposal"}, {"lead_id": lead.id})

        assert bad.success is False
        assert bad.error_kind == "invalid_input"
        assert good.success is True
        assert len(self.store.activities(lead.id, ActivityType.DOCUMENT_SENT)) == 1

    def test_pipeline_analytics(self):
        self.store.create_lead(**SAMPLE_LEAD)
        won = self.store.create_lead(**HOT_LEAD)
        self.store.update(won.id, stage=Stage.CLOSED_WON)

        result = self.orchestrator.execute_capability("analytics", {"type": "pipeline"}, {})

        assert result.data["total_leads"] == 2
        assert result.data["by_stage"] == {"NEW": 1, "CLOSED_WON": 1}
        assert result.data["active"] == 1
        assert result.data["win_rate"] == 1.0


class TestScheduling:

    def setup_method(self):
        self.clock = FrozenClock()
        self.orchestrator = build_orchestrator(self.clock)
        self.store = self.orchestrator.store
        self.lead = self.store.create_lead(**HOT_LEAD)
        self.store.update(self.lead.id, stage=Stage.HOT_ENGAGED, score=85)

    def test_slots_skip_weekends_and_holidays(self):
        friday = (self.clock() + timedelta(days=4)).replace(hour=12)
        slots = suggest_slots(friday, "technology", "US")

        assert [s.weekday() for s in slots] == [0, 1, 2]
        assert all(s.hour == 10 for s in slots)

        thanksgiving_eve = friday.replace(month=11, day=25, hour=12)
        days = [s.strftime("%Y-%m-%d") for s in suggest_slots(thanksgiving_eve, None, "US")]
        assert "2026-11-26" not in days

    def test_urgency_by_score(self):
        assert urgency_for(95)["level"] == "IMMEDIATE"
        assert urgency_for(85)["within_hours"] == 48
        assert urgency_for(40)["within_hours"] is None

    def test_suggest(self):
        result = self.orchestrator.execute_capability("scheduling", {"action": "suggest"}, {"lead_id": self.lead.id})

        assert result.success is True
        assert len(result.data["slots"]) == 3
        assert result.data["urgency"] == "HIGH"
        assert result.data["escalated"] is False

    def test_confirm_books_meeting_and_moves_stage(self):
        start = (self.clock() + timedelta(days=1)).isoformat()

        result = self.orchestrator.execute_capability(
            "scheduling", {"action": "confirm", "start_time": start, "duration": 45}, {"lead_id": self.lead.id}
        )

        assert result.success is True
        meeting = self.store.get_meeting(result.data["meeting_id"])
        assert meeting.duration_minutes == 45
        assert self.store.get(self.lead.id).stage == Stage.MEETING_SCHEDULED

    def test_reschedule_marks_old_meeting(self):
        start = self.clock() + timedelta(days=1)
        old = self.store.create_meeting(self.lead.id, start, start + timedelta(minutes=30))

        result = self.orchestrator.execute_capability(
            "scheduling",
            {"action": "reschedule", "meeting_id": old.id, "start_time": (start + timedelta(days=2)).isoformat()},
            {"lead_id": self.lead.id},
        )

        assert result.success is True
        assert self.store.get_meeting(old.id).status == MeetingStatus.RESCHEDULED
        assert result.data["previous_meeting_id"] == old.id

    def test_invalid_start_time_is_a_failed_result(self):
        result = self.orchestrator.execute_capability(
            "scheduling", {"action": "confirm", "start_time": "next tuesday"}, {"lead_id": self.lead.id}
        )

        assert result.success is False
        assert result.error_kind == "PermanentError"
