from datetime import timedelta

import pytest

from harness import FrozenClock, SAMPLE_LEAD, build_orchestrator
from orchestration.errors import LeadNotFoundError, UnknownSequenceError
from orchestration.sequences import SEQUENCE_TASK
from orchestration.state import Direction, MeetingStatus, Stage


class TestSequences:

    def setup_method(self):
        self.clock = FrozenClock()
        self.orchestrator = build_orchestrator(self.clock)
        self.store = self.orchestrator.store
        self.queue = self.orchestrator.queue
        self.tracker = self.orchestrator.ctx.sequences
        self.lead = self.store.create_lead(**SAMPLE_LEAD)
        self.store.update(self.lead.id, stage=Stage.WARM_NURTURING, score=60)

    def test_start_queues_first_step_once(self):
        first = self.orchestrator.start_sequence(self.lead.id, "new-lead-nurture")
        second = self.orchestrator.start_sequence(self.lead.id, "new-lead-nurture")

        assert first.key == f"{self.lead.id}-new-lead-nurture"
        assert first.status == "ACTIVE"
        assert second.key == first.key
        assert len(self.queue.pending(SEQUENCE_TASK)) == 1

    def test_unknown_sequence_and_missing_lead(self):
        with pytest.raises(UnknownSequenceError):
            self.orchestrator.start_sequence(self.lead.id, "cold-call-blitz")
        with pytest.raises(LeadNotFoundError):
            self.orchestrator.start_sequence("ghost", "new-lead-nurture")

    def test_sequence_runs_to_completion(self):
        self.orchestrator.start_sequence(self.lead.id, "hot-lead-engagement")

        self.queue.drain()
        assert self.tracker.get(self.lead.id, "hot-lead-engagement").current_step == 1

        self.clock.advance(days=1)
        self.queue.drain()

        active = self.tracker.get(self.lead.id, "hot-lead-engagement")
        assert active.status == "COMPLETED"
        sent = self.store.communications(self.lead.id, Direction.OUTBOUND)
        assert [c.type for c in sent] == ["demo_offer", "follow_up"]
        assert sent[1].metadata["step_index"] == 1

    def test_reply_stops_the_sequence(self):
        self.orchestrator.start_sequence(self.lead.id, "new-lead-nurture")
        self.queue.drain()

        self.clock.advance(days=1)
        self.store.add_communication(self.lead.id, Direction.INBOUND, "Re: Thanks", body="Call me")
        self.clock.advance(days=1)
        outcomes = self.queue.drain()

        assert outcomes[0].result["reason"] == "replied"
        active = self.tracker.get(self.lead.id, "new-lead-nurture")
        assert active.status == "STOPPED"
        assert active.stop_reason == "replied"
        assert self.queue.pending(SEQUENCE_TASK) == []

    def test_meeting_stops_the_sequence(self):
        self.orchestrator.start_sequence(self.lead.id, "new-lead-nurture")
        self.queue.drain()
        start = self.clock.advance(days=1) + timedelta(days=5)
        self.store.create_meeting(self.lead.id, start, start + timedelta(minutes=30), MeetingStatus.SCHEDULED)

        self.clock.advance(days=1)
        outcomes = self.queue.drain()

        assert outcomes[0].result["reason"] == "meeting_scheduled"

    def test_acknowledgment_step_does_not_resend(self):
        self.store.add_communication(self.lead.id, Direction.OUTBOUND, "Thanks for reaching out, Jane",
                                     metadata={"type": "acknowledgment"})
        self.orchestrator.start_sequence(self.lead.id, "new-lead-nurture")

        outcomes = self.queue.drain()

        assert outcomes[0].result["status"] == "ok"
        assert outcomes[0].result["message_id"] is None
        assert self.store.count_communications(self.lead.id, Direction.OUTBOUND, "acknowledgment") == 1
        assert self.tracker.get(self.lead.id, "new-lead-nurture").current_step == 1

    def test_stopped_sequence_ignores_queued_steps(self):
        self.orchestrator.start_sequence(self.lead.id, "hot-lead-engagement")
        self.tracker.stop(self.lead.id, "hot-lead-engagement", "manual")

        outcomes = self.queue.drain()

        assert outcomes[0].result["reason"] == "sequence_inactive"
        assert self.store.communications(self.lead.id) == []
