from datetime import timedelta
from unittest.mock import patch

from harness import FrozenClock, SAMPLE_LEAD, build_orchestrator
from orchestration.nodes import no_show, process_lead
from orchestration.state import ActivityType, Direction, MeetingStatus, Stage


class TestStaleLeadScan:

    def setup_method(self):
        self.clock = FrozenClock()
        self.orchestrator = build_orchestrator(self.clock)
        self.store = self.orchestrator.store
        self.queue = self.orchestrator.queue

    def _quiet_lead(self, stage=Stage.WARM_NURTURING, score=60, follow_ups=0):
        lead = self.store.create_lead(**SAMPLE_LEAD)
        self.store.update(lead.id, stage=stage, score=score)
        for n in range(follow_ups):
            self.store.add_communication(lead.id, Direction.OUTBOUND, f"Following up #{n + 1}",
                                         metadata={"type": "follow_up"})
        return lead

    def test_quiet_lead_gets_follow_up(self):
        lead = self._quiet_lead(follow_ups=1)
        self.clock.advance(days=3)

        summary = self.orchestrator.run_stale_lead_scan()

        assert summary["scanned"] == 1
        assert summary["follow_ups_enqueued"] == 1
        pending = self.queue.pending(process_lead.TASK_NAME)
        assert [t.payload for t in pending] == [{"lead_id": lead.id, "step": "follow-up", "follow_up_number": 2}]

    def test_exhausted_follow_ups_archive_once(self):
        lead = self._quiet_lead(follow_ups=3)
        self.clock.advance(days=3)

        summary = self.orchestrator.run_stale_lead_scan()

        assert summary["follow_ups_enqueued"] == 0
        assert summary["archived"] == 1
        assert self.queue.pending(process_lead.TASK_NAME) == []
        assert self.store.get(lead.id).stage == Stage.COLD_ARCHIVED

        self.clock.advance(days=1)
        second = self.orchestrator.run_stale_lead_scan()

        assert second["scanned"] == 0
        history = self.store.stage_history(lead.id)
        assert [(h.from_stage, h.to_stage) for h in history] == [(Stage.WARM_NURTURING, Stage.COLD_ARCHIVED)]
        assert history[0].automated is True

    def test_recent_activity_or_email_skips_lead(self):
        active = self._quiet_lead()
        emailed = self._quiet_lead()
        self.clock.advance(days=3)
        self.store.add_activity(active.id, ActivityType.EMAIL_RECEIVED, "Lead replied")
        self.store.add_communication(emailed.id, Direction.OUTBOUND, "Checking in",
                                     metadata={"type": "follow_up"})

        summary = self.orchestrator.run_stale_lead_scan()

        assert summary["scanned"] == 2
        assert summary["skipped"] == 2
        assert self.queue.pending() == []

    def test_young_and_inactive_stage_leads_are_not_scanned(self):
        self._quiet_lead(stage=Stage.MEETING_SCHEDULED)
        self._quiet_lead(stage=Stage.CLOSED_WON)
        self.clock.advance(days=1)
        self._quiet_lead()

        summary = self.orchestrator.run_stale_lead_scan()

        assert summary["scanned"] == 0

    def test_guard_rejection_is_skipped_not_raised(self):
        lead = self._quiet_lead(stage=Stage.QUALIFYING, score=65, follow_ups=3)
        self.clock.advance(days=3)

        summary = self.orchestrator.run_stale_lead_scan()

        assert summary["archived"] == 0
        assert summary["skipped"] == 1
        assert summary["errors"] == []
        assert self.store.get(lead.id).stage == Stage.QUALIFYING

    def test_one_failing_lead_does_not_abort_the_scan(self):
        first = self._quiet_lead(follow_ups=1)
        self._quiet_lead(follow_ups=1)
        self.clock.advance(days=3)
        original = self.store.last_activity_at

        def flaky(lead_id):
            if lead_id == first.id:
                raise RuntimeError("store unavailable")
            return original(lead_id)

        with patch.object(self.store, "last_activity_at", side_effect=flaky):
            summary = self.orchestrator.run_stale_lead_scan()

        assert summary["follow_ups_enqueued"] == 1
        assert len(summary["errors"]) == 1
        assert first.id in summary["errors"][0]


class TestNoShowScan:

    def setup_method(self):
        self.clock = FrozenClock()
        self.orchestrator = build_orchestrator(self.clock)
        self.store = self.orchestrator.store
        self.queue = self.orchestrator.queue
        self.lead = self.store.create_lead(**SAMPLE_LEAD)
        self.store.update(self.lead.id, stage=Stage.MEETING_SCHEDULED, score=60)

    def _meeting(self, ended_minutes_ago, status=MeetingStatus.SCHEDULED):
        end = self.clock() - timedelta(minutes=ended_minutes_ago)
        return self.store.create_meeting(self.lead.id, end - timedelta(minutes=30), end, status)

    def test_only_meetings_inside_the_window_are_processed(self):
        missed = self._meeting(30)
        too_recent = self._meeting(5)
        too_old = self._meeting(180)
        confirmed = self._meeting(30, MeetingStatus.CONFIRMED)

        summary = self.orchestrator.run_no_show_scan()

        assert summary["scanned"] == 1
        assert summary["processed"] == 1
        assert summary["escalated"] == 0
        assert self.store.get_meeting(missed.id).status == MeetingStatus.NO_SHOW
        for meeting in (too_recent, too_old, confirmed):
            assert self.store.get_meeting(meeting.id).status != MeetingStatus.NO_SHOW
        assert len(self.queue.pending(no_show.TASK_NAME)) == 4

    def test_window_edges_are_inclusive(self):
        self._meeting(15)
        self._meeting(120)

        summary = self.orchestrator.run_no_show_scan()

        assert summary["processed"] == 2

    def test_meeting_with_recorded_outcome_is_ignored(self):
        meeting = self._meeting(30)
        self.store.update_meeting(meeting.id, outcome="attended, notes pending")

        summary = self.orchestrator.run_no_show_scan()

        assert summary["scanned"] == 0

    def test_second_scan_does_not_reprocess(self):
        self._meeting(30)
        self.orchestrator.run_no_show_scan()

        self.clock.advance(minutes=15)
        summary = self.orchestrator.run_no_show_scan()

        assert summary["scanned"] == 0
        assert len(self.store.activities(self.lead.id, ActivityType.MEETING_NO_SHOW)) == 1

    def test_escalations_are_counted(self):
        for days in (14, 7, 3):
            self._meeting(60 * 24 * days, MeetingStatus.NO_SHOW)
        self._meeting(30)

        summary = self.orchestrator.run_no_show_scan()

        assert summary["escalated"] == 1
        assert len(self.store.escalations(self.lead.id)) == 1

    def test_failure_on_one_meeting_is_contained(self):
        self._meeting(30)
        self._meeting(45)

        with patch("orchestration.scanners.start_no_show_workflow",
                   side_effect=[RuntimeError("boom"), {"status": "ok", "data": {"escalated": False}}]):
            summary = self.orchestrator.run_no_show_scan()

        assert summary["processed"] == 1
        assert len(summary["errors"]) == 1
