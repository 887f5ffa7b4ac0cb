from datetime import timedelta

import pytest

from harness import FrozenClock
from connectors.idempotency import Idem
from orchestration.scheduler import Scheduler, daily_at, every_minutes


class TestScheduler:

    def setup_method(self):
        self.clock = FrozenClock()
        self.idem = Idem(clock=lambda: self.clock().timestamp())
        self.scheduler = Scheduler(self.idem, clock=self.clock)
        self.calls = []

    def _job(self, name="stale-leads", slot_for=None, fn=None):
        self.scheduler.add_job(name, fn or (lambda: self.calls.append(name) or len(self.calls)),
                               slot_for or every_minutes(15))

    def test_job_runs_once_per_slot(self):
        self._job()

        first = self.scheduler.run_pending()
        again = self.scheduler.run_pending(self.clock.now + timedelta(minutes=5))
        later = self.scheduler.run_pending(self.clock.advance(minutes=15))

        assert first == {"stale-leads": {"status": "ok", "result": 1}}
        assert again == {}
        assert later["stale-leads"]["status"] == "ok"
        assert self.calls == ["stale-leads", "stale-leads"]

    def test_daily_job_waits_for_its_hour(self):
        self._job("report", daily_at(10))

        assert self.scheduler.run_pending() == {}

        self.clock.advance(hours=1)
        assert "report" in self.scheduler.run_pending()
        assert self.scheduler.run_pending(self.clock.advance(hours=5)) == {}

        self.clock.advance(days=1)
        assert "report" in self.scheduler.run_pending()
        assert len(self.calls) == 2

    def test_second_scheduler_sharing_idem_does_not_rerun_slot(self):
        self._job()
        other = Scheduler(self.idem, clock=self.clock)
        other.add_job("stale-leads", lambda: self.calls.append("other"), every_minutes(15))

        self.scheduler.run_pending()
        assert other.run_pending() == {}
        assert self.calls == ["stale-leads"]

    def test_failing_job_reports_failure(self):
        def boom():
            raise RuntimeError("store unavailable")

        self._job(fn=boom)

        result = self.scheduler.run_pending()

        assert result["stale-leads"] == {"status": "failed", "error": "store unavailable"}

    def test_overlapping_run_is_skipped(self):
        self._job()
        job = self.scheduler.jobs["stale-leads"]

        job.lock.acquire()
        try:
            assert self.scheduler.tick("stale-leads") == {"status": "already_running"}
        finally:
            job.lock.release()

        assert self.calls == []

    def test_manual_tick(self):
        self._job()

        assert self.scheduler.tick("stale-leads")["status"] == "ok"
        with pytest.raises(KeyError):
            self.scheduler.tick("nope")


class TestSlots:

    def test_every_minutes_buckets(self):
        slot = every_minutes(15)
        now = FrozenClock().now

        assert slot(now) == slot(now + timedelta(minutes=14, seconds=59))
        assert slot(now) != slot(now + timedelta(minutes=15))

    def test_daily_at(self):
        slot = daily_at(9)
        now = FrozenClock().now

        assert slot(now - timedelta(minutes=1)) is None
        assert slot(now) == "2026-03-02"
