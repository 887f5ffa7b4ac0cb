import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from harness import FrozenClock
from connectors.queue import Backoff, MemoryBackend, Task, TaskQueue
from orchestration.errors import LeadNotFoundError, TransientError
from orchestration.worker import WorkerPool


class TestTaskQueue:
    """Delayed delivery, retries and dead letters."""

    def setup_method(self):
        self.clock = FrozenClock()
        self.queue = TaskQueue(clock=self.clock, max_attempts=3, backoff=Backoff(delay=1.0))
        self.handler = MagicMock(return_value={"status": "ok"})
        self.queue.consume("process-lead", self.handler)

    def test_delayed_task_is_invisible_until_due(self):
        self.queue.enqueue("process-lead", {"lead_id": "L1", "step": "follow-up"}, delay=timedelta(days=2))

        assert self.queue.process_next() is None
        self.clock.advance(days=1, hours=23, minutes=59)
        assert self.queue.process_next() is None
        self.handler.assert_not_called()

        self.clock.advance(minutes=1)
        outcome = self.queue.process_next()

        assert outcome.status == "completed"
        assert outcome.result == {"status": "ok"}
        self.handler.assert_called_once_with({"lead_id": "L1", "step": "follow-up"})
        assert self.queue.pending() == []

    def test_delay_in_seconds(self):
        self.queue.enqueue("process-lead", {"lead_id": "L1"}, delay=30)

        assert self.queue.process_next() is None
        self.clock.advance(seconds=30)
        assert self.queue.process_next().status == "completed"

    def test_ready_tasks_run_in_available_order(self):
        self.queue.enqueue("process-lead", {"lead_id": "late"}, delay=60)
        self.queue.enqueue("process-lead", {"lead_id": "early"}, delay=10)
        self.clock.advance(minutes=2)

        outcomes = self.queue.drain()

        assert [o.task.payload["lead_id"] for o in outcomes] == ["early", "late"]

    def test_failures_retry_with_exponential_backoff_then_dead_letter(self):
        self.handler.side_effect = TransientError("sendgrid", "HTTP 503")
        self.queue.enqueue("process-lead", {"lead_id": "L1"})

        first = self.queue.process_next()
        assert first.status == "retry"
        assert self.queue.process_next() is None

        self.clock.advance(seconds=1)
        second = self.queue.process_next()
        assert second.status == "retry"

        self.clock.advance(seconds=1)
        assert self.queue.process_next() is None
        self.clock.advance(seconds=1)
        third = self.queue.process_next()

        assert third.status == "dead"
        assert self.handler.call_count == 3

        dead = self.queue.dead_letters()
        assert len(dead) == 1
        assert dead[0]["name"] == "process-lead"
        assert dead[0]["attempts_made"] == 3
        assert dead[0]["payload"] == {"lead_id": "L1"}
        assert "TransientError" in dead[0]["error"]
        assert self.queue.pending() == []

    def test_non_retryable_error_dead_letters_immediately(self):
        self.handler.side_effect = LeadNotFoundError("L1")
        self.queue.enqueue("process-lead", {"lead_id": "L1"})

        outcome = self.queue.process_next()

        assert outcome.status == "dead"
        assert self.handler.call_count == 1
        assert self.queue.dead_letters()[0]["attempts_made"] == 1

    def test_per_task_attempts_override(self):
        self.handler.side_effect = RuntimeError("boom")
        self.queue.enqueue("process-lead", {"lead_id": "L1"}, max_attempts=1)

        assert self.queue.process_next().status == "dead"

    def test_tasks_without_a_handler_are_left_alone(self):
        self.queue.enqueue("unknown-task", {"x": 1})

        assert self.queue.process_next() is None
        assert len(self.queue.pending("unknown-task")) == 1

    def test_drain_runs_successors_that_are_already_due(self):
        def chain(payload):
            if payload["n"] < 3:
                self.queue.enqueue("process-lead", {"n": payload["n"] + 1})
            return payload["n"]

        self.queue.consume("process-lead", chain)
        self.queue.enqueue("process-lead", {"n": 1})

        outcomes = self.queue.drain()

        assert [o.result for o in outcomes] == [1, 2, 3]


class TestBackoff:

    def test_exponential(self):
        backoff = Backoff(delay=2.0, max_delay=10.0)
        assert [backoff.delay_for(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 10.0]

    def test_fixed(self):
        backoff = Backoff(type="fixed", delay=5.0)
        assert backoff.delay_for(1) == backoff.delay_for(4) == 5.0

    def test_task_json_keeps_backoff(self):
        task = Task(name="process-lead", payload={"lead_id": "L1"}, available_at=10.0,
                    backoff=Backoff(type="fixed", delay=3.0))

        restored = Task.from_json(task.to_json())

        assert restored.backoff == Backoff(type="fixed", delay=3.0)
        assert restored.id == task.id


class TestMemoryBackend:

    def test_reserved_task_is_redelivered_after_visibility_timeout(self):
        backend = MemoryBackend()
        backend.push(Task(name="process-lead", payload={}, available_at=0.0))

        task = backend.reserve(["process-lead"], now=100.0, visibility=30.0)
        assert task is not None
        assert backend.reserve(["process-lead"], now=110.0, visibility=30.0) is None

        again = backend.reserve(["process-lead"], now=131.0, visibility=30.0)
        assert again.id == task.id

    def test_acked_task_is_not_redelivered(self):
        backend = MemoryBackend()
        backend.push(Task(name="process-lead", payload={}, available_at=0.0))

        task = backend.reserve(["process-lead"], now=100.0, visibility=30.0)
        backend.ack(task)

        assert backend.reserve(["process-lead"], now=500.0, visibility=30.0) is None


class TestWorkerPool:

    def test_workers_process_enqueued_tasks(self):
        queue = TaskQueue()
        done = threading.Event()
        queue.consume("process-lead", lambda payload: done.set())
        pool = WorkerPool(queue, size=2, poll_interval=0.01)

        pool.start()
        try:
            queue.enqueue("process-lead", {"lead_id": "L1"})
            assert done.wait(timeout=5)
        finally:
            pool.stop()

        assert not pool.running
