import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from loguru import logger

from connectors.idempotency import Idem
from orchestration.state import utcnow

SlotFn = Callable[[datetime], Optional[str]]


def every_minutes(minutes: int) -> SlotFn:
    """Slot key that changes every `minutes` minutes."""
    period = minutes * 60
    return lambda now: f"{int(now.timestamp() // period)}"


def daily_at(hour: int) -> SlotFn:
    """One slot per UTC day, opening at `hour`."""
    return lambda now: now.strftime("%Y-%m-%d") if now.hour >= hour else None


@dataclass
class ScheduledJob:
    name: str
    fn: Callable[[], Any]
    slot_for: SlotFn
    last_slot: Optional[str] = None
    last_result: Any = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class Scheduler:
    """
    Owns every periodic tick.

    A job runs at most once per slot: the in-process lock stops a slow run
    overlapping the next tick, and the Idem key stops two processes sharing
    a Redis from both running the same slot.
    """

    def __init__(self, idem: Idem, clock: Callable[[], datetime] = utcnow, poll_interval: float = 30.0):
        self.idem = idem
        self.clock = clock
        self.poll_interval = poll_interval
        self.jobs: Dict[str, ScheduledJob] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add_job(self, name: str, fn: Callable[[], Any], slot_for: SlotFn) -> None:
        self.jobs[name] = ScheduledJob(name=name, fn=fn, slot_for=slot_for)

    def _run(self, job: ScheduledJob) -> Dict[str, Any]:
        if not job.lock.acquire(blocking=False):
            logger.warning(f"Job {job.name} still running, skipping tick")
            return {"status": "already_running"}
        try:
            logger.info(f"Running scheduled job: {job.name}")
            job.last_result = job.fn()
            return {"status": "ok", "result": job.last_result}
        except Exception as e:
            logger.error(f"Scheduled job {job.name} failed: {e}")
            return {"status": "failed", "error": str(e)}
        finally:
            job.lock.release()

    def run_pending(self, now: Optional[datetime] = None) -> Dict[str, Dict[str, Any]]:
        """Run every job whose current slot has not run yet."""
        now = now or self.clock()
        results = {}
        for job in self.jobs.values():
            slot = job.slot_for(now)
            if slot is None or slot == job.last_slot:
                continue
            job.last_slot = slot
            if not self.idem.check_and_set(f"tick:{job.name}:{slot}", ttl=2 * 24 * 3600):
                logger.info(f"Job {job.name} slot {slot} already claimed")
                continue
            results[job.name] = self._run(job)
        return results

    def tick(self, name: str) -> Dict[str, Any]:
        """Run a job now, outside its schedule (manual trigger)."""
        job = self.jobs.get(name)
        if job is None:
            raise KeyError(name)
        return self._run(job)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started with jobs: {list(self.jobs)}")

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(self.poll_interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
        logger.info("Scheduler stopped")
