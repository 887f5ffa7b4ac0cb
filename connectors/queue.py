import heapq
import itertools
import json
import threading
import time
import traceback
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union
import redis
from loguru import logger

from orchestration.errors import NonRetryableError
from orchestration.state import new_id, utcnow

Handler = Callable[[Dict[str, Any]], Any]
Delay = Union[int, float, timedelta]


def _seconds(delay: Optional[Delay]) -> float:
    if delay is None:
        return 0.0
    if isinstance(delay, timedelta):
        return delay.total_seconds()
    return float(delay)


@dataclass
class Backoff:
    """Retry delay policy applied after a handler failure."""
    type: str = "exponential"       # "exponential" | "fixed"
    delay: float = 1.0               # seconds
    max_delay: float = 3600.0

    def delay_for(self, attempts_made: int) -> float:
        if self.type == "fixed":
            return min(self.delay, self.max_delay)
        return min(self.delay * (2 ** max(0, attempts_made - 1)), self.max_delay)


@dataclass
class Task:
    name: str
    payload: Dict[str, Any]
    available_at: float
    max_attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    attempts_made: int = 0
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    last_error: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "Task":
        data = json.loads(raw)
        data["backoff"] = Backoff(**data.get("backoff") or {})
        return cls(**data)


@dataclass
class TaskOutcome:
    task: Task
    status: str                      # "completed" | "retry" | "dead"
    result: Any = None
    error: Optional[str] = None


class MemoryBackend:
    """Process-local task storage. Not durable: tasks die with the process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._ready: Dict[str, List] = {}
        self._tasks: Dict[str, Task] = {}
        self._inflight: Dict[str, float] = {}
        self._dead: List[Dict[str, Any]] = []

    def push(self, task: Task) -> None:
        with self._lock:
            self._tasks[task.id] = task
            heapq.heappush(self._ready.setdefault(task.name, []), (task.available_at, next(self._seq), task.id))

    def reserve(self, names: List[str], now: float, visibility: float) -> Optional[Task]:
        with self._lock:
            self._requeue_expired(now)
            best_name = None
            best_head = None
            for name in names:
                heap = self._ready.get(name)
                if heap and heap[0][0] <= now and (best_head is None or heap[0] < best_head):
                    best_name, best_head = name, heap[0]
            if best_name is None:
                return None
            _, _, task_id = heapq.heappop(self._ready[best_name])
            self._inflight[task_id] = now + visibility
            return self._tasks[task_id]

    def _requeue_expired(self, now: float) -> None:
        expired = [task_id for task_id, deadline in self._inflight.items() if deadline <= now]
        for task_id in expired:
            del self._inflight[task_id]
            task = self._tasks.get(task_id)
            if task:
                logger.warning(f"Task {task_id} ({task.name}) visibility expired, re-delivering")
                heapq.heappush(self._ready.setdefault(task.name, []), (now, next(self._seq), task_id))

    def ack(self, task: Task) -> None:
        with self._lock:
            self._inflight.pop(task.id, None)
            self._tasks.pop(task.id, None)

    def retry(self, task: Task) -> None:
        with self._lock:
            self._inflight.pop(task.id, None)
            self._tasks[task.id] = task
            heapq.heappush(self._ready.setdefault(task.name, []), (task.available_at, next(self._seq), task.id))

    def bury(self, task: Task, record: Dict[str, Any]) -> None:
        with self._lock:
            self._inflight.pop(task.id, None)
            self._tasks.pop(task.id, None)
            self._dead.append(record)

    def pending(self, name: Optional[str] = None) -> List[Task]:
        with self._lock:
            ids = [
                task_id
                for queue_name, heap in self._ready.items()
                if name is None or queue_name == name
                for _, _, task_id in sorted(heap)
            ]
            return [self._tasks[task_id] for task_id in ids if task_id in self._tasks]

    def dead_letters(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._dead)


class RedisBackend:
    """
    Redis storage: one sorted set per task name scored by available_at, a
    shared in-flight set scored by visibility deadline, and a dead-letter list.
    ZREM decides which worker owns a task, so each delivery goes to one worker.
    """

    def __init__(self, client: "redis.Redis", prefix: str = "leadflow"):
        self.r = client
        self.prefix = prefix

    def _queue_key(self, name: str) -> str:
        return f"{self.prefix}:queue:{name}"

    def _task_key(self, task_id: str) -> str:
        return f"{self.prefix}:task:{task_id}"

    @property
    def _inflight_key(self) -> str:
        return f"{self.prefix}:inflight"

    @property
    def _dead_key(self) -> str:
        return f"{self.prefix}:dead"

    def push(self, task: Task) -> None:
        pipe = self.r.pipeline()
        pipe.set(self._task_key(task.id), task.to_json())
        pipe.zadd(self._queue_key(task.name), {task.id: task.available_at})
        pipe.execute()

    def reserve(self, names: List[str], now: float, visibility: float) -> Optional[Task]:
        self._requeue_expired(now)

        heads = []
        for name in names:
            head = self.r.zrangebyscore(self._queue_key(name), "-inf", now, start=0, num=1, withscores=True)
            if head:
                member, score = head[0]
                task_id = member.decode() if isinstance(member, bytes) else member
                heads.append((score, name, task_id))

        for _, name, task_id in sorted(heads):
            if self.r.zrem(self._queue_key(name), task_id) != 1:
                continue  # another worker won the race
            self.r.zadd(self._inflight_key, {task_id: now + visibility})
            raw = self.r.get(self._task_key(task_id))
            if raw is None:
                self.r.zrem(self._inflight_key, task_id)
                continue
            return Task.from_json(raw)
        return None

    def _requeue_expired(self, now: float) -> None:
        for member in self.r.zrangebyscore(self._inflight_key, "-inf", now):
            task_id = member.decode() if isinstance(member, bytes) else member
            if self.r.zrem(self._inflight_key, task_id) != 1:
                continue
            raw = self.r.get(self._task_key(task_id))
            if raw is None:
                continue
            task = Task.from_json(raw)
            logger.warning(f"Task {task_id} ({task.name}) visibility expired, re-delivering")
            self.r.zadd(self._queue_key(task.name), {task_id: now})

    def ack(self, task: Task) -> None:
        pipe = self.r.pipeline()
        pipe.zrem(self._inflight_key, task.id)
        pipe.delete(self._task_key(task.id))
        pipe.execute()

    def retry(self, task: Task) -> None:
        pipe = self.r.pipeline()
        pipe.set(self._task_key(task.id), task.to_json())
        pipe.zrem(self._inflight_key, task.id)
        pipe.zadd(self._queue_key(task.name), {task.id: task.available_at})
        pipe.execute()

    def bury(self, task: Task, record: Dict[str, Any]) -> None:
        pipe = self.r.pipeline()
        pipe.rpush(self._dead_key, json.dumps(record, default=str))
        pipe.zrem(self._inflight_key, task.id)
        pipe.delete(self._task_key(task.id))
        pipe.execute()

    def pending(self, name: Optional[str] = None) -> List[Task]:
        if name is None:
            keys = [k.decode() if isinstance(k, bytes) else k for k in self.r.scan_iter(f"{self.prefix}:queue:*")]
        else:
            keys = [self._queue_key(name)]
        tasks = []
        for key in keys:
            for member in self.r.zrange(key, 0, -1):
                task_id = member.decode() if isinstance(member, bytes) else member
                raw = self.r.get(self._task_key(task_id))
                if raw:
                    tasks.append(Task.from_json(raw))
        return tasks

    def dead_letters(self) -> List[Dict[str, Any]]:
        return [json.loads(raw) for raw in self.r.lrange(self._dead_key, 0, -1)]


class TaskQueue:
    """
    Delayed, retrying task queue.

    A task is invisible until `available_at`; each delivery goes to exactly one
    registered handler. A handler that raises is retried with backoff until
    `max_attempts`, then dead-lettered. NonRetryableError skips the retries.
    Delivery is at-least-once: handlers must be safe to re-run.
    """

    def __init__(
        self,
        backend=None,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 3,
        backoff: Optional[Backoff] = None,
        visibility_timeout: float = 300.0,
    ):
        self.backend = backend or MemoryBackend()
        self.clock = clock
        self.default_max_attempts = max_attempts
        self.default_backoff = backoff or Backoff()
        self.visibility_timeout = visibility_timeout
        self._handlers: Dict[str, Handler] = {}

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], datetime] = utcnow) -> "TaskQueue":
        """Connect to Redis when configured; fall back to in-memory storage."""
        backend = None
        if settings.redis_url:
            try:
                client = redis.from_url(settings.redis_url)
                client.ping()
                backend = RedisBackend(client)
                logger.info("Task queue connected to Redis")
            except Exception as e:
                logger.error(f"Redis connection failed for task queue: {e}")
        if backend is None:
            logger.warning("Task queue using in-memory storage (tasks are lost on restart)")
            backend = MemoryBackend()
        return cls(
            backend=backend,
            clock=clock,
            max_attempts=settings.task_max_attempts,
            backoff=Backoff(delay=settings.task_backoff_seconds, max_delay=settings.task_backoff_max_seconds),
            visibility_timeout=settings.visibility_timeout_seconds,
        )

    def _now(self) -> float:
        return self.clock().timestamp()

    def enqueue(
        self,
        name: str,
        payload: Dict[str, Any],
        delay: Optional[Delay] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[Backoff] = None,
    ) -> str:
        task = Task(
            name=name,
            payload=dict(payload),
            available_at=self._now() + _seconds(delay),
            max_attempts=max_attempts or self.default_max_attempts,
            backoff=backoff or self.default_backoff,
            created_at=self._now(),
        )
        self.backend.push(task)
        logger.info(f"Enqueued task {task.id}: {name} delay={_seconds(delay):.0f}s payload={payload}")
        return task.id

    def consume(self, name: str, handler: Handler) -> None:
        if name in self._handlers:
            logger.warning(f"Replacing handler for task {name}")
        self._handlers[name] = handler

    @property
    def task_names(self) -> List[str]:
        return list(self._handlers)

    def process_next(self, now: Optional[datetime] = None) -> Optional[TaskOutcome]:
        """Reserve one ready task, run its handler and settle it."""
        ts = now.timestamp() if now else self._now()
        task = self.backend.reserve(self.task_names, ts, self.visibility_timeout)
        if task is None:
            return None

        handler = self._handlers[task.name]
        task.attempts_made += 1
        logger.info(f"Task {task.id} started: {task.name} attempt {task.attempts_made}/{task.max_attempts}")

        try:
            result = handler(task.payload)
        except Exception as e:
            return self._settle_failure(task, e, ts)

        self.backend.ack(task)
        logger.info(f"Task {task.id} completed: {task.name}")
        return TaskOutcome(task=task, status="completed", result=result)

    def _settle_failure(self, task: Task, error: Exception, ts: float) -> TaskOutcome:
        task.last_error = f"{type(error).__name__}: {error}"

        if isinstance(error, NonRetryableError) or task.attempts_made >= task.max_attempts:
            record = {
                "task_id": task.id,
                "name": task.name,
                "payload": task.payload,
                "attempts_made": task.attempts_made,
                "error": task.last_error,
                "traceback": traceback.format_exc(),
                "failed_at": ts,
            }
            self.backend.bury(task, record)
            logger.error(
                f"Task {task.id} dead: {task.name} after {task.attempts_made} attempt(s) "
                f"payload={task.payload} error={task.last_error}"
            )
            return TaskOutcome(task=task, status="dead", error=task.last_error)

        delay = task.backoff.delay_for(task.attempts_made)
        task.available_at = ts + delay
        self.backend.retry(task)
        logger.warning(f"Task {task.id} failed: {task.name} ({task.last_error}), retrying in {delay:.0f}s")
        return TaskOutcome(task=task, status="retry", error=task.last_error)

    def drain(self, now: Optional[datetime] = None, limit: int = 1000) -> List[TaskOutcome]:
        """Run every task that is ready at `now`, including ones enqueued meanwhile."""
        outcomes = []
        while len(outcomes) < limit:
            outcome = self.process_next(now)
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes

    def pending(self, name: Optional[str] = None) -> List[Task]:
        return self.backend.pending(name)

    def dead_letters(self) -> List[Dict[str, Any]]:
        return self.backend.dead_letters()
