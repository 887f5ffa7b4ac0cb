import threading
from typing import List
from loguru import logger

from connectors.queue import TaskQueue


class WorkerPool:
    """N threads pulling ready tasks off the queue."""

    def __init__(self, queue: TaskQueue, size: int = 4, poll_interval: float = 1.0):
        self.queue = queue
        self.size = size
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._work, name=f"worker-{i}", daemon=True)
            for i in range(self.size)
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Started {self.size} workers for tasks: {self.queue.task_names}")

    def _work(self) -> None:
        while not self._stop.is_set():
            try:
                outcome = self.queue.process_next()
            except Exception as e:
                logger.error(f"Worker failed to reserve task: {e}")
                outcome = None
            if outcome is None:
                self._stop.wait(self.poll_interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        logger.info("Workers stopped")
