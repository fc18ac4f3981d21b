"""
Periodic background tasks (liveness sweep, statistics log).
Each task runs on its own daemon thread; a run that is still in progress
when the next tick arrives is skipped rather than overlapped.
"""

import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger("smartpole.scheduler")


class PeriodicTask:
    def __init__(self, name: str, interval_seconds: float, target: Callable[[], object]):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._target = target
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    def run_once(self) -> bool:
        """Invoke the target unless a previous invocation is still running."""
        if not self._running.acquire(blocking=False):
            logger.debug("task %s still running; tick skipped", self.name)
            return False
        try:
            self._target()
            self.runs += 1
        except Exception as e:
            logger.exception("task %s failed: %s", self.name, e)
        finally:
            self._running.release()
        return True

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
        self._thread.start()
        logger.info("started task %s (every %ss)", self.name, self.interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class TaskRunner:
    """Owns a set of periodic tasks so they can be started and stopped together."""

    def __init__(self):
        self._tasks: List[PeriodicTask] = []

    def add(self, name: str, interval_seconds: float, target: Callable[[], object]) -> PeriodicTask:
        task = PeriodicTask(name, interval_seconds, target)
        self._tasks.append(task)
        return task

    @property
    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks)

    def start(self) -> None:
        for task in self._tasks:
            task.start()

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()
        logger.info("background tasks stopped")
