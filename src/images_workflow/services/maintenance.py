"""Periodic sweeps run inside the worker process."""

import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from ..core.config import EngineConfig
from ..core.observability import LogContext, StructuredLogger
from ..core.protocols import LoggerProtocol


@dataclass
class SweepTask:
    """A sweep and the monotonic time it is next due."""

    name: str
    interval: float
    action: Callable[[], int]
    next_due: float = 0.0
    runs: int = 0
    failures: int = 0


class MaintenanceScheduler:
    """
    Runs the expiry and reconciliation sweeps on fixed intervals.

    Sweeps run on the worker engine and share its database connection. A
    sweep that raises is logged and tried again at its next interval.
    """

    def __init__(
        self,
        logger: Optional[LoggerProtocol] = None,
        monotonic: Callable[[], float] = time.monotonic,
        tick_seconds: float = 1.0,
    ):
        self._logger = logger or StructuredLogger("maintenance")
        self._monotonic = monotonic
        self._tick_seconds = tick_seconds
        self._tasks: List[SweepTask] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def for_engine(
        cls,
        config: EngineConfig,
        expire_stale: Callable[[], int],
        reconcile_stuck: Callable[[], int],
        logger: Optional[LoggerProtocol] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> "MaintenanceScheduler":
        """Schedule both sweeps; an interval of 0 disables that sweep."""
        scheduler = cls(logger=logger, monotonic=monotonic)
        if config.expire_interval_seconds > 0:
            scheduler.add("expire_stale", config.expire_interval_seconds, expire_stale)
        if config.reconcile_interval_seconds > 0:
            scheduler.add("reconcile_stuck", config.reconcile_interval_seconds, reconcile_stuck)
        return scheduler

    @property
    def tasks(self) -> List[SweepTask]:
        return list(self._tasks)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def add(self, name: str, interval: float, action: Callable[[], int]) -> SweepTask:
        if interval <= 0:
            raise ValueError("interval must be positive")
        # First run happens one interval after scheduling.
        task = SweepTask(name, interval, action, next_due=self._monotonic() + interval)
        self._tasks.append(task)
        return task

    def run_pending(self) -> List[str]:
        """Run every sweep that is due. Returns the names that ran."""
        ran = []
        now = self._monotonic()
        for task in self._tasks:
            if now < task.next_due:
                continue
            task.next_due = now + task.interval
            ran.append(task.name)
            self._run(task)
        return ran

    def _run(self, task: SweepTask) -> None:
        context = LogContext(operation=task.name, component="maintenance")
        try:
            count = task.action()
        except Exception as e:
            task.failures += 1
            self._logger.error("Scheduled sweep failed", context, error=str(e))
            return
        task.runs += 1
        self._logger.debug("Scheduled sweep finished", context, count=count)

    def start(self) -> None:
        if self.running or not self._tasks:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="maintenance", daemon=True
        )
        self._thread.start()
        self._logger.info(
            "Maintenance sweeps scheduled",
            sweeps=", ".join(f"{t.name}/{t.interval:g}s" for t in self._tasks),
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.wait(self._tick_seconds):
            self.run_pending()
