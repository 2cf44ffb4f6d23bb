"""Fixed-period scheduling for aggregator flushes.

Each registered job fires on its own interval. A single thread keeps a heap
of deadlines and hands due jobs to a small worker pool, so one slow flush
never delays the others. A job is only re-armed once its previous firing
has returned, which keeps firings of the same job strictly sequential.

Schedule expressions:
    "@every 10s", "@every 1m30s", "@every 250ms", "@hourly", "@daily"
"""

from __future__ import annotations

import heapq
import itertools
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor

from snitch.errors import ScheduleParseError

logger = logging.getLogger(__name__)

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")

_DESCRIPTORS = {
    "@hourly": 3600.0,
    "@daily": 86400.0,
}


def parse_duration(text: str | int | float) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (already in seconds) or Go-style duration strings
    such as "5s", "1m30s", "1.5h" or "250ms".

    Args:
        text: The duration to parse.

    Returns:
        The duration in seconds, always greater than zero.

    Raises:
        ScheduleParseError: If the duration is malformed or not positive.
    """
    if isinstance(text, bool):
        raise ScheduleParseError(f"Invalid duration: {text!r}")

    if isinstance(text, (int, float)):
        seconds = float(text)
    elif isinstance(text, str):
        value = text.strip()
        if not value:
            raise ScheduleParseError("Empty duration")

        seconds = 0.0
        position = 0
        for match in _DURATION_PART.finditer(value):
            if match.start() != position:
                break
            seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
            position = match.end()

        if position != len(value):
            raise ScheduleParseError(f"Invalid duration: {text!r}")
    else:
        raise ScheduleParseError(f"Invalid duration: {text!r}")

    if seconds <= 0:
        raise ScheduleParseError(f"Duration must be positive: {text!r}")
    return seconds


def parse_schedule(expr: str) -> float:
    """Parse a schedule expression into its period in seconds.

    Args:
        expr: An "@every <duration>" expression or a fixed-period descriptor.

    Returns:
        The firing period in seconds.

    Raises:
        ScheduleParseError: If the expression is not supported.
    """
    if not isinstance(expr, str):
        raise ScheduleParseError(f"Invalid schedule: {expr!r}")

    value = expr.strip()
    if value in _DESCRIPTORS:
        return _DESCRIPTORS[value]

    prefix, _, duration = value.partition(" ")
    if prefix != "@every" or not duration.strip():
        raise ScheduleParseError(
            f"Invalid schedule {expr!r}: expected '@every <duration>'"
        )
    return parse_duration(duration)


class Schedulable(ABC):
    """Something the scheduler can fire periodically."""

    @property
    @abstractmethod
    def interval(self) -> float:
        """Seconds between two firings."""

    @abstractmethod
    def fire(self) -> None:
        """Run one scheduled firing."""


class Scheduler:
    """Fires each added job on its own fixed period."""

    def __init__(self, workers: int = 4):
        """Initialize the scheduler.

        Args:
            workers: Number of threads available to run firings concurrently.
        """
        self.workers = workers
        self._heap: list[tuple[float, int, Schedulable]] = []
        self._jobs: set[Schedulable] = set()
        self._sequence = itertools.count()
        self._cond = threading.Condition()
        self._executor: ThreadPoolExecutor | None = None
        self._thread: threading.Thread | None = None
        self._stopped = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._jobs)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def add(self, job: Schedulable) -> None:
        """Schedule a job, first firing one interval from now.

        Safe to call before or after start(); already scheduled jobs are
        not disturbed. Adding a job twice has no effect.
        """
        with self._cond:
            if self._stopped or job in self._jobs:
                return
            self._jobs.add(job)
            self._push(job, time.monotonic() + job.interval)
            self._cond.notify()

    def start(self) -> None:
        """Start the scheduling thread."""
        with self._cond:
            if self._thread is not None or self._stopped:
                return
            self._executor = ThreadPoolExecutor(
                max_workers=self.workers, thread_name_prefix="snitch-flush"
            )
            self._thread = threading.Thread(
                target=self._run, name="snitch-scheduler", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop firing jobs.

        Wakes the scheduling thread immediately and drops firings that have
        not started yet. Firings already running are left to finish.
        """
        with self._cond:
            self._stopped = True
            self._heap.clear()
            self._jobs.clear()
            self._cond.notify_all()

        if self._thread is not None:
            self._thread.join(timeout)
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def _push(self, job: Schedulable, deadline: float) -> None:
        heapq.heappush(self._heap, (deadline, next(self._sequence), job))

    def _run(self) -> None:
        with self._cond:
            while not self._stopped:
                if not self._heap:
                    self._cond.wait()
                    continue

                deadline, _, job = self._heap[0]
                delay = deadline - time.monotonic()
                if delay > 0:
                    self._cond.wait(delay)
                    continue

                heapq.heappop(self._heap)
                try:
                    self._executor.submit(self._fire, job, deadline)
                except RuntimeError:
                    # Executor already shut down
                    return

    def _fire(self, job: Schedulable, deadline: float) -> None:
        try:
            job.fire()
        except Exception as e:
            logger.error(f"Scheduled job {job!r} failed: {e}", exc_info=True)
        finally:
            now = time.monotonic()
            next_deadline = deadline + job.interval
            if next_deadline <= now:
                # Skip firings missed while this one was running
                next_deadline = now + job.interval
            with self._cond:
                if not self._stopped:
                    self._push(job, next_deadline)
                    self._cond.notify()
