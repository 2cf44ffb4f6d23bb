"""Runtime monitor.

Periodically samples the number of live threads in the process and records
it through the regular aggregation pipeline.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from snitch.engine import MetricsRecorder

logger = logging.getLogger(__name__)

RUNTIME_METRIC = "runtime.threads.count"
RUNTIME_SCHEDULE = "@every 1m"


class RuntimeMonitor:
    """Records the live thread count on a fixed period."""

    def __init__(
        self,
        recorder: MetricsRecorder,
        interval: float = 30.0,
        schedule: str = RUNTIME_SCHEDULE,
    ):
        """Initialize the runtime monitor.

        Args:
            recorder: Where samples are recorded.
            interval: Seconds between two samples.
            schedule: Flush schedule of the runtime aggregator.
        """
        self.recorder = recorder
        self.interval = interval
        self.schedule = schedule
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._loop, name="snitch-runtime", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop sampling; interrupts a pending wait immediately."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def sample(self) -> None:
        """Record one sample of the live thread count."""
        self.recorder.record_value(
            RUNTIME_METRIC,
            {},
            "max",
            self.schedule,
            threading.active_count(),
        )

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.sample()
            except Exception as e:
                logger.error(f"Error sampling runtime: {e}", exc_info=True)
        logger.info("terminating the runtime loop")
