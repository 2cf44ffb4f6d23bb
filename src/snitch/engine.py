"""The metrics engine.

Callers record samples with increment() and record_value(); the engine
aggregates them per metric identity, flushes each aggregator on its own
schedule and ships the results through the configured transport.

Usage:
    settings = Settings(
        address="tsdb.example.com",
        port=8087,
        protocol="udp",
        tags={"ksid": "my-service"},
    )
    with Engine(settings) as engine:
        engine.increment("request.count", {"method": "GET"}, "@every 1m")
        engine.record_value(
            "request.duration", {"method": "GET"}, "avg", "@every 1m", 12.5
        )
"""

from __future__ import annotations

import logging
import socket
import threading
from enum import Enum
from typing import Any, Callable, Mapping, Protocol

from snitch.channel import MessageChannel
from snitch.errors import EngineStateError
from snitch.points import (
    AggregationKind,
    Aggregator,
    Message,
    MetricIdentity,
    PointRegistry,
)
from snitch.runtime import RuntimeMonitor
from snitch.schedule import Scheduler, parse_schedule
from snitch.settings import Settings
from snitch.transport import Transport, create_transport

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 5.0


class MetricsRecorder(Protocol):
    """The part of the engine that instrumented code needs."""

    def increment(
        self,
        metric: str,
        tags: Mapping[str, Any] | None,
        schedule: str,
        reset: bool = True,
        raw: bool = False,
    ) -> None: ...

    def record_value(
        self,
        metric: str,
        tags: Mapping[str, Any] | None,
        kind: AggregationKind | str,
        schedule: str,
        value: float,
        reset: bool = True,
        raw: bool = False,
    ) -> None: ...


class EngineState(Enum):
    """Lifecycle states of an engine."""

    UNSTARTED = "unstarted"
    RUNNING = "running"
    TERMINATED = "terminated"


class Engine:
    """Aggregates metrics locally and ships them to the backend.

    Construction only validates settings; nothing runs in the background
    until start(). Samples may be recorded before start() and are shipped
    once the engine runs. After terminate() recording is a no-op.
    """

    def __init__(
        self,
        settings: Settings,
        transport_factory: Callable[[Settings, MessageChannel], Transport] = create_transport,
    ):
        """Initialize the engine.

        Args:
            settings: Engine settings.
            transport_factory: Builds the transport from the settings and the
                engine's channel. Defaults to the strategy selected by
                settings.protocol.

        Raises:
            ConfigurationError: If settings are invalid.
        """
        settings.validate()
        self.settings = settings

        tags = dict(settings.tags)
        tags["host"] = socket.gethostname()
        self.tags = tags

        self.channel = MessageChannel(settings.channel_capacity)
        self.scheduler = Scheduler(workers=settings.flush_workers)
        self.registry = PointRegistry(
            tags,
            emit=self.channel.put,
            raw_emit=self._emit_raw,
            on_create=self._on_create,
        )
        self.transport = transport_factory(settings, self.channel)
        self.runtime_monitor: RuntimeMonitor | None = None
        if settings.runtime:
            self.runtime_monitor = RuntimeMonitor(
                self, interval=settings.runtime_interval_seconds
            )

        self._state = EngineState.UNSTARTED
        self._state_lock = threading.Lock()

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def shutdown_timeout(self) -> float:
        """Default wait for each loop in terminate()."""
        if self.settings.transport == "http":
            return max(DEFAULT_SHUTDOWN_TIMEOUT, self.settings.timeout_seconds + 1)
        return DEFAULT_SHUTDOWN_TIMEOUT

    def __enter__(self) -> Engine:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.terminate()

    def start(self) -> None:
        """Start shipping metrics in the background.

        Raises:
            EngineStateError: If the engine has been terminated.
        """
        with self._state_lock:
            if self._state is EngineState.RUNNING:
                return
            if self._state is EngineState.TERMINATED:
                raise EngineStateError("engine has been terminated")
            self._state = EngineState.RUNNING

            for aggregator in self.registry:
                if not aggregator.raw:
                    self.scheduler.add(aggregator)

        self.transport.start()
        self.scheduler.start()
        if self.runtime_monitor is not None:
            self.runtime_monitor.start()

        logger.info(
            f"Engine started: {self.settings.transport} to "
            f"{self.settings.address}:{self.settings.port}"
        )

    def terminate(self, timeout: float | None = None) -> None:
        """Stop every background loop and wait for them to exit.

        Messages not yet shipped are dropped. Calling terminate() more than
        once is harmless.

        Args:
            timeout: Seconds to wait for each loop. Defaults to
                shutdown_timeout, which outlasts an in-flight HTTP request.
        """
        if timeout is None:
            timeout = self.shutdown_timeout
        with self._state_lock:
            if self._state is EngineState.TERMINATED:
                return
            self._state = EngineState.TERMINATED

        if self.runtime_monitor is not None:
            self.runtime_monitor.stop(timeout)
        self.scheduler.stop(timeout)
        self.channel.close()
        self.transport.close(timeout)
        logger.info("Engine terminated")

    def increment(
        self,
        metric: str,
        tags: Mapping[str, Any] | None,
        schedule: str,
        reset: bool = True,
        raw: bool = False,
    ) -> None:
        """Count one occurrence of metric.

        Raises:
            ScheduleParseError: If schedule is malformed.
        """
        self._update(metric, tags, AggregationKind.COUNT, schedule, 1.0, reset, raw)

    def record_value(
        self,
        metric: str,
        tags: Mapping[str, Any] | None,
        kind: AggregationKind | str,
        schedule: str,
        value: float,
        reset: bool = True,
        raw: bool = False,
    ) -> None:
        """Record one sample of metric.

        Raises:
            ScheduleParseError: If schedule is malformed.
            ConfigurationError: If kind is not a known aggregation kind.
            ValueError: If value is NaN or infinite.
        """
        self._update(metric, tags, AggregationKind.parse(kind), schedule, value, reset, raw)

    def _update(
        self,
        metric: str,
        tags: Mapping[str, Any] | None,
        kind: AggregationKind,
        schedule: str,
        value: float,
        reset: bool,
        raw: bool,
    ) -> None:
        interval = parse_schedule(schedule)
        if self._state is EngineState.TERMINATED:
            logger.debug(f"Ignoring {metric}: engine terminated")
            return

        aggregator = self.registry.get_or_create(
            MetricIdentity.of(metric, tags), kind, interval, reset=reset, raw=raw
        )
        aggregator.update(value)

    def _on_create(self, aggregator: Aggregator) -> None:
        # Aggregators created before start() are scheduled by start()
        if aggregator.raw:
            return
        with self._state_lock:
            if self._state is EngineState.RUNNING:
                self.scheduler.add(aggregator)

    def _emit_raw(self, message: Message) -> None:
        if not self.channel.put(message, block=False) and not self.channel.closed:
            logger.warning(f"Channel full, dropped raw point {message.metric}")
