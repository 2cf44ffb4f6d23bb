"""Metric points: identities, aggregators and the point registry.

An aggregator accumulates every sample recorded for one metric identity
(metric name plus tag set) and turns them into a single outgoing message
each time its schedule fires. The registry guarantees that at most one
aggregator exists per identity.

Usage:
    registry = PointRegistry(default_tags, emit=channel.put)
    agg = registry.get_or_create(
        MetricIdentity.of("request.count", {"method": "GET"}),
        AggregationKind.COUNT,
        interval=60.0,
    )
    agg.update()
    message = agg.flush()
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping

from snitch.errors import ConfigurationError
from snitch.schedule import Schedulable

logger = logging.getLogger(__name__)

# Tag every point must carry; point tags may never override it.
IDENTITY_TAG = "ksid"


class AggregationKind(Enum):
    """How repeated samples combine into one flushed value."""

    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MAX = "max"
    MIN = "min"

    @classmethod
    def parse(cls, value: AggregationKind | str) -> AggregationKind:
        """Resolve a kind from its name.

        Raises:
            ConfigurationError: If the name is not a known aggregation kind.
        """
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower()
        if name == "average":
            return cls.AVG
        try:
            return cls(name)
        except ValueError:
            valid = ", ".join(kind.value for kind in cls)
            raise ConfigurationError(
                f"Unknown aggregation kind {value!r}. Valid kinds are: {valid}"
            ) from None


def normalize_tags(tags: Mapping[Any, Any] | None) -> dict[str, str]:
    """Return a copy of tags with string keys and values."""
    if not tags:
        return {}
    return {str(k): str(v) for k, v in tags.items()}


def merge_tags(defaults: Mapping[str, str], tags: Mapping[str, str]) -> dict[str, str]:
    """Merge point tags over the process-wide default tags.

    Point tags override defaults, except the identity tag which always
    keeps its default value.
    """
    merged = dict(defaults)
    merged.update(tags)
    if IDENTITY_TAG in defaults:
        merged[IDENTITY_TAG] = defaults[IDENTITY_TAG]
    return merged


@dataclass(frozen=True)
class Message:
    """One finalized point ready to be shipped.

    Attributes:
        metric: The metric name.
        tags: Fully merged tag set.
        value: The numeric value.
        timestamp: Unix time in seconds when the point was emitted.
    """

    metric: str
    tags: Mapping[str, str]
    value: float
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to the backend's JSON object shape."""
        return {
            "metric": self.metric,
            "tags": {k: self.tags[k] for k in sorted(self.tags)},
            "value": self.value,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class MetricIdentity:
    """A metric name and its tag set, compared by value."""

    name: str
    tag_items: frozenset[tuple[str, str]] = field(default_factory=frozenset)

    @classmethod
    def of(cls, name: str, tags: Mapping[Any, Any] | None = None) -> MetricIdentity:
        if not name:
            raise ConfigurationError("Metric name is required")
        return cls(name=name, tag_items=frozenset(normalize_tags(tags).items()))

    @property
    def tags(self) -> dict[str, str]:
        return dict(self.tag_items)


class Aggregator(Schedulable):
    """Accumulates the samples of one metric identity.

    Updates and flushes on the same aggregator are serialized by its own
    lock; different aggregators never contend with each other.
    """

    def __init__(
        self,
        identity: MetricIdentity,
        kind: AggregationKind,
        interval: float,
        default_tags: Mapping[str, str],
        emit: Callable[[Message], Any],
        reset: bool = True,
        raw: bool = False,
    ):
        """Initialize the aggregator.

        Args:
            identity: The metric identity this aggregator owns.
            kind: How samples are combined.
            interval: Seconds between scheduled flushes.
            default_tags: Process-wide tags merged into every message.
            emit: Callback receiving each finalized message.
            reset: Clear accumulated state after every flush. When False the
                state is cumulative across flushes.
            raw: Skip aggregation and emit every sample as its own message.
        """
        self.identity = identity
        self.kind = kind
        self.reset = reset
        self.raw = raw
        self._interval = interval
        self._tags = MappingProxyType(merge_tags(default_tags, identity.tags))
        self._emit = emit
        self._lock = threading.Lock()
        self._value = 0.0
        self._count = 0
        self._pending = 0

    def __repr__(self) -> str:
        return (
            f"Aggregator({self.identity.name!r}, kind={self.kind.value}, "
            f"interval={self._interval}s)"
        )

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def tags(self) -> dict[str, str]:
        return dict(self._tags)

    def update(self, value: float = 1.0) -> None:
        """Combine one sample into the accumulated state.

        For count aggregators each call adds one, whatever the value.

        Raises:
            ValueError: If a non-count sample is NaN or infinite.
        """
        if self.kind is AggregationKind.COUNT:
            value = 1.0
        else:
            value = float(value)
            if not math.isfinite(value):
                raise ValueError(
                    f"Non-finite sample {value!r} for {self.identity.name}"
                )

        if self.raw:
            self._emit(self._message(value))
            return

        with self._lock:
            if self.kind is AggregationKind.COUNT:
                self._value += 1
            elif self.kind in (AggregationKind.SUM, AggregationKind.AVG):
                self._value += value
            elif self.kind is AggregationKind.MAX:
                if self._count == 0 or value > self._value:
                    self._value = value
            elif self.kind is AggregationKind.MIN:
                if self._count == 0 or value < self._value:
                    self._value = value
            self._count += 1
            self._pending += 1

    def flush(self) -> Message | None:
        """Compute the message for the current interval.

        Returns:
            The message to ship, or None if no sample arrived since the
            previous flush.
        """
        with self._lock:
            if self._pending == 0:
                return None

            if self.kind is AggregationKind.AVG:
                value = self._value / self._count
            else:
                value = self._value

            self._pending = 0
            if self.reset:
                self._value = 0.0
                self._count = 0

        return self._message(value)

    def fire(self) -> None:
        """Flush and emit the result, if any."""
        message = self.flush()
        if message is not None:
            self._emit(message)

    def _message(self, value: float) -> Message:
        return Message(
            metric=self.identity.name,
            tags=self._tags,
            value=value,
            timestamp=int(time.time()),
        )


class PointRegistry:
    """Maps metric identities to their aggregators.

    Lookups and inserts rely on dict.setdefault being atomic, so there is
    no registry-wide lock on the update path. When two callers race to
    create the same identity the first one wins and the other is bound to
    the existing aggregator, even if it asked for different parameters.
    """

    def __init__(
        self,
        default_tags: Mapping[str, str],
        emit: Callable[[Message], Any],
        raw_emit: Callable[[Message], Any] | None = None,
        on_create: Callable[[Aggregator], None] | None = None,
    ):
        """Initialize the registry.

        Args:
            default_tags: Tags merged into every message.
            emit: Receives messages produced by scheduled flushes.
            raw_emit: Receives messages produced by raw aggregators.
                Defaults to emit.
            on_create: Called once for every newly created aggregator.
        """
        self.default_tags = dict(default_tags)
        self._emit = emit
        self._raw_emit = raw_emit or emit
        self._on_create = on_create
        self._points: dict[MetricIdentity, Aggregator] = {}

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[Aggregator]:
        return iter(list(self._points.values()))

    def get(self, identity: MetricIdentity) -> Aggregator | None:
        return self._points.get(identity)

    def get_or_create(
        self,
        identity: MetricIdentity,
        kind: AggregationKind,
        interval: float,
        reset: bool = True,
        raw: bool = False,
    ) -> Aggregator:
        """Return the aggregator for identity, creating it on first use."""
        existing = self._points.get(identity)
        if existing is not None:
            return existing

        candidate = Aggregator(
            identity,
            kind,
            interval,
            self.default_tags,
            emit=self._raw_emit if raw else self._emit,
            reset=reset,
            raw=raw,
        )
        winner = self._points.setdefault(identity, candidate)
        if winner is candidate:
            logger.debug(f"Registered {candidate!r}")
            if self._on_create is not None:
                self._on_create(candidate)
        return winner
