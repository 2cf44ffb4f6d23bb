"""Snitch - client-side metrics aggregation and dispatch.

Applications record counters and value samples; snitch pre-aggregates them
per metric and tag set and periodically ships the aggregated points to a
time-series backend over UDP or batched HTTP.
"""

__version__ = "0.1.0"

from snitch.engine import Engine, EngineState, MetricsRecorder
from snitch.errors import (
    ConfigurationError,
    EngineStateError,
    ScheduleParseError,
    SerializationError,
    SnitchError,
    TransportError,
)
from snitch.points import AggregationKind, Message, MetricIdentity
from snitch.settings import Settings

__all__ = [
    "Engine",
    "EngineState",
    "MetricsRecorder",
    "Settings",
    "AggregationKind",
    "Message",
    "MetricIdentity",
    "SnitchError",
    "ConfigurationError",
    "ScheduleParseError",
    "SerializationError",
    "TransportError",
    "EngineStateError",
]
