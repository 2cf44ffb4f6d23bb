"""Exception types raised by snitch."""

from __future__ import annotations


class SnitchError(Exception):
    """Base class for all snitch errors."""


class ConfigurationError(SnitchError, ValueError):
    """Invalid engine settings or metric registration parameters."""


class ScheduleParseError(SnitchError, ValueError):
    """Malformed schedule or duration expression."""


class TransportError(SnitchError):
    """Failure to deliver a message or batch to the backend."""


class SerializationError(SnitchError):
    """A message could not be encoded to the wire format."""


class EngineStateError(SnitchError):
    """Operation not allowed in the engine's current lifecycle state."""
