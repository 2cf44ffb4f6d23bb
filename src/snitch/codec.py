"""JSON wire format for outgoing points.

A datagram carries one JSON object; an HTTP batch carries a JSON array of
the same objects:

    {"metric": "request.count", "tags": {...}, "timestamp": 1700000000, "value": 42}
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Iterable

from snitch.errors import SerializationError

if TYPE_CHECKING:
    from snitch.points import Message


def _dumps(data: Any) -> bytes:
    try:
        return json.dumps(
            data, separators=(",", ":"), sort_keys=True, allow_nan=False
        ).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(str(e)) from e


def encode_message(message: Message) -> bytes:
    """Encode a single message as one JSON object."""
    return _dumps(message.to_dict())


def encode_batch(messages: Iterable[Message]) -> bytes:
    """Encode messages as a JSON array."""
    return join_batch(encode_message(message) for message in messages)


def join_batch(encoded: Iterable[bytes]) -> bytes:
    """Join messages already encoded by encode_message into a JSON array."""
    return b"[" + b",".join(encoded) + b"]"
