"""Transport strategies shipping messages to the backend."""

from __future__ import annotations

from typing import TYPE_CHECKING

from snitch.transport.base import Transport
from snitch.transport.http import HTTPTransport
from snitch.transport.udp import UDPTransport

if TYPE_CHECKING:
    from snitch.channel import MessageChannel
    from snitch.settings import Settings

__all__ = [
    "Transport",
    "HTTPTransport",
    "UDPTransport",
    "create_transport",
]


def create_transport(settings: Settings, channel: MessageChannel) -> Transport:
    """Build the transport selected by settings.protocol."""
    if settings.transport == "http":
        return HTTPTransport(settings, channel)
    return UDPTransport(settings, channel)
