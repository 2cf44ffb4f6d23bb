"""Datagram transport: one JSON object per UDP packet, sent immediately."""

from __future__ import annotations

import logging
import socket
from typing import TYPE_CHECKING

from snitch.codec import encode_message
from snitch.errors import SerializationError, TransportError
from snitch.transport.base import Transport

if TYPE_CHECKING:
    from snitch.channel import MessageChannel
    from snitch.points import Message
    from snitch.settings import Settings

logger = logging.getLogger(__name__)


class UDPTransport(Transport):
    """Sends every message as its own datagram.

    The socket is opened once when the loop starts. After a connect or
    write failure the socket is dropped and reopened before the next
    message; the message that failed is lost.
    """

    name = "udp"

    def __init__(self, settings: Settings, channel: MessageChannel):
        super().__init__(settings, channel)
        self.address = settings.address
        self.port = settings.port
        self._sock: socket.socket | None = None

    def run(self) -> None:
        self._open()
        while True:
            self.send(self.channel.get())

    def send(self, message: Message) -> bool:
        """Write one message to the backend.

        Returns:
            True if the datagram was written, False if it was dropped.
        """
        try:
            payload = encode_message(message)
        except SerializationError as e:
            logger.error(f"marshal {message.metric}: {e}")
            self.dropped += 1
            return False

        if self._sock is None and not self._open():
            self.dropped += 1
            return False

        try:
            self._sock.send(payload)
        except OSError as e:
            logger.error(f"write to {self.address}:{self.port}: {e}")
            self.dropped += 1
            self._cleanup()
            return False

        self.sent += 1
        return True

    def _open(self) -> bool:
        try:
            self._sock = self._connect()
        except TransportError as e:
            logger.error(f"connect: {e}")
            self._sock = None
            return False
        return True

    def _connect(self) -> socket.socket:
        try:
            infos = socket.getaddrinfo(self.address, self.port, type=socket.SOCK_DGRAM)
            family, sock_type, proto, _, sockaddr = infos[0]
            sock = socket.socket(family, sock_type, proto)
        except OSError as e:
            raise TransportError(f"{self.address}:{self.port}: {e}") from e

        try:
            sock.connect(sockaddr)
        except OSError as e:
            sock.close()
            raise TransportError(f"{self.address}:{self.port}: {e}") from e
        return sock

    def _cleanup(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
