"""HTTP batch transport.

Messages are buffered in memory and POSTed as one JSON array on a fixed
period. The buffer is cleared after every POST, whether it succeeded or not.
"""

from __future__ import annotations

import logging
import time
from queue import Empty
from typing import TYPE_CHECKING

import httpx

from snitch.codec import encode_message, join_batch
from snitch.errors import SerializationError
from snitch.transport.base import Transport

if TYPE_CHECKING:
    from snitch.channel import MessageChannel
    from snitch.points import Message
    from snitch.settings import Settings

logger = logging.getLogger(__name__)

INGEST_PATH = "/api/put"


class HTTPTransport(Transport):
    """Buffers messages and POSTs them in batches."""

    name = "http"

    def __init__(
        self,
        settings: Settings,
        channel: MessageChannel,
        client: httpx.Client | None = None,
    ):
        """Initialize the transport.

        Args:
            settings: Engine settings (address, port, timeout, post interval).
            channel: Channel to consume.
            client: HTTP client to use. Built from settings when omitted.
        """
        super().__init__(settings, channel)
        scheme = "https" if settings.https else "http"
        self.url = f"{scheme}://{settings.address}:{settings.port}{INGEST_PATH}"
        self.post_interval = settings.post_interval_seconds
        self.verbose = settings.raise_debug_verbosity
        self.pending: list[Message] = []
        if client is None:
            client = httpx.Client(
                timeout=settings.timeout_seconds,
                verify=not settings.insecure_skip_verify,
            )
        self._client = client

    def run(self) -> None:
        # Receiving and flushing share this one loop, so pending has a single writer
        next_flush = time.monotonic() + self.post_interval
        while True:
            remaining = next_flush - time.monotonic()
            if remaining > 0:
                try:
                    self.pending.append(self.channel.get(timeout=remaining))
                    continue
                except Empty:
                    pass

            self.flush_pending()

            now = time.monotonic()
            next_flush += self.post_interval
            if next_flush <= now:
                next_flush = now + self.post_interval

    def flush_pending(self) -> bool:
        """POST the pending messages as one batch and clear the buffer.

        Returns:
            True if the backend accepted the batch (or there was nothing
            to send), False if the batch was dropped.
        """
        if not self.pending:
            return True

        pending = self.pending
        self.pending = []

        # An unencodable message only costs itself, not the whole batch
        batch: list[bytes] = []
        for message in pending:
            try:
                batch.append(encode_message(message))
            except SerializationError as e:
                logger.error(f"marshal {message.metric}: {e}")
                self.dropped += 1
        if not batch:
            return False
        payload = join_batch(batch)

        try:
            response = self._client.post(
                self.url,
                content=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error(f"POST {self.url}: {e}")
            self.dropped += len(batch)
            return False

        if response.status_code != httpx.codes.NO_CONTENT:
            logger.warning(
                f"POST {self.url} returned {response.status_code}, "
                f"dropped {len(batch)} points"
            )
            if self.verbose:
                logger.debug(response.text)
            self.dropped += len(batch)
            return False

        self.sent += len(batch)
        return True

    def _cleanup(self) -> None:
        self._client.close()
