"""Common behavior of the transport strategies.

A transport owns one background thread that consumes the message channel
until the channel is closed. Delivery is at most once: failures are logged
and the affected messages are dropped.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from snitch.channel import ChannelClosed

if TYPE_CHECKING:
    from snitch.channel import MessageChannel
    from snitch.settings import Settings

logger = logging.getLogger(__name__)


class Transport(ABC):
    """Ships messages taken from a channel to the backend."""

    name = "transport"

    def __init__(self, settings: Settings, channel: MessageChannel):
        self.settings = settings
        self.channel = channel
        self.sent = 0
        self.dropped = 0
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the transport loop in a background thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._loop, name=f"snitch-{self.name}", daemon=True
        )
        self._thread.start()

    def close(self, timeout: float | None = None) -> None:
        """Stop the loop and wait for it to exit.

        Closing the channel wakes the loop even while it waits for a
        message or a timer.
        """
        self.channel.close()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(f"{self.name} transport did not stop within {timeout}s")
        else:
            self._cleanup()

    def _loop(self) -> None:
        logger.info(f"{self.name} transport started")
        try:
            self.run()
        except ChannelClosed:
            pass
        except Exception as e:
            logger.error(f"{self.name} transport crashed: {e}", exc_info=True)
        finally:
            self._cleanup()
            logger.info(f"terminating the {self.name} client loop")

    @abstractmethod
    def run(self) -> None:
        """Consume the channel until it raises ChannelClosed."""

    def _cleanup(self) -> None:
        """Release network resources."""
