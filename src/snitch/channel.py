"""Handoff channel between aggregators and the active transport."""

from __future__ import annotations

import threading
import time
from collections import deque
from queue import Empty
from typing import TYPE_CHECKING

from snitch.errors import SnitchError

if TYPE_CHECKING:
    from snitch.points import Message

DEFAULT_CAPACITY = 1024


class ChannelClosed(SnitchError):
    """Raised by MessageChannel.get() once the channel has been closed."""


class MessageChannel:
    """Bounded FIFO of finalized messages.

    Producers block in put() while the channel is full, which is how a slow
    transport pushes back on scheduled flushes. close() wakes every blocked
    producer and consumer at once.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("Channel capacity must be at least 1")
        self.capacity = capacity
        self._items: deque[Message] = deque()
        self._cond = threading.Condition()
        self._closed = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, message: Message, block: bool = True) -> bool:
        """Hand a message to the transport.

        Args:
            message: The message to enqueue.
            block: Wait for free space when the channel is full. When False
                a full channel rejects the message instead.

        Returns:
            True if the message was enqueued, False if it was rejected
            because the channel is full (non-blocking) or closed.
        """
        with self._cond:
            while not self._closed and len(self._items) >= self.capacity:
                if not block:
                    return False
                self._cond.wait()

            if self._closed:
                return False

            self._items.append(message)
            self._cond.notify_all()
            return True

    def get(self, timeout: float | None = None) -> Message:
        """Take the next message, waiting up to timeout seconds.

        Raises:
            queue.Empty: If no message arrived before the timeout.
            ChannelClosed: If the channel is closed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    raise ChannelClosed("channel closed")
                if self._items:
                    message = self._items.popleft()
                    self._cond.notify_all()
                    return message

                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise Empty
                    self._cond.wait(remaining)

    def close(self) -> None:
        """Close the channel. Queued messages are discarded."""
        with self._cond:
            self._closed = True
            self._items.clear()
            self._cond.notify_all()
