"""Tests for the UDP and HTTP transport strategies."""

import json
import logging
import socket
import threading
import time
from unittest.mock import MagicMock, patch

import httpx
import pytest

from snitch.channel import MessageChannel
from snitch.errors import TransportError
from snitch.points import Message
from snitch.settings import Settings
from snitch.transport import HTTPTransport, UDPTransport, create_transport


def wait_for(predicate, timeout: float = 2.0) -> bool:
    """Poll predicate until it returns True or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def make_message(value: float = 1.0) -> Message:
    """Create a test message."""
    return Message(
        metric="test.metric",
        tags={"ksid": "test", "host": "h1"},
        value=value,
        timestamp=1700000000,
    )


def udp_settings(port: int = 8125) -> Settings:
    return Settings(
        address="127.0.0.1", port=port, protocol="udp", tags={"ksid": "test"}
    )


def http_settings(post_interval: float = 3600, **overrides) -> Settings:
    return Settings(
        address="tsdb.local",
        port=8087,
        protocol="http",
        http_timeout="1s",
        http_post_interval=post_interval,
        tags={"ksid": "test"},
        **overrides,
    )


@pytest.fixture
def receiver():
    """A UDP socket bound to a free loopback port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()


class RecordingBackend:
    """httpx handler that records requests and answers with fixed statuses."""

    def __init__(self, statuses: list[int] | None = None, error: Exception | None = None):
        self.statuses = list(statuses or [204])
        self.error = error
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if self.error is not None:
            raise self.error
        return httpx.Response(status, text="backend says no" if status != 204 else "")

    def batches(self) -> list[list[dict]]:
        with self._lock:
            return [json.loads(r.content) for r in self.requests]


def make_http_transport(backend: RecordingBackend, channel: MessageChannel | None = None, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(backend))
    if channel is None:
        channel = MessageChannel()
    return HTTPTransport(http_settings(**kwargs), channel, client=client)


class TestCreateTransport:
    """Tests for the transport factory."""

    def test_udp(self):
        """Test that udp settings select UDPTransport."""
        assert isinstance(create_transport(udp_settings(), MessageChannel()), UDPTransport)

    def test_http(self):
        """Test that http settings select HTTPTransport."""
        transport = create_transport(http_settings(), MessageChannel())
        assert isinstance(transport, HTTPTransport)
        transport.close()


class TestUDPTransport:
    """Tests for UDPTransport."""

    def test_sends_each_message(self, receiver):
        """Test that every message becomes one datagram."""
        port = receiver.getsockname()[1]
        channel = MessageChannel()
        transport = UDPTransport(udp_settings(port), channel)
        transport.start()
        try:
            channel.put(make_message(1))
            channel.put(make_message(2))

            first = json.loads(receiver.recv(65535))
            second = json.loads(receiver.recv(65535))
        finally:
            transport.close(timeout=2)

        assert first == {
            "metric": "test.metric",
            "tags": {"host": "h1", "ksid": "test"},
            "value": 1,
            "timestamp": 1700000000,
        }
        assert second["value"] == 2
        assert transport.sent == 2

    def test_write_failure_reconnects(self):
        """Test that a failed write drops the message and reconnects."""
        transport = UDPTransport(udp_settings(), MessageChannel())
        broken = MagicMock()
        broken.send.side_effect = OSError("connection refused")
        healthy = MagicMock()
        transport._sock = broken

        with patch.object(transport, "_connect", return_value=healthy) as mock_connect:
            assert transport.send(make_message(1)) is False
            broken.close.assert_called_once()

            assert transport.send(make_message(2)) is True

        mock_connect.assert_called_once()
        healthy.send.assert_called_once()
        assert transport.dropped == 1
        assert transport.sent == 1

    def test_unreachable_backend_keeps_loop_running(self, caplog):
        """Test that dial failures are logged and the loop continues."""
        channel = MessageChannel()
        transport = UDPTransport(udp_settings(), channel)

        with patch.object(
            transport, "_connect", side_effect=TransportError("unreachable")
        ):
            with caplog.at_level(logging.ERROR, logger="snitch.transport.udp"):
                transport.start()
                for value in range(3):
                    channel.put(make_message(value))

                assert wait_for(lambda: transport.dropped == 3)
                assert transport.running
                transport.close(timeout=2)

        assert not transport.running
        assert "unreachable" in caplog.text

    def test_serialization_failure_is_dropped(self, caplog):
        """Test that a message that cannot be encoded is dropped."""
        transport = UDPTransport(udp_settings(), MessageChannel())
        transport._sock = MagicMock()

        with caplog.at_level(logging.ERROR, logger="snitch.transport.udp"):
            assert transport.send(make_message(float("nan"))) is False

        transport._sock.send.assert_not_called()
        assert transport.dropped == 1
        assert "marshal" in caplog.text

    def test_no_writes_after_close(self, receiver):
        """Test that nothing is sent once close() returns."""
        port = receiver.getsockname()[1]
        channel = MessageChannel()
        transport = UDPTransport(udp_settings(port), channel)
        transport.start()
        transport.close(timeout=2)

        assert not transport.running
        assert not channel.put(make_message())
        receiver.settimeout(0.1)
        with pytest.raises(socket.timeout):
            receiver.recv(65535)


class TestHTTPTransport:
    """Tests for HTTPTransport."""

    def test_url(self):
        """Test the ingest URL."""
        transport = make_http_transport(RecordingBackend())
        assert transport.url == "http://tsdb.local:8087/api/put"

    def test_https_url(self):
        """Test the ingest URL with TLS enabled."""
        transport = make_http_transport(RecordingBackend(), https=True)
        assert transport.url == "https://tsdb.local:8087/api/put"

    def test_flush_posts_batch(self):
        """Test that pending messages are POSTed as one JSON array."""
        backend = RecordingBackend([204])
        transport = make_http_transport(backend)
        transport.pending = [make_message(1), make_message(2)]

        assert transport.flush_pending() is True

        assert len(backend.requests) == 1
        request = backend.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://tsdb.local:8087/api/put"
        assert request.headers["Content-Type"] == "application/json"
        assert [point["value"] for point in backend.batches()[0]] == [1, 2]
        assert transport.pending == []
        assert transport.sent == 2

    def test_empty_flush_does_not_post(self):
        """Test that nothing is POSTed without pending messages."""
        backend = RecordingBackend()
        transport = make_http_transport(backend)

        assert transport.flush_pending() is True
        assert backend.requests == []

    def test_failure_clears_buffer(self, caplog):
        """Test that a non-204 response drops the batch like a success would."""
        backend = RecordingBackend([500])
        transport = make_http_transport(backend)
        transport.pending = [make_message(1)]

        with caplog.at_level(logging.WARNING, logger="snitch.transport.http"):
            assert transport.flush_pending() is False

        assert transport.pending == []
        assert transport.dropped == 1
        assert "500" in caplog.text

        # Next flush has nothing to redeliver
        assert transport.flush_pending() is True
        assert len(backend.requests) == 1

    def test_request_error_clears_buffer(self, caplog):
        """Test that a connection failure drops the batch."""
        backend = RecordingBackend(error=httpx.ConnectError("connection refused"))
        transport = make_http_transport(backend)
        transport.pending = [make_message(1), make_message(2)]

        with caplog.at_level(logging.ERROR, logger="snitch.transport.http"):
            assert transport.flush_pending() is False

        assert transport.pending == []
        assert transport.dropped == 2
        assert "connection refused" in caplog.text

    def test_verbose_logs_response_body(self, caplog):
        """Test that the response body is logged when verbosity is raised."""
        backend = RecordingBackend([400])
        transport = make_http_transport(backend, raise_debug_verbosity=True)
        transport.pending = [make_message()]

        with caplog.at_level(logging.DEBUG, logger="snitch.transport.http"):
            transport.flush_pending()

        assert "backend says no" in caplog.text

    def test_quiet_does_not_log_response_body(self, caplog):
        """Test that the response body is not logged by default."""
        backend = RecordingBackend([400])
        transport = make_http_transport(backend)
        transport.pending = [make_message()]

        with caplog.at_level(logging.DEBUG, logger="snitch.transport.http"):
            transport.flush_pending()

        assert "backend says no" not in caplog.text

    def test_serialization_failure_drops_batch(self):
        """Test that a batch with nothing encodable is dropped without a request."""
        backend = RecordingBackend()
        transport = make_http_transport(backend)
        transport.pending = [make_message(float("nan"))]

        assert transport.flush_pending() is False
        assert transport.pending == []
        assert transport.dropped == 1
        assert backend.requests == []

    def test_unencodable_message_spares_the_rest(self, caplog):
        """Test that only the unencodable message is dropped from a batch."""
        backend = RecordingBackend([204])
        transport = make_http_transport(backend)
        transport.pending = [make_message(1), make_message(float("nan")), make_message(2)]

        with caplog.at_level(logging.ERROR, logger="snitch.transport.http"):
            assert transport.flush_pending() is True

        assert [point["value"] for point in backend.batches()[0]] == [1, 2]
        assert transport.sent == 2
        assert transport.dropped == 1
        assert "marshal test.metric" in caplog.text

    def test_loop_batches_on_timer(self):
        """Test that the loop buffers messages and POSTs them on its timer."""
        backend = RecordingBackend([204])
        channel = MessageChannel()
        transport = make_http_transport(backend, channel, post_interval=0.1)
        transport.start()
        try:
            for value in range(3):
                channel.put(make_message(value))
            assert wait_for(lambda: transport.sent == 3)
        finally:
            transport.close(timeout=2)

        values = [point["value"] for batch in backend.batches() for point in batch]
        assert values == [0, 1, 2]

    def test_close_is_prompt_and_final(self):
        """Test that close() interrupts the timer and stops all POSTs."""
        backend = RecordingBackend([204])
        channel = MessageChannel()
        transport = make_http_transport(backend, channel, post_interval=3600)
        transport.start()
        channel.put(make_message())
        assert wait_for(lambda: len(transport.pending) == 1)

        start = time.monotonic()
        transport.close(timeout=2)

        assert time.monotonic() - start < 1.0
        assert not transport.running
        time.sleep(0.1)
        assert backend.requests == []
