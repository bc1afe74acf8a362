"""
Unit tests for mail transports.
"""

import json

import httpx
import pytest

from mailqueue.config import Settings
from mailqueue.exceptions import TransportError
from mailqueue.transport.relay import HttpRelayTransport, LoggingTransport, build_transport
from mailqueue.types.job import Job

RELAY_URL = "https://relay.example.com/send"


def relay_with(handler) -> HttpRelayTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpRelayTransport(RELAY_URL, client=client)


class TestHttpRelayTransport:
    """Tests for HttpRelayTransport."""

    @pytest.mark.asyncio
    async def test_posts_job_with_idempotency_key(self):
        """Test the request sent to the relay."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202)

        transport = relay_with(handler)
        job = Job(id="job-1", purpose="welcome", payload={"to": "a@example.com"})

        await transport.deliver(job)

        [request] = requests
        assert request.method == "POST"
        assert str(request.url) == RELAY_URL
        assert request.headers["Idempotency-Key"] == "job-1"
        assert json.loads(request.content) == {
            "id": "job-1",
            "purpose": "welcome",
            "payload": {"to": "a@example.com"},
        }

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        """Test that a non-2xx response is a failed delivery."""
        transport = relay_with(lambda request: httpx.Response(503))

        with pytest.raises(TransportError, match="503"):
            await transport.deliver(Job())

    @pytest.mark.asyncio
    async def test_network_error_raises(self):
        """Test that connection failures are wrapped."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        transport = relay_with(handler)

        with pytest.raises(TransportError, match="connection refused"):
            await transport.deliver(Job())

    @pytest.mark.asyncio
    async def test_api_key_header(self):
        """Test that the configured key is sent as a bearer token."""
        transport = HttpRelayTransport(RELAY_URL, api_key="secret")

        assert transport._client.headers["Authorization"] == "Bearer secret"
        await transport.close()


class TestBuildTransport:
    """Tests for build_transport."""

    def test_without_relay_logs(self):
        """Test the development fallback."""
        assert isinstance(build_transport(Settings()), LoggingTransport)

    @pytest.mark.asyncio
    async def test_with_relay(self):
        """Test that a configured relay URL selects the HTTP transport."""
        transport = build_transport(Settings(transport_relay_url=RELAY_URL))

        assert isinstance(transport, HttpRelayTransport)
        assert transport.url == RELAY_URL
        await transport.close()

    @pytest.mark.asyncio
    async def test_logging_transport_succeeds(self):
        """Test that the logging transport never fails."""
        await LoggingTransport().deliver(Job())
