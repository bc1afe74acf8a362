"""
Concrete transports: an HTTP mail relay and a logging-only sink.
"""

import logging
from typing import Any

import httpx

from mailqueue.config import Settings, get_settings
from mailqueue.exceptions import TransportError
from mailqueue.transport.base import EmailTransport
from mailqueue.types.job import Job

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


class HttpRelayTransport(EmailTransport):
    """
    Posts jobs to an HTTP mail relay.

    The job id is sent as the idempotency key so the relay can drop
    redeliveries of a job it already accepted.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)
        self._owns_client = client is None

    async def deliver(self, job: Job) -> None:
        body: dict[str, Any] = {
            "id": job.id,
            "purpose": job.purpose,
            "payload": job.payload,
        }

        try:
            response = await self._client.post(
                self.url,
                json=body,
                headers={IDEMPOTENCY_HEADER: job.id},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Relay request failed: {e}") from e

        if not response.is_success:
            raise TransportError(f"Relay rejected job: HTTP {response.status_code}")

        logger.debug(
            "Relay accepted job",
            extra={"job_id": job.id, "status_code": response.status_code},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class LoggingTransport(EmailTransport):
    """Logs jobs instead of sending them. For development and dry runs."""

    async def deliver(self, job: Job) -> None:
        logger.info(
            "Email delivered to log",
            extra={"job_id": job.id, "purpose": job.purpose, "attempts": job.attempts},
        )


def build_transport(settings: Settings | None = None) -> EmailTransport:
    """
    Create the configured transport.

    Falls back to `LoggingTransport` when no relay URL is configured.
    """
    settings = settings or get_settings()
    if not settings.transport_relay_url:
        logger.warning("No transport relay configured, emails will only be logged")
        return LoggingTransport()
    return HttpRelayTransport(
        settings.transport_relay_url,
        timeout=settings.transport_timeout_seconds,
        api_key=settings.transport_api_key,
    )
