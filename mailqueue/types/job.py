"""
Job-related type definitions.

Jobs travel through the store as JSON with camelCase field names.
"""

from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from mailqueue.constants import DEFAULT_MAX_ATTEMPTS, DEFAULT_PURPOSE, PAYLOAD_FIELD
from mailqueue.exceptions import PoisonPayloadError


class LastError(BaseModel):
    """Summary of the most recent delivery failure."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str
    at: int


class Job(BaseModel):
    """
    The unit of work.

    `payload` is opaque to the queue and only interpreted by the transport.
    `purpose` is used for metric labels and logging, never for control flow.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    id: str = Field(default_factory=lambda: uuid4().hex)
    purpose: str = DEFAULT_PURPOSE
    payload: dict[str, Any] = Field(default_factory=dict)
    dedupe_key: str | None = None
    available_after: int | None = None
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)

    created_at: int | None = None
    queued_at: int | None = None
    delay_ms: int | None = None
    dedupe_ttl_ms: int | None = None
    failed_at: int | None = None
    last_error: LastError | None = None

    def is_due(self, now: int) -> bool:
        """Check whether the job may be attempted at `now` (epoch ms)."""
        return self.available_after is None or self.available_after <= now

    @property
    def is_exhausted(self) -> bool:
        """Check whether the retry budget is spent."""
        return self.attempts >= self.max_attempts

    def encode(self) -> str:
        """Serialize to the JSON wire format."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def decode(cls, raw: str | bytes) -> "Job":
        """
        Parse a job from its wire format.

        Raises:
            PoisonPayloadError: If the payload is not a valid job.
        """
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise PoisonPayloadError(f"Undecodable job payload: {e.error_count()} errors") from e


@dataclass(frozen=True)
class StreamEntry:
    """A single entry read from a stream."""

    entry_id: str
    fields: dict[str, str]

    @property
    def payload(self) -> str | None:
        return self.fields.get(PAYLOAD_FIELD)


@dataclass(frozen=True)
class QueueDepth:
    """Backlog sizes sampled from the three storage locations."""

    ready: int
    scheduled: int
    dead_letter: int


class EnqueueResult(BaseModel):
    """Outcome of a producer call."""

    accepted: bool
    job_id: str
    reason: str | None = None
    scheduled_for: int | None = None
