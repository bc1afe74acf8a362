"""
Mail transport interface.

Transports must be idempotent per job id: a job may be delivered more than
once after a worker crash or a lost acknowledgement.
"""

from abc import ABC, abstractmethod

from mailqueue.types.job import Job


class EmailTransport(ABC):
    """Delivers one job. Raises on any failure."""

    @abstractmethod
    async def deliver(self, job: Job) -> None:
        """
        Deliver a job.

        Raises:
            Exception: Any failure; the worker treats it as a failed attempt.
        """

    async def close(self) -> None:
        """Release transport resources."""
