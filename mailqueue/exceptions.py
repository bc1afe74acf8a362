"""
Queue exception hierarchy.
"""


class QueueError(Exception):
    """Base class for all queue errors."""


class StoreUnavailableError(QueueError):
    """The durable store could not be reached or refused the operation."""


class ConsumerGroupMissingError(QueueError):
    """The consumer group does not exist on the ready stream."""


class InvalidJobError(QueueError):
    """A job failed validation before it was enqueued."""


class PoisonPayloadError(QueueError):
    """A stream entry could not be decoded into a job."""


class TransportError(QueueError):
    """The mail transport failed to deliver a job."""
