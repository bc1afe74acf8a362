"""
Transport module.
Contains the mail transport interface and its implementations.
"""

from mailqueue.transport.base import EmailTransport
from mailqueue.transport.relay import HttpRelayTransport, LoggingTransport, build_transport

__all__ = [
    "EmailTransport",
    "HttpRelayTransport",
    "LoggingTransport",
    "build_transport",
]
