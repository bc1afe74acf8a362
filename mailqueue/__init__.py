"""
Asynchronous Email Delivery Queue

A durable, at-least-once email job queue built on a ready stream, a time-ordered
schedule set and a dead-letter stream, with consumer-group fan-out, delayed
delivery, retry with attempt accounting, crash recovery and backlog metrics.
"""

__version__ = "1.0.0"
