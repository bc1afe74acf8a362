"""
Monitor module.
Contains the queue depth metrics emitter.
"""

from mailqueue.monitor.main import QueueMonitor

__all__ = ["QueueMonitor"]
