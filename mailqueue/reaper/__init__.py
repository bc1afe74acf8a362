"""
Reaper module.
Contains the recovery sweep for stalled stream entries.
"""

from mailqueue.reaper.main import RecoverySweep

__all__ = ["RecoverySweep"]
