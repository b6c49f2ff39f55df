"""
Cross-request coordination backed by database rows.

  - RemoteMutex: serializes writes to one remote system/environment pair
  - PendingOperationTracker: deduplicates long-running actions per entity

Both detect staleness lazily on access; there is no background sweeper.
"""

from coordination.pending_operations import PendingAction, PendingOperationTracker
from coordination.remote_mutex import RemoteMutex

__all__ = [
    "PendingAction",
    "PendingOperationTracker",
    "RemoteMutex",
]
