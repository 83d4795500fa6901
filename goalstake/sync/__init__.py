"""Remote snapshot synchronization package."""

from goalstake.sync.coordinator import PendingWrite, SyncCoordinator

__all__ = ["PendingWrite", "SyncCoordinator"]
