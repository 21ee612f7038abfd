"""Checkpointed sync: catch up once, then persist a token per batch."""

from matrixsync.sync.checkpoint import SyncCheckpointLoop, SyncState

__all__ = [
    "SyncCheckpointLoop",
    "SyncState",
]
