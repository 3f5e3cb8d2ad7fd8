from vync.client.sync import (
    PROGRESS_STEPS,
    StatusSynchronizer,
    SyncConfig,
    SyncSession,
    SyncState,
    SyncView,
)

__all__ = [
    "PROGRESS_STEPS",
    "StatusSynchronizer",
    "SyncConfig",
    "SyncSession",
    "SyncState",
    "SyncView",
]
