"""Synchronization of local tasks to Google Tasks."""

from juggler.sync.engine import (
    ChangeLog,
    ChangeRecord,
    Reconciler,
    SyncOutcome,
    adopt_legacy_tasks,
    build_gateway,
    run_sync,
)

__all__ = [
    "ChangeLog",
    "ChangeRecord",
    "Reconciler",
    "SyncOutcome",
    "adopt_legacy_tasks",
    "build_gateway",
    "run_sync",
]
