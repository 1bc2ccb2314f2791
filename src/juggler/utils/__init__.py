"""Utility modules for juggler."""

from juggler.utils.clock import Clock, FixedClock, SystemClock
from juggler.utils.logging import get_logger, setup_logging
from juggler.utils.storage import CredentialStore, KeyringCredentialStore, StorageManager, TaskStore

__all__ = [
    "Clock",
    "CredentialStore",
    "FixedClock",
    "KeyringCredentialStore",
    "StorageManager",
    "SystemClock",
    "TaskStore",
    "get_logger",
    "setup_logging",
]
