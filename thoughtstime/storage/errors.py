"""Exception types raised inside the storage layer.

These never cross a backend or StorageManager boundary: they are caught
there and turned into ``StorageResult.fail(...)``.
"""

from __future__ import annotations


class StorageError(Exception):
    """Base class for storage failures."""


class StorageUnavailableError(StorageError):
    """The host store or the embedded engine cannot be used."""


class QuotaExceededError(StorageError):
    """A write would push the host store past its capacity."""


class CorruptDataError(StorageError):
    """A previously stored blob could not be decoded."""


class StorageNotInitializedError(StorageError):
    """StorageManager.get_provider() was called before initialize()."""


class MigrationError(StorageError):
    """A migration phase failed; the active backend is unchanged."""
