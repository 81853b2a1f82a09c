from __future__ import annotations
from typing import Optional


class DBError(Exception):
    """Base class for all database errors."""


class ConfigError(DBError, ValueError):
    pass


class ValidationError(DBError, ValueError):
    """
    Schema, type, range, pattern or custom-validator failure.
    `path` is the offending field path: `key` or `key.field`.
    """
    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class QueryError(DBError, ValueError):
    pass


class LinkError(DBError):
    pass


class StorageError(DBError, OSError):
    pass


class CorruptStateError(StorageError):
    """Database file exists but could not be decrypted or parsed."""


class SaveError(StorageError):
    """
    Persisting failed after the in-memory state was already changed.
    Memory and disk now diverge until the next successful save.
    """
    saved = False


class KeyRotationError(SaveError):
    pass


class BackupError(StorageError):
    pass
