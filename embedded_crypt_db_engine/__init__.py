import logging

from .database import Database
from .builder import QueryBuilder
from .config import StoreConfig
from .crypto import EncryptionService
from .errors import (
    BackupError,
    ConfigError,
    CorruptStateError,
    DBError,
    KeyRotationError,
    LinkError,
    QueryError,
    SaveError,
    StorageError,
    ValidationError,
)
from .links import LinkGraph
from .query import QueryEngine
from .schema import ValidationEngine
from .storage import PersistenceCoordinator

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Database",
    "QueryBuilder",
    "QueryEngine",
    "ValidationEngine",
    "LinkGraph",
    "PersistenceCoordinator",
    "EncryptionService",
    "StoreConfig",
    "DBError",
    "ConfigError",
    "ValidationError",
    "QueryError",
    "LinkError",
    "StorageError",
    "CorruptStateError",
    "SaveError",
    "KeyRotationError",
    "BackupError",
]
