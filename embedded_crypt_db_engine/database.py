from __future__ import annotations
import copy
import logging
import threading
from typing import Any, Dict, List, Mapping, Optional

from .backup import BackupManager
from .builder import QueryBuilder
from .config import StoreConfig
from .crypto import EncryptionService, Encryptor
from .errors import ConfigError, CorruptStateError, KeyRotationError, LinkError, SaveError, ValidationError
from .kinds import strict_equals
from .links import LinkGraph
from .progress import Progress
from .query import QueryEngine
from .schema import ValidationEngine, Validator, check_key
from .storage import PersistenceCoordinator
from .utils import MISSING, to_json_value

logger = logging.getLogger(__name__)


class Database:
    """
    Encrypted single-file key/value document store.

    Values are JSON-like (str, number, bool, None, list, dict). Every write
    runs validate -> mutate -> persist under one re-entrant lock, and with
    the default `autosave=True` each mutation rewrites the whole encrypted
    file before returning. With `autosave=False` mutations only mark the
    store dirty and reach disk on flush()/close().

    State is loaded lazily on first use, or explicitly with init().
    """

    def __init__(
        self,
        path: str,
        secret_key: str,
        *,
        validators: Optional[Dict[str, Validator]] = None,
        query_cache: bool = True,
        autosave: bool = True,
        on_progress=None,
        encryption: Optional[Encryptor] = None,
    ) -> None:
        self._config = StoreConfig(
            path=path,
            secret_key=secret_key,
            query_cache=query_cache,
            autosave=autosave,
            validators=dict(validators or {}),
            on_progress=on_progress,
        )
        self.path = path
        self.autosave = autosave
        self._lock = threading.RLock()
        self._progress = Progress(on_progress)
        self._crypto: Encryptor = encryption or EncryptionService(secret_key)
        self._storage = PersistenceCoordinator(path, self._crypto, self._progress)
        self._backups = BackupManager(path, self._progress)
        self._query = QueryEngine(cache_enabled=query_cache)
        self._data: Dict[str, Any] = {}
        self._validation = ValidationEngine()
        self._links = LinkGraph()
        self._initialized = False
        self._dirty = False
        self._register_configured_validators()

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "Database":
        c = StoreConfig.from_mapping(cfg)
        return cls(
            c.path,
            c.secret_key,
            validators=c.validators,
            query_cache=c.query_cache,
            autosave=c.autosave,
            on_progress=c.on_progress,
        )

    def _register_configured_validators(self) -> None:
        for name, fn in self._config.validators.items():
            self._validation.add_validator(name, fn)

    # ----- Open / load / save -----

    def init(self, *, reset_on_corruption: bool = False) -> "Database":
        """
        Load state from disk once. A missing file means an empty store.
        A file that cannot be decrypted or parsed raises CorruptStateError,
        unless `reset_on_corruption` is set, in which case all in-memory
        state starts empty (the file is left untouched until the next save).
        """
        with self._lock:
            if self._initialized:
                return self
            try:
                self._load()
            except CorruptStateError:
                if not reset_on_corruption:
                    raise
                logger.warning("database %s is unreadable; starting with empty state", self.path, exc_info=True)
                self._reset_state()
            self._initialized = True
            logger.info("opened %s: %d keys", self.path, len(self._data))
            return self

    def _ensure_open(self) -> None:
        if not self._initialized:
            self.init()

    def _load(self) -> None:
        state = self._storage.load()
        if state is None:
            self._reset_state()
            return
        bound = self._validation.bound_validators()
        validation = ValidationEngine()
        validation.import_data(state, bound=bound)
        links = LinkGraph()
        links.import_data(state)
        self._data = dict(state["data"])
        self._validation = validation
        self._links = links
        self._query.clear_cache()
        self._dirty = False

    def _reset_state(self) -> None:
        self._data = {}
        self._validation = ValidationEngine()
        self._register_configured_validators()
        self._links = LinkGraph()
        self._query.clear_cache()
        self._dirty = False

    def _state(self) -> Dict[str, Any]:
        return PersistenceCoordinator.compose(
            self._data, self._validation.export_data(), self._links.export_data()
        )

    def _save(self) -> None:
        self._storage.save(self._state())
        self._dirty = False

    def _persist(self) -> None:
        if self.autosave:
            self._save()
        else:
            self._dirty = True

    def flush(self) -> bool:
        """Write pending changes (buffered mode). Returns whether a save happened."""
        with self._lock:
            if not self._dirty:
                return False
            self._save()
            return True

    def close(self) -> None:
        self.flush()

    def __enter__(self) -> "Database":
        return self.init()

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ----- Key / value -----

    @staticmethod
    def _json_value(key: str, value: Any) -> Any:
        try:
            return to_json_value(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"value for '{key}' is not JSON-serializable: {e}", path=key) from e

    def set(self, key: str, value: Any) -> bool:
        check_key(key)
        with self._lock:
            self._ensure_open()
            validated = self._validation.validate_and_process(key, self._json_value(key, value))
            self._data[key] = validated
            self._persist()
            return True

    def get(self, key: str, default: Any = None) -> Any:
        check_key(key)
        with self._lock:
            self._ensure_open()
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def exists(self, key: str) -> bool:
        check_key(key)
        with self._lock:
            self._ensure_open()
            return key in self._data

    def delete(self, key: str) -> bool:
        """Delete `key` and, through links, everything it points to."""
        check_key(key)
        with self._lock:
            self._ensure_open()
            if key not in self._data:
                return False
            self.delete_with_links(key)
            return True

    def delete_with_links(self, key: str) -> List[str]:
        """
        Remove `key` from the documents and the link graph, then every
        still-present key reachable through forward links. Each key is
        removed once, so cycles terminate. Returns the removed keys.
        """
        check_key(key)
        with self._lock:
            self._ensure_open()
            removed: List[str] = []
            visited = set()
            stack = [key]
            while stack:
                k = stack.pop()
                if k in visited:
                    continue
                visited.add(k)
                targets = self._links.remove_key_from_links(k)
                if k in self._data:
                    del self._data[k]
                    removed.append(k)
                for t in reversed(targets):
                    if t in self._data and t not in visited:
                        stack.append(t)
            if len(removed) > 1:
                logger.debug("cascade delete from %r removed %s", key, removed)
                self._progress.emit("delete.cascade", 100, f"{len(removed)} keys")
            self._persist()
            return removed

    def clear(self) -> bool:
        """Drop all documents, schemas, validators, links and cached queries."""
        with self._lock:
            self._ensure_open()
            self._data = {}
            self._validation.clear_schemas()
            self._validation.clear_validators()
            self._links.clear()
            self._query.clear_cache()
            self._persist()
            return True

    def push(self, key: str, value: Any) -> bool:
        """
        Append to the list stored at `key`. A missing key starts a new list;
        an existing non-list value becomes the first element.
        """
        check_key(key)
        with self._lock:
            self._ensure_open()
            validated = self._validation.validate_and_process(key, self._json_value(key, value))
            current = self._data.get(key, MISSING)
            if current is MISSING:
                self._data[key] = [validated]
            elif isinstance(current, list):
                current.append(validated)
            else:
                self._data[key] = [current, validated]
            self._persist()
            return True

    def pull(self, key: str, value: Any) -> bool:
        """Remove every element equal to `value` from the list at `key`."""
        check_key(key)
        with self._lock:
            self._ensure_open()
            current = self._data.get(key)
            if not isinstance(current, list):
                return False
            value = self._json_value(key, value)
            kept = [item for item in current if not strict_equals(item, value)]
            if len(kept) == len(current):
                return False
            self._data[key] = kept
            self._persist()
            return True

    def get_all_keys(self) -> List[str]:
        with self._lock:
            self._ensure_open()
            return list(self._data)

    def size(self) -> int:
        with self._lock:
            self._ensure_open()
            return len(self._data)

    def fetch_all(self) -> Dict[str, Any]:
        with self._lock:
            self._ensure_open()
            return copy.deepcopy(self._data)

    # ----- Schemas / validators -----

    def set_schema(self, key: str, spec: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_open()
            self._validation.set_schema(key, spec)
            self._persist()
            return True

    def get_schema(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_open()
            return self._validation.get_schema(key)

    def remove_schema(self, key: str) -> bool:
        with self._lock:
            self._ensure_open()
            removed = self._validation.remove_schema(key)
            if removed:
                self._persist()
            return removed

    def add_validator(self, name: str, fn: Validator) -> bool:
        with self._lock:
            self._ensure_open()
            self._validation.add_validator(name, fn)
            self._persist()
            return True

    def remove_validator(self, name: str) -> bool:
        with self._lock:
            self._ensure_open()
            removed = self._validation.remove_validator(name)
            if removed:
                self._persist()
            return removed

    # ----- Links -----

    def link(self, source: str, target: str) -> bool:
        with self._lock:
            self._ensure_open()
            if self._links.is_linked(source, target) and source in self._data and target in self._data:
                return True
            self._links.link(source, target, self._data)
            self._persist()
            return True

    def unlink(self, source: str, target: str) -> bool:
        """
        Remove the edge source -> target. Raises LinkError when the edge does
        not exist and either key is missing from the store.
        """
        with self._lock:
            self._ensure_open()
            removed = self._links.unlink(source, target)
            if not removed:
                if source not in self._data:
                    raise LinkError(f"source key {source!r} does not exist")
                if target not in self._data:
                    raise LinkError(f"target key {target!r} does not exist")
                return False
            self._persist()
            return True

    def get_links(self, key: str) -> List[str]:
        with self._lock:
            self._ensure_open()
            return self._links.get_links(key)

    def get_linked_to(self, key: str) -> List[str]:
        with self._lock:
            self._ensure_open()
            return self._links.get_linked_to(key)

    def get_linked_keys(self, key: str) -> List[str]:
        with self._lock:
            self._ensure_open()
            return self._links.get_linked_keys(key)

    def has_any_links(self, key: str) -> bool:
        with self._lock:
            self._ensure_open()
            return self._links.has_any_links(key)

    def is_linked(self, source: str, target: str) -> bool:
        with self._lock:
            self._ensure_open()
            return self._links.is_linked(source, target)

    def get_all_links(self) -> Dict[str, List[str]]:
        with self._lock:
            self._ensure_open()
            return self._links.get_all_links()

    def get_all_linked_to(self) -> Dict[str, List[str]]:
        with self._lock:
            self._ensure_open()
            return self._links.get_all_linked_to()

    def validate_link_integrity(self) -> List[Dict[str, str]]:
        with self._lock:
            self._ensure_open()
            return self._links.validate_link_integrity(self._data)

    def repair_link_integrity(self) -> Dict[str, int]:
        with self._lock:
            self._ensure_open()
            result = self._links.repair_link_integrity(self._data)
            if result["removed"]:
                self._persist()
            return result

    # ----- Queries -----

    def search(self, query: Any, **options: Any) -> List[Any]:
        with self._lock:
            self._ensure_open()
            return self._query.search(query, self._data, **options)

    def query(self, query: Any, **options: Any):
        with self._lock:
            self._ensure_open()
            return self._query.query(query, self._data, **options)

    def natural_query(self, text: str, **options: Any):
        with self._lock:
            self._ensure_open()
            return self._query.natural_query(text, self._data, **options)

    def _snapshot(self) -> Dict[str, Any]:
        with self._lock:
            self._ensure_open()
            return dict(self._data)

    def query_builder(self) -> QueryBuilder:
        return QueryBuilder(self._query, self._snapshot, lock=self._lock)

    def clear_query_cache(self) -> bool:
        return self._query.clear_cache()

    def remove_cache_entry(self, cache_key: str) -> bool:
        return self._query.remove_cache_entry(cache_key)

    # ----- Key rotation -----

    def change_secret_key(self, new_key: str) -> bool:
        """
        Re-encrypt the store under `new_key`. The new key is kept in memory
        even if the save fails; KeyRotationError then reports that the file
        is still encrypted under the previous key.
        """
        if not isinstance(new_key, str) or not new_key:
            raise ConfigError("new secret key must be a non-empty string")
        with self._lock:
            self._ensure_open()
            self._crypto = EncryptionService(new_key)
            self._storage.encryptor = self._crypto
            try:
                self._save()
            except SaveError as e:
                raise KeyRotationError(
                    f"key changed in memory but {self.path} is still encrypted with the previous key: {e}"
                ) from e
            logger.info("secret key rotated for %s", self.path)
            return True

    # ----- Backups -----

    def backup(self, backup_path: Optional[str] = None, *, include_metadata: bool = False) -> str:
        with self._lock:
            self._ensure_open()
            self._save()
            return self._backups.backup(backup_path, include_metadata=include_metadata)

    def restore(self, backup_path: str, *, backup_current: bool = True) -> bool:
        """Replace the database file with a backup and reload it."""
        with self._lock:
            self._backups.restore(backup_path, backup_current=backup_current)
            self._initialized = False
            self.init()
            return True

    def list_backups(self, directory: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._backups.list_backups(directory)

    def cleanup_backups(
        self,
        directory: Optional[str] = None,
        *,
        max_age_days: Optional[float] = None,
        max_count: Optional[int] = None,
    ) -> int:
        return self._backups.cleanup_backups(directory, max_age_days=max_age_days, max_count=max_count)

    def validate_backup(self, backup_path: str) -> Dict[str, Any]:
        return self._backups.validate_backup(backup_path)

    def get_backup_info(self, backup_path: str) -> Dict[str, Any]:
        return self._backups.get_backup_info(backup_path)

    # ----- Stats -----

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            self._ensure_open()
            return {
                "total_keys": len(self._data),
                "schemas": len(self._validation.get_all_schemas()),
                "validators": len(self._validation.get_all_validators()),
                "links": len(self._links.forward),
                "edges": self._links.edge_count(),
                "query_cache_size": self._query.cache_size(),
                "path": self.path,
                "initialized": self._initialized,
                "autosave": self.autosave,
                "dirty": self._dirty,
            }
