from __future__ import annotations
import json
import logging
import os
import shutil
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .crypto import EncryptionService
from .errors import BackupError
from .progress import Progress
from .utils import ensure_parent_dir, now_iso, timestamp_slug

logger = logging.getLogger(__name__)

BACKUP_MARKERS = (".backup.", ".pre-restore.")
META_SUFFIX = ".meta"
FORMAT_VERSION = "1.0.0"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _read_meta(path: str) -> Optional[Dict[str, Any]]:
    meta_path = path + META_SUFFIX
    if not os.path.exists(meta_path):
        return None
    try:
        with open(meta_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        logger.warning("unreadable backup metadata: %s", meta_path)
        return None


class BackupManager:
    """
    Byte-for-byte copies of the encrypted database file, with an optional
    JSON sidecar `<backup>.meta`. Backups stay encrypted under whatever key
    the database had when they were taken.
    """

    def __init__(self, db_path: str, progress: Optional[Progress] = None) -> None:
        self.db_path = db_path
        self._progress = progress or Progress()

    def default_path(self) -> str:
        return f"{self.db_path}.backup.{timestamp_slug()}"

    def backup(self, backup_path: Optional[str] = None, *, include_metadata: bool = False) -> str:
        backup_path = backup_path or self.default_path()
        if not os.path.exists(self.db_path):
            raise BackupError(f"database file not found: {self.db_path}")
        self._progress.start("backup", backup_path)
        try:
            ensure_parent_dir(backup_path)
            shutil.copyfile(self.db_path, backup_path)
            if include_metadata:
                with open(backup_path + META_SUFFIX, "w", encoding="utf-8") as f:
                    json.dump(self.create_metadata(), f, indent=2)
        except OSError as e:
            raise BackupError(f"backup to {backup_path} failed: {e}") from e
        logger.info("backup written: %s", backup_path)
        self._progress.done("backup", backup_path)
        return backup_path

    def restore(self, backup_path: str, *, backup_current: bool = True) -> bool:
        """
        Copy `backup_path` over the database file. Unless disabled, the
        current file is first saved aside as `<db>.pre-restore.<ms>`.
        The caller must reload its in-memory state afterwards.
        """
        if not backup_path:
            raise BackupError("backup file path must be specified")
        if not os.path.exists(backup_path):
            raise BackupError(f"backup file not found: {backup_path}")
        self._progress.start("restore", backup_path)
        if backup_current and os.path.exists(self.db_path):
            self.backup(f"{self.db_path}.pre-restore.{int(time.time() * 1000)}")
        try:
            ensure_parent_dir(self.db_path)
            shutil.copyfile(backup_path, self.db_path)
        except OSError as e:
            raise BackupError(f"restore from {backup_path} failed: {e}") from e
        meta = _read_meta(backup_path)
        if meta:
            logger.info("restored %s (taken %s)", backup_path, meta.get("backupDate"))
        else:
            logger.info("restored %s", backup_path)
        self._progress.done("restore", backup_path)
        return True

    def list_backups(self, directory: Optional[str] = None) -> List[Dict[str, Any]]:
        """Backups in `directory` (default: the database's directory), newest first."""
        directory = directory or os.path.dirname(os.path.abspath(self.db_path))
        if not os.path.isdir(directory):
            return []
        out: List[Dict[str, Any]] = []
        try:
            names = os.listdir(directory)
        except OSError as e:
            raise BackupError(f"cannot list backups in {directory}: {e}") from e
        for name in names:
            if name.endswith(META_SUFFIX) or name.endswith(".tmp"):
                continue
            if not any(m in name for m in BACKUP_MARKERS):
                continue
            path = os.path.join(directory, name)
            st = os.stat(path)
            out.append({
                "filename": name,
                "path": path,
                "size": st.st_size,
                "modified": _iso(st.st_mtime),
                "mtime": st.st_mtime,
                "metadata": _read_meta(path),
            })
        out.sort(key=lambda b: b["mtime"], reverse=True)
        return out

    def cleanup_backups(
        self,
        directory: Optional[str] = None,
        *,
        max_age_days: Optional[float] = None,
        max_count: Optional[int] = None,
    ) -> int:
        """Delete backups older than `max_age_days`, then all but the newest `max_count`."""
        deleted = 0
        if max_age_days is not None:
            cutoff = time.time() - max_age_days * 86400
            for b in self.list_backups(directory):
                if b["mtime"] < cutoff:
                    self._remove(b["path"])
                    deleted += 1
        if max_count is not None:
            for b in self.list_backups(directory)[max_count:]:
                self._remove(b["path"])
                deleted += 1
        return deleted

    def _remove(self, path: str) -> None:
        try:
            os.remove(path)
            if os.path.exists(path + META_SUFFIX):
                os.remove(path + META_SUFFIX)
        except OSError as e:
            raise BackupError(f"cannot remove backup {path}: {e}") from e

    def create_metadata(self) -> Dict[str, Any]:
        return {
            "backupDate": now_iso(),
            "originalPath": self.db_path,
            "version": FORMAT_VERSION,
            "type": "full_backup",
        }

    def validate_backup(self, backup_path: str) -> Dict[str, Any]:
        if not os.path.exists(backup_path):
            return {"valid": False, "error": "backup file not found"}
        try:
            size = os.path.getsize(backup_path)
            if size == 0:
                return {"valid": False, "error": "backup file is empty"}
            with open(backup_path, "rb") as f:
                head = f.read(64)
        except OSError as e:
            return {"valid": False, "error": str(e)}
        if not head.strip():
            return {"valid": False, "error": "backup file contains no data"}
        if not EncryptionService.looks_encrypted(head):
            return {"valid": False, "error": "backup file is not an encrypted database"}
        return {"valid": True, "size": size}

    def get_backup_info(self, backup_path: str) -> Dict[str, Any]:
        info = self.validate_backup(backup_path)
        if not info["valid"]:
            return info
        st = os.stat(backup_path)
        return {
            "valid": True,
            "path": backup_path,
            "size": st.st_size,
            "modified": _iso(st.st_mtime),
            "metadata": _read_meta(backup_path),
        }
