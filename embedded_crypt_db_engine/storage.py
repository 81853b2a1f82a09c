from __future__ import annotations
import json
import logging
import os
import tempfile
from typing import Any, Dict, Optional

from .crypto import Encryptor
from .errors import CorruptStateError, SaveError, StorageError
from .progress import Progress
from .utils import ensure_parent_dir, json_default

logger = logging.getLogger(__name__)

# Top-level sections of the decrypted document
SECTIONS = ("data", "schemas", "validators", "links", "linkedTo")


class PersistenceCoordinator:
    """
    Whole-file encrypted persistence.

    The plaintext is one JSON document
        {"data": {...}, "schemas": {...}, "validators": {...},
         "links": {...}, "linkedTo": {...}}
    encrypted as a unit and written over the previous file through a temp
    file and os.replace(). There is no journal: every save rewrites
    everything.
    """

    def __init__(self, path: str, encryptor: Encryptor, progress: Optional[Progress] = None) -> None:
        self.path = path
        self.encryptor = encryptor
        self._progress = progress or Progress()

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def load(self) -> Optional[Dict[str, Any]]:
        """
        Returns the decrypted state, or None when there is no file yet (or
        it is empty). Raises CorruptStateError when the file cannot be
        decrypted or parsed and StorageError when it cannot be read.
        """
        if not self.exists():
            return None
        self._progress.start("load", self.path)
        try:
            with open(self.path, "rb") as f:
                blob = f.read()
        except OSError as e:
            raise StorageError(f"cannot read database file {self.path}: {e}") from e
        if not blob.strip():
            self._progress.done("load", "empty file")
            return None

        try:
            text = self.encryptor.decrypt(blob)
        except CorruptStateError:
            raise
        except Exception as e:
            raise CorruptStateError(f"cannot decrypt {self.path}: {e}") from e

        try:
            state = json.loads(text)
        except ValueError as e:
            raise CorruptStateError(f"decrypted content of {self.path} is not valid JSON") from e
        if not isinstance(state, dict):
            raise CorruptStateError(f"decrypted content of {self.path} is not an object")
        for name in SECTIONS:
            section = state.setdefault(name, {})
            if not isinstance(section, dict):
                raise CorruptStateError(f"section {name!r} in {self.path} is not an object")

        logger.debug("loaded %s: %d keys, %d bytes", self.path, len(state["data"]), len(blob))
        self._progress.done("load", f"{len(state['data'])} keys")
        return state

    def save(self, state: Dict[str, Any]) -> int:
        """
        Encrypt and atomically replace the database file. Returns the
        number of bytes written; raises SaveError on any failure.
        """
        self._progress.start("save", self.path)
        try:
            text = json.dumps(state, ensure_ascii=False, default=json_default)
        except (TypeError, ValueError) as e:
            raise SaveError(f"state is not serializable: {e}") from e

        self._progress.emit("save.encrypt", 50)
        try:
            blob = self.encryptor.encrypt(text)
        except Exception as e:
            raise SaveError(f"encryption failed: {e}") from e

        try:
            ensure_parent_dir(self.path)
            fd, tmp_path = tempfile.mkstemp(
                prefix=os.path.basename(self.path) + ".",
                suffix=".tmp",
                dir=os.path.dirname(os.path.abspath(self.path)),
            )
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(blob)
                    f.flush()
                    os.fsync(f.fileno())
                self.replace_file(tmp_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise SaveError(f"cannot write database file {self.path}: {e}") from e

        logger.debug("saved %s: %d bytes", self.path, len(blob))
        self._progress.done("save", f"{len(blob)} bytes")
        return len(blob)

    def replace_file(self, tmp_path: str) -> None:
        os.replace(tmp_path, self.path)
        # Persist the rename itself where the platform allows opening dirs
        try:
            dir_fd = os.open(os.path.dirname(os.path.abspath(self.path)), os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    @staticmethod
    def compose(data: Dict[str, Any], validation: Dict[str, Any], links: Dict[str, Any]) -> Dict[str, Any]:
        state = {"data": data}
        state.update(validation)
        state.update(links)
        return state
