from __future__ import annotations
from typing import Any, Callable, Dict, Optional

ProgressCallback = Callable[[Dict[str, Any]], None]


class Progress:
    """
    Forwards {"phase", "pct", "msg"} events to an optional user callback.
    """
    def __init__(self, callback: Optional[ProgressCallback] = None) -> None:
        self._cb = callback

    @property
    def enabled(self) -> bool:
        return self._cb is not None

    def emit(self, phase: str, pct: int = 0, msg: str = "") -> None:
        if self._cb is None:
            return
        self._cb({"phase": phase, "pct": int(max(0, min(100, pct))), "msg": msg})

    def start(self, phase: str, msg: str = "") -> None:
        self.emit(f"{phase}.start", 0, msg)

    def done(self, phase: str, msg: str = "") -> None:
        self.emit(f"{phase}.done", 100, msg)
