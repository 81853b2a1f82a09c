from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import ConfigError


@dataclass
class StoreConfig:
    """Construction options for Database."""
    path: str
    secret_key: str
    query_cache: bool = True
    autosave: bool = True
    validators: Dict[str, Callable[..., Any]] = field(default_factory=dict)
    on_progress: Optional[Callable[[Dict[str, Any]], None]] = None

    def __post_init__(self) -> None:
        if not isinstance(self.path, str) or not self.path:
            raise ConfigError("database path is required")
        if not isinstance(self.secret_key, str) or not self.secret_key:
            raise ConfigError("secret key is required")
        for name, fn in self.validators.items():
            if not callable(fn):
                raise ConfigError(f"validator {name!r} is not callable")

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "StoreConfig":
        """
        Accepts {"path", "secretKey" | "secret_key", "cache", "autosave",
        "validators", "on_progress"}. "cluster" and "monitoring" must be
        absent or empty: the store is single-node.
        """
        if not isinstance(cfg, Mapping):
            raise ConfigError("config object is required")
        for unsupported in ("cluster", "monitoring"):
            if cfg.get(unsupported):
                raise ConfigError(f"{unsupported!r} is not supported by a single-node store")
        cache = cfg.get("cache", True)
        if isinstance(cache, Mapping):
            cache = cache.get("enabled", True)
        return cls(
            path=cfg.get("path") or "",
            secret_key=cfg.get("secretKey") or cfg.get("secret_key") or "",
            query_cache=bool(cache),
            autosave=bool(cfg.get("autosave", True)),
            validators=dict(cfg.get("validators") or {}),
            on_progress=cfg.get("on_progress"),
        )
