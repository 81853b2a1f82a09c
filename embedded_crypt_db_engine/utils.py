from __future__ import annotations
import json
import os
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Tuple


class _Missing:
    """Marker for an absent value (distinct from an explicit None)."""
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def timestamp_slug() -> str:
    # Filesystem-safe ISO timestamp: 2024-01-02T03-04-05-678Z
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    return ts.replace(":", "-").replace(".", "-")


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def json_default(o: Any) -> Any:
    if isinstance(o, (datetime, date)):
        return o.isoformat()
    raise TypeError(f"object of type {type(o).__name__} is not JSON serializable")


def to_json_value(value: Any) -> Any:
    """
    Copy `value` through a JSON round trip, so memory holds exactly what a
    reload would: dates become ISO strings, tuples become lists. Raises
    TypeError or ValueError for anything JSON cannot represent.
    """
    return json.loads(json.dumps(value, ensure_ascii=False, default=json_default))


def to_text(value: Any) -> str:
    """String form used by free-text matching."""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def ensure_parent_dir(path: str) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)


def split_path(path: str) -> List[str]:
    return path.split(".")


def get_nested(obj: Any, path: str) -> Any:
    """
    Walk a dotted path through nested dicts. Returns MISSING as soon as a
    segment is absent or a non-dict is reached.
    """
    cur = obj
    for part in split_path(path):
        if not isinstance(cur, dict) or part not in cur:
            return MISSING
        cur = cur[part]
    return cur


def resolve_parent(obj: Any, path: str) -> Tuple[Any, str]:
    """
    Walk every segment but the last. Returns (container, last_segment);
    container is MISSING when an intermediate segment is absent.
    """
    parts = split_path(path)
    cur = obj
    for part in parts[:-1]:
        if not isinstance(cur, dict) or part not in cur:
            return MISSING, parts[-1]
        cur = cur[part]
    if not isinstance(cur, dict):
        return MISSING, parts[-1]
    return cur, parts[-1]


def set_nested(obj: Dict[str, Any], path: str, value: Any) -> None:
    parts = split_path(path)
    cur = obj
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[part] = nxt
        cur = nxt
    cur[parts[-1]] = value


def unset_nested(obj: Dict[str, Any], path: str) -> None:
    parent, last = resolve_parent(obj, path)
    if parent is not MISSING:
        parent.pop(last, None)


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        cur = [i]
        for j, cb in enumerate(b, 1):
            cost = 0 if ca == cb else 1
            cur.append(min(cur[j - 1] + 1, prev[j] + 1, prev[j - 1] + cost))
        prev = cur
    return prev[-1]


def text_search(value: Any, term: Any) -> bool:
    """
    Case-insensitive containment: plain substring for strings, substring of
    the JSON form for lists and dicts. Anything else never matches.
    """
    needle = str(term).lower()
    if isinstance(value, str):
        return needle in value.lower()
    if isinstance(value, (dict, list)):
        return needle in to_text(value).lower()
    return False
