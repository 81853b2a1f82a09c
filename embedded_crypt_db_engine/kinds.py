from __future__ import annotations
import math
import re
from datetime import date, datetime
from typing import Any

from .utils import MISSING

# Names reported by value_kind() and accepted by $type
KINDS = ("null", "array", "date", "string", "number", "boolean", "object", "undefined")


def is_number(v: Any) -> bool:
    # bool is an int subclass but never a number here
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def value_kind(v: Any) -> str:
    if v is MISSING:
        return "undefined"
    if v is None:
        return "null"
    if isinstance(v, list):
        return "array"
    if isinstance(v, (datetime, date)):
        return "date"
    if isinstance(v, str):
        return "string"
    if isinstance(v, bool):
        return "boolean"
    if is_number(v):
        return "number"
    if isinstance(v, dict):
        return "object"
    return type(v).__name__


def strict_equals(a: Any, b: Any) -> bool:
    """
    Equality without cross-kind coercion: True never equals 1, "1" never
    equals 1. Numbers compare by value (1 == 1.0). Containers compare
    element-wise under the same rule.
    """
    if a is MISSING or b is MISSING:
        return a is b
    ka, kb = value_kind(a), value_kind(b)
    if ka != kb:
        return False
    if ka == "array":
        return len(a) == len(b) and all(strict_equals(x, y) for x, y in zip(a, b))
    if ka == "object":
        return a.keys() == b.keys() and all(strict_equals(a[k], b[k]) for k in a)
    return a == b


def contains_strict(items: Any, value: Any) -> bool:
    return any(strict_equals(item, value) for item in items)


def is_comparable(a: Any, b: Any) -> bool:
    if is_number(a) and is_number(b):
        return True
    if isinstance(a, str) and isinstance(b, str):
        return True
    if isinstance(a, datetime) and isinstance(b, datetime):
        # naive vs aware datetimes cannot be ordered
        return (a.tzinfo is None) == (b.tzinfo is None)
    if isinstance(a, date) and isinstance(b, date):
        return not isinstance(a, datetime) and not isinstance(b, datetime)
    return False


def _parses_as_date(s: str) -> bool:
    text = s.strip()
    if not text:
        return False
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        datetime.fromisoformat(text)
        return True
    except ValueError:
        return False


def check_type(value: Any, expected: str) -> bool:
    """Unknown type names accept any value."""
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        if isinstance(value, float):
            return math.isfinite(value)
        return is_number(value)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "array":
        return isinstance(value, list)
    if expected == "object":
        return isinstance(value, dict)
    if expected == "date":
        if isinstance(value, (datetime, date)):
            return True
        return isinstance(value, str) and _parses_as_date(value)
    return True


def _measure(value: Any):
    if is_number(value):
        return value
    if isinstance(value, (str, list)):
        return len(value)
    return None


def check_min(value: Any, minimum: Any) -> bool:
    m = _measure(value)
    return True if m is None else m >= minimum


def check_max(value: Any, maximum: Any) -> bool:
    m = _measure(value)
    return True if m is None else m <= maximum


def check_pattern(value: Any, pattern: str) -> bool:
    if not isinstance(value, str):
        return False
    return re.search(pattern, value) is not None
