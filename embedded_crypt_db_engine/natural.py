from __future__ import annotations
import re
from typing import Any, Callable, Dict, List, Pattern, Tuple

_FIELD = r'(\w+)'
_INT = r'(\d+)'
_QUOTED = r'"([^"]+)"'


def _phrase(*parts: str) -> Pattern[str]:
    return re.compile(r"\s+".join(parts))


# (trigger substrings, pattern, clause builder); each phrase is applied at most once
PHRASES: List[Tuple[Tuple[str, ...], Pattern[str], Callable[[re.Match], Dict[str, Any]]]] = [
    (("greater than", ">"), _phrase(_FIELD, r"(?:greater than|>)", _INT),
     lambda m: {"$gt": int(m.group(2))}),
    (("less than", "<"), _phrase(_FIELD, r"(?:less than|<)", _INT),
     lambda m: {"$lt": int(m.group(2))}),
    (("contains",), _phrase(_FIELD, "contains", _QUOTED),
     lambda m: {"$contains": m.group(2)}),
    (("starts with",), _phrase(_FIELD, r"starts\s+with", _QUOTED),
     lambda m: {"$startsWith": m.group(2)}),
    (("ends with",), _phrase(_FIELD, r"ends\s+with", _QUOTED),
     lambda m: {"$endsWith": m.group(2)}),
    (("between",), _phrase(_FIELD, "between", _INT, "and", _INT),
     lambda m: {"$between": [int(m.group(2)), int(m.group(3))]}),
]


def parse_natural(text: str) -> Dict[str, Any]:
    """
    Translate a constrained English phrase into a query object, e.g.
    'age greater than 30 and name starts with "a"'. Text is lower-cased
    first, so quoted values are matched lower-cased too. Unrecognized text
    contributes nothing; a later phrase on the same field replaces an
    earlier one.
    """
    normalized = text.lower().strip()
    query: Dict[str, Any] = {}
    for triggers, pattern, build in PHRASES:
        if not any(t in normalized for t in triggers):
            continue
        m = pattern.search(normalized)
        if m:
            query[m.group(1)] = build(m)
    return query
