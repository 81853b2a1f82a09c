from __future__ import annotations
import copy
import logging
import operator
import re
import time
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .errors import QueryError
from .kinds import contains_strict, is_comparable, is_number, strict_equals, value_kind
from .natural import parse_natural
from .utils import MISSING, canonical_json, get_nested, levenshtein, resolve_parent, set_nested, text_search, to_text, unset_nested

logger = logging.getLogger(__name__)

Predicate = Callable[..., Any]
QueryObject = Union[Dict[str, Any], Predicate]
Plan = Optional[Dict[str, Any]]


def _is_literal(v: Any) -> bool:
    return isinstance(v, (str, bool, int, float))


class QueryEngine:
    """
    Full-scan evaluator over a {key: document} mapping.

    Never mutates the mapping: results are built from deep copies. The
    result cache is filled only when a caller passes `cache_key` and is
    emptied only by clear_cache() or remove_cache_entry(); document writes
    do not invalidate it.
    """

    def __init__(self, cache_enabled: bool = True) -> None:
        self.cache_enabled = cache_enabled
        self._cache: Dict[str, List[Dict[str, Any]]] = {}

    # ----- Free-text search -----

    def search(
        self,
        query: Any,
        documents: Mapping[str, Any],
        *,
        case_sensitive: bool = False,
        exact_match: bool = False,
        limit: int = 0,
        keys: Optional[Iterable[str]] = None,
        value_only: bool = False,
    ) -> List[Any]:
        """
        Match documents by substring, by any of a list of literals, by
        sub-field equality ({field: value}) or by a predicate(value).

        A document that does not match as a whole is searched one level
        down: matching list items are returned together, matching dict
        entries come back as {"key": "parent.sub", "value", "parent",
        "parentKey"}.
        """
        if not (query is None or _is_literal(query) or isinstance(query, (list, tuple, dict)) or callable(query)):
            raise QueryError("search query must be a literal, list, mapping or callable")

        def fold(s: str) -> str:
            return s if case_sensitive else s.lower()

        def literal_match(value: Any, q: Any) -> bool:
            # containers are searched one level down, never as text
            if isinstance(value, (dict, list)):
                return False
            text, needle = fold(to_text(value)), fold(to_text(q))
            return text == needle if exact_match else needle in text

        def is_match(value: Any) -> bool:
            if callable(query):
                try:
                    return bool(query(value))
                except Exception:
                    return False
            if query is None:
                return value is None
            if isinstance(query, dict):
                if not isinstance(value, dict):
                    return False
                return all(k in value and to_text(value[k]) == to_text(v) for k, v in query.items())
            if isinstance(query, (list, tuple)):
                return any(literal_match(value, q) for q in query)
            return literal_match(value, query)

        results: List[Any] = []

        def full() -> bool:
            return limit > 0 and len(results) >= limit

        for key in (list(documents) if keys is None else keys):
            if key not in documents:
                continue
            value = documents[key]
            if is_match(value):
                results.append(copy.deepcopy(value) if value_only else {"key": key, "value": copy.deepcopy(value)})
                if full():
                    break
                continue
            if isinstance(value, list):
                items = [copy.deepcopy(v) for v in value if is_match(v)]
                if items:
                    results.append(items if value_only else {"key": key, "value": items})
                    if full():
                        break
            elif isinstance(value, dict):
                for sub_key, sub_value in value.items():
                    if not is_match(sub_value):
                        continue
                    if value_only:
                        results.append(copy.deepcopy(sub_value))
                    else:
                        results.append({
                            "key": f"{key}.{sub_key}",
                            "value": copy.deepcopy(sub_value),
                            "parent": copy.deepcopy(value),
                            "parentKey": key,
                        })
                    if full():
                        break
                if full():
                    break
        return results

    # ----- Structured query -----

    def query(
        self,
        query: QueryObject,
        documents: Mapping[str, Any],
        *,
        limit: int = 0,
        skip: int = 0,
        sort: Union[str, Dict[str, Any], None] = None,
        projection: Optional[Dict[str, Any]] = None,
        cache_key: Optional[str] = None,
        explain: bool = False,
    ) -> Union[List[Dict[str, Any]], Dict[str, Any]]:
        """
        Evaluate `query` against every document and return matching
        documents as {"_key": key, **fields}; non-dict documents come back
        as {"_key": key, "value": value}.

        Order: match -> project -> sort all matches -> skip -> limit.
        With `explain` the return value is {"results": [...], "plan": {...}}
        and the cache is neither read nor written.
        """
        if not isinstance(query, dict) and not callable(query):
            raise QueryError("query must be a mapping or a callable")
        if projection is not None:
            self._check_projection(projection)

        use_cache = self.cache_enabled and cache_key is not None and not explain
        if use_cache and cache_key in self._cache:
            logger.debug("query cache hit: %r", cache_key)
            return copy.deepcopy(self._cache[cache_key])

        started = time.perf_counter()
        plan: Plan = {"total_keys": len(documents), "matched_keys": 0, "operations": []} if explain else None

        results: List[Dict[str, Any]] = []
        for key, value in documents.items():
            if isinstance(query, dict):
                if plan is not None:
                    plan["operations"].append(f"Evaluating key: {key}")
                matched = self.evaluate_condition(query, value, key, plan)
            else:
                try:
                    matched = bool(query(value, key))
                except Exception:
                    matched = False
            if not matched:
                continue
            if plan is not None:
                plan["matched_keys"] += 1
            item = self._build_item(key, value)
            if projection:
                item = apply_projection(item, projection)
            results.append(item)

        # Sorting
        if sort:
            results = apply_sort(results, sort)

        # Skip / limit
        start = max(0, int(skip or 0))
        if start:
            results = results[start:]
        if limit and int(limit) > 0:
            results = results[:int(limit)]

        if plan is not None:
            plan["execution_ms"] = (time.perf_counter() - started) * 1000.0
            plan["result_count"] = len(results)
            return {"results": results, "plan": plan}

        if use_cache:
            self._cache[cache_key] = copy.deepcopy(results)
        return results

    def natural_query(self, text: str, documents: Mapping[str, Any], **options: Any):
        if not isinstance(text, str):
            raise QueryError("natural query must be a string")
        return self.query(parse_natural(text), documents, **options)

    @staticmethod
    def _build_item(key: str, value: Any) -> Dict[str, Any]:
        if isinstance(value, dict):
            item = {"_key": key}
            item.update(copy.deepcopy(value))
            item["_key"] = key
            return item
        return {"_key": key, "value": copy.deepcopy(value)}

    @staticmethod
    def _check_projection(projection: Any) -> None:
        if not isinstance(projection, dict):
            raise QueryError("projection must be a mapping")
        inc = [k for k, v in projection.items() if _truthy_flag(v) and k != "_key"]
        exc = [k for k, v in projection.items() if not _truthy_flag(v) and k != "_key"]
        if inc and exc:
            raise QueryError("projection cannot mix inclusion and exclusion")

    # ----- Condition evaluation -----

    def evaluate_condition(self, condition: Any, value: Any, key: str = "", plan: Plan = None) -> bool:
        if condition is None:
            return value is None
        if _is_literal(condition):
            return strict_equals(value, condition)
        if isinstance(condition, (list, tuple)):
            return any(self.evaluate_condition(c, value, key, plan) for c in condition)
        if isinstance(condition, dict):
            return self._evaluate_object(condition, value, key, plan)
        if callable(condition):
            try:
                return bool(condition(value, key))
            except Exception:
                return False
        return strict_equals(value, condition)

    def _evaluate_object(self, condition: Dict[str, Any], value: Any, key: str, plan: Plan) -> bool:
        for cond_key, cond_value in condition.items():
            if cond_key.startswith("$"):
                ok = self.evaluate_operator(cond_key, cond_value, value, key, plan)
            elif "." in cond_key:
                parent, last = resolve_parent(value, cond_key)
                if parent is MISSING:
                    return False
                ok = self.evaluate_condition(cond_value, parent.get(last, MISSING), key, plan)
            elif isinstance(value, dict):
                ok = self.evaluate_condition(cond_value, value.get(cond_key, MISSING), key, plan)
            else:
                ok = False
            if not ok:
                return False
        return True

    def evaluate_operator(self, op: str, operand: Any, value: Any, key: str = "", plan: Plan = None) -> bool:
        if plan is not None:
            plan["operations"].append(f"Operator: {op}")
        handler = _OPERATORS.get(op)
        if handler is None:
            return False
        return handler(self, operand, value, key, plan)

    def _each(self, operand: Any, value: Any, key: str, plan: Plan) -> Optional[List[bool]]:
        if not isinstance(operand, (list, tuple)):
            return None
        return [self.evaluate_condition(c, value, key, plan) for c in operand]

    # ----- Result cache -----

    def clear_cache(self) -> bool:
        self._cache.clear()
        return True

    def cache_size(self) -> int:
        return len(self._cache)

    def remove_cache_entry(self, cache_key: str) -> bool:
        return self._cache.pop(cache_key, None) is not None


def _compare(fn: Callable[[Any, Any], bool]):
    def op(engine, operand, value, key, plan):
        return is_comparable(value, operand) and fn(value, operand)
    return op


def _op_in(engine, operand, value, key, plan):
    return isinstance(operand, (list, tuple)) and contains_strict(operand, value)


def _op_nin(engine, operand, value, key, plan):
    return isinstance(operand, (list, tuple)) and not contains_strict(operand, value)


def _op_regex(engine, operand, value, key, plan):
    if not isinstance(value, str):
        return False
    try:
        return re.search(operand, value) is not None
    except (re.error, TypeError):
        return False


def _op_contains(engine, operand, value, key, plan):
    if isinstance(value, str):
        return str(operand) in value
    if isinstance(value, list):
        return contains_strict(value, operand)
    return False


def _op_between(engine, operand, value, key, plan):
    if not isinstance(operand, (list, tuple)) or len(operand) != 2:
        return False
    lo, hi = operand
    return is_comparable(value, lo) and is_comparable(value, hi) and lo <= value <= hi


def _op_size(engine, operand, value, key, plan):
    if not is_number(operand) or not isinstance(value, (list, str)):
        return False
    return len(value) == operand


def _op_all(engine, operand, value, key, plan):
    if not isinstance(value, list) or not isinstance(operand, (list, tuple)):
        return False
    return all(contains_strict(value, item) for item in operand)


def _op_elem_match(engine, operand, value, key, plan):
    if not isinstance(value, list):
        return False
    return any(engine.evaluate_condition(operand, item, key, plan) for item in value)


def _op_and(engine, operand, value, key, plan):
    res = engine._each(operand, value, key, plan)
    return res is not None and all(res)


def _op_or(engine, operand, value, key, plan):
    res = engine._each(operand, value, key, plan)
    return res is not None and any(res)


def _op_nor(engine, operand, value, key, plan):
    res = engine._each(operand, value, key, plan)
    return res is not None and not any(res)


def _op_xor(engine, operand, value, key, plan):
    if not isinstance(operand, (list, tuple)) or len(operand) != 2:
        return False
    first = engine.evaluate_condition(operand[0], value, key, plan)
    second = engine.evaluate_condition(operand[1], value, key, plan)
    return first != second


def _op_fuzzy(engine, operand, value, key, plan):
    if not isinstance(value, str) or not isinstance(operand, str):
        return False
    return levenshtein(value.lower(), operand.lower()) <= 2


_OPERATORS: Dict[str, Callable[..., bool]] = {
    "$eq": lambda e, operand, value, k, p: strict_equals(value, operand),
    "$ne": lambda e, operand, value, k, p: not strict_equals(value, operand),
    "$gt": _compare(operator.gt),
    "$gte": _compare(operator.ge),
    "$lt": _compare(operator.lt),
    "$lte": _compare(operator.le),
    "$in": _op_in,
    "$nin": _op_nin,
    "$exists": lambda e, operand, value, k, p: (value is not MISSING) if operand else (value is MISSING),
    "$type": lambda e, operand, value, k, p: value_kind(value) == operand,
    "$regex": _op_regex,
    "$contains": _op_contains,
    "$startsWith": lambda e, operand, value, k, p: isinstance(value, str) and isinstance(operand, str) and value.startswith(operand),
    "$endsWith": lambda e, operand, value, k, p: isinstance(value, str) and isinstance(operand, str) and value.endswith(operand),
    "$between": _op_between,
    "$size": _op_size,
    "$all": _op_all,
    "$elemMatch": _op_elem_match,
    "$and": _op_and,
    "$or": _op_or,
    "$nor": _op_nor,
    "$not": lambda e, operand, value, k, p: not e.evaluate_condition(operand, value, k, p),
    "$xor": _op_xor,
    "$fuzzy": _op_fuzzy,
    "$search": lambda e, operand, value, k, p: text_search(value, operand),
}

OPERATORS = tuple(_OPERATORS)


# ----- Projection / sorting -----

def _truthy_flag(v: Any) -> bool:
    return v is True or (is_number(v) and v == 1)


def apply_projection(item: Dict[str, Any], projection: Dict[str, Any]) -> Dict[str, Any]:
    """
    Inclusion ({field: 1}) keeps `_key` plus the listed fields; exclusion
    ({field: 0}) drops the listed fields. Dotted paths address nested fields.
    """
    include = [k for k, v in projection.items() if _truthy_flag(v) and k != "_key"]
    if include:
        out: Dict[str, Any] = {}
        if _truthy_flag(projection.get("_key", 1)):
            out["_key"] = item["_key"]
        for field in include:
            if "." in field:
                v = get_nested(item, field)
                if v is not MISSING:
                    set_nested(out, field, v)
            elif field in item:
                out[field] = item[field]
        return out
    out = dict(item)
    for field, flag in projection.items():
        if _truthy_flag(flag):
            continue
        if "." in field:
            unset_nested(out, field)
        else:
            out.pop(field, None)
    return out


def _sort_key(v: Any) -> Tuple:
    # Total order across kinds: absent/null < bool < number < string < date < other
    if v is MISSING or v is None:
        return (0,)
    if isinstance(v, bool):
        return (1, v)
    if is_number(v):
        return (2, v)
    if isinstance(v, str):
        return (3, v)
    if isinstance(v, (datetime, date)):
        return (4, v.isoformat())
    try:
        return (5, canonical_json(v))
    except (TypeError, ValueError):
        return (5, str(v))


def _is_desc(direction: Any) -> bool:
    if isinstance(direction, str):
        return direction.lower() in ("desc", "descending", "-1")
    return is_number(direction) and direction < 0


def apply_sort(results: List[Dict[str, Any]], sort: Union[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    if isinstance(sort, str):
        order_by = [(sort, 1)]
    elif isinstance(sort, dict):
        order_by = list(sort.items())
    else:
        raise QueryError("sort must be a field name or a {field: direction} mapping")
    out = list(results)
    # Stable sorts applied from the least significant field up
    for field, direction in reversed(order_by):
        out.sort(key=lambda r: _sort_key(get_nested(r, field)), reverse=_is_desc(direction))
    return out
