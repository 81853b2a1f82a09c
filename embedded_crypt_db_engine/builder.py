from __future__ import annotations
import contextlib
import copy
from typing import TYPE_CHECKING, Any, Callable, ContextManager, Dict, List, Optional, Union

from .errors import QueryError

if TYPE_CHECKING:
    from .query import QueryEngine

_NO_VALUE = object()

# where() comparison names -> query operators
WHERE_OPS = {
    "=": "$eq",
    "==": "$eq",
    "!=": "$ne",
    ">": "$gt",
    ">=": "$gte",
    "<": "$lt",
    "<=": "$lte",
    "in": "$in",
    "contains": "$contains",
    "startsWith": "$startsWith",
    "endsWith": "$endsWith",
    "regex": "$regex",
    "fuzzy": "$fuzzy",
}


class QueryBuilder:
    """
    Chainable construction of a query object plus options, executed
    through a QueryEngine against the documents returned by `data_provider`.

        db.query_builder().where("age", ">", 18).sort("age", -1).limit(10).execute()
    """

    def __init__(
        self,
        engine: "QueryEngine",
        data_provider: Callable[[], Dict[str, Any]],
        lock: Optional[ContextManager[Any]] = None,
    ) -> None:
        self._engine = engine
        self._data_provider = data_provider
        # held across snapshot and evaluation
        self._lock = lock
        self._query: Dict[str, Any] = {}
        self._options: Dict[str, Any] = {}

    def where(self, field: str, op: Any, value: Any = _NO_VALUE) -> "QueryBuilder":
        if value is _NO_VALUE:
            # where(field, condition)
            self._query[field] = op
            return self
        mapped = WHERE_OPS.get(op)
        if mapped is None:
            raise QueryError(f"unknown comparison {op!r}")
        self._query[field] = {mapped: value}
        return self

    def _extend(self, op: str, conditions) -> "QueryBuilder":
        self._query.setdefault(op, []).extend(conditions)
        return self

    def and_(self, *conditions: Any) -> "QueryBuilder":
        return self._extend("$and", conditions)

    def or_(self, *conditions: Any) -> "QueryBuilder":
        return self._extend("$or", conditions)

    def nor(self, *conditions: Any) -> "QueryBuilder":
        return self._extend("$nor", conditions)

    def not_(self, condition: Any) -> "QueryBuilder":
        self._query["$not"] = condition
        return self

    def exists(self, field: str, should_exist: bool = True) -> "QueryBuilder":
        self._query[field] = {"$exists": should_exist}
        return self

    def type_(self, field: str, kind: str) -> "QueryBuilder":
        self._query[field] = {"$type": kind}
        return self

    def between(self, field: str, low: Any, high: Any) -> "QueryBuilder":
        self._query[field] = {"$between": [low, high]}
        return self

    def size(self, field: str, n: int) -> "QueryBuilder":
        self._query[field] = {"$size": n}
        return self

    def elem_match(self, field: str, condition: Any) -> "QueryBuilder":
        self._query[field] = {"$elemMatch": condition}
        return self

    def all_(self, field: str, values: List[Any]) -> "QueryBuilder":
        self._query[field] = {"$all": list(values)}
        return self

    def nin(self, field: str, values: List[Any]) -> "QueryBuilder":
        self._query[field] = {"$nin": list(values)}
        return self

    def text(self, field: str, term: str) -> "QueryBuilder":
        self._query[field] = {"$search": term}
        return self

    # ----- Options -----

    def limit(self, n: int) -> "QueryBuilder":
        self._options["limit"] = n
        return self

    def skip(self, n: int) -> "QueryBuilder":
        self._options["skip"] = n
        return self

    def sort(self, field: str, direction: Union[int, str] = 1) -> "QueryBuilder":
        self._options.setdefault("sort", {})[field] = direction
        return self

    def project(self, projection: Dict[str, Any]) -> "QueryBuilder":
        self._options["projection"] = projection
        return self

    def cache(self, key: str) -> "QueryBuilder":
        self._options["cache_key"] = key
        return self

    def explain(self) -> "QueryBuilder":
        self._options["explain"] = True
        return self

    def reset(self) -> "QueryBuilder":
        self._query = {}
        self._options = {}
        return self

    def get_query(self) -> Dict[str, Any]:
        return {"query": dict(self._query), "options": dict(self._options)}

    # ----- Execution -----

    def _run(self, data: Optional[Dict[str, Any]], options: Dict[str, Any]):
        with self._lock if self._lock is not None else contextlib.nullcontext():
            documents = data if data is not None else self._data_provider()
            return self._engine.query(self._query, documents, **options)

    def execute(self, data: Optional[Dict[str, Any]] = None):
        return self._run(data, self._options)

    def count(self, data: Optional[Dict[str, Any]] = None) -> int:
        options = dict(self._options)
        options.pop("explain", None)
        return len(self._run(data, options))

    def first(self, data: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        options = dict(self._options, limit=1)
        options.pop("explain", None)
        options.pop("cache_key", None)
        results = self._run(data, options)
        return results[0] if results else None

    def clone(self) -> "QueryBuilder":
        other = QueryBuilder(self._engine, self._data_provider, self._lock)
        other._query = copy.deepcopy(self._query)
        other._options = copy.deepcopy(self._options)
        return other
