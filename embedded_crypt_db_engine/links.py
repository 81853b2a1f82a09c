from __future__ import annotations
import logging
from typing import Any, Dict, List, Mapping

from .errors import LinkError
from .schema import check_key

logger = logging.getLogger(__name__)


class LinkGraph:
    """
    Directed key -> key adjacency with a reverse index.

    Invariant: target in forward[source] <=> source in reverse[target].
    Neighbor lists keep insertion order and never hold duplicates; empty
    lists are pruned. Keys are not checked against the documents except in
    link() and the integrity helpers.
    """

    def __init__(self) -> None:
        self.forward: Dict[str, List[str]] = {}
        self.reverse: Dict[str, List[str]] = {}

    @staticmethod
    def _add(table: Dict[str, List[str]], a: str, b: str) -> None:
        lst = table.setdefault(a, [])
        if b not in lst:
            lst.append(b)

    @staticmethod
    def _discard(table: Dict[str, List[str]], a: str, b: str) -> bool:
        lst = table.get(a)
        if not lst or b not in lst:
            return False
        lst.remove(b)
        if not lst:
            del table[a]
        return True

    def link(self, source: str, target: str, documents: Mapping[str, Any]) -> bool:
        check_key(source)
        check_key(target)
        if source not in documents:
            raise LinkError(f"source key {source!r} does not exist")
        if target not in documents:
            raise LinkError(f"target key {target!r} does not exist")
        self._add(self.forward, source, target)
        self._add(self.reverse, target, source)
        return True

    def unlink(self, source: str, target: str) -> bool:
        """Remove the edge in both directions. Returns whether it existed."""
        check_key(source)
        check_key(target)
        removed = self._discard(self.forward, source, target)
        self._discard(self.reverse, target, source)
        return removed

    def get_links(self, key: str) -> List[str]:
        check_key(key)
        return list(self.forward.get(key, ()))

    def get_linked_to(self, key: str) -> List[str]:
        check_key(key)
        return list(self.reverse.get(key, ()))

    def is_linked(self, source: str, target: str) -> bool:
        check_key(source)
        check_key(target)
        return target in self.forward.get(source, ())

    def get_all_links(self) -> Dict[str, List[str]]:
        return {k: list(v) for k, v in self.forward.items()}

    def get_all_linked_to(self) -> Dict[str, List[str]]:
        return {k: list(v) for k, v in self.reverse.items()}

    def get_linked_keys(self, key: str) -> List[str]:
        """Forward and reverse neighbors, deduplicated, forward first."""
        out = self.get_links(key)
        for k in self.get_linked_to(key):
            if k not in out:
                out.append(k)
        return out

    def has_any_links(self, key: str) -> bool:
        check_key(key)
        return bool(self.forward.get(key)) or bool(self.reverse.get(key))

    def edge_count(self) -> int:
        return sum(len(v) for v in self.forward.values())

    def remove_key_from_links(self, key: str) -> List[str]:
        """
        Detach `key` from the graph in both directions.
        Returns the keys it pointed to.
        """
        check_key(key)
        targets = self.forward.pop(key, [])
        for target in targets:
            self._discard(self.reverse, target, key)
        for source in self.reverse.pop(key, []):
            self._discard(self.forward, source, key)
        return list(targets)

    def clear(self) -> bool:
        self.forward = {}
        self.reverse = {}
        return True

    # ----- Integrity -----

    def validate_link_integrity(self, documents: Mapping[str, Any]) -> List[Dict[str, str]]:
        violations: List[Dict[str, str]] = []
        for source, targets in self.forward.items():
            if source not in documents:
                violations.append({"type": "missing_source", "key": source})
                continue
            for target in targets:
                if target not in documents:
                    violations.append({"type": "missing_target", "source": source, "target": target})
        return violations

    def repair_link_integrity(self, documents: Mapping[str, Any]) -> Dict[str, int]:
        """
        Drop every edge whose source or target is absent from `documents`.
        `removed` counts deleted edges; `fixed` counts sources that lost
        some targets but kept at least one.
        """
        removed = 0
        fixed = 0
        for source in list(self.forward):
            targets = self.forward[source]
            if source not in documents:
                removed += len(targets)
                for target in targets:
                    self._discard(self.reverse, target, source)
                del self.forward[source]
                continue
            valid = [t for t in targets if t in documents]
            if len(valid) == len(targets):
                continue
            for target in targets:
                if target not in documents:
                    self._discard(self.reverse, target, source)
            removed += len(targets) - len(valid)
            if valid:
                self.forward[source] = valid
                fixed += 1
            else:
                del self.forward[source]
        # Reverse entries with no matching forward edge
        for target in list(self.reverse):
            sources = [s for s in self.reverse[target] if target in self.forward.get(s, ())]
            if sources:
                self.reverse[target] = sources
            else:
                del self.reverse[target]
        if removed:
            logger.debug("link repair removed %d edge(s), trimmed %d source(s)", removed, fixed)
        return {"removed": removed, "fixed": fixed}

    # ----- Persistence -----

    def export_data(self) -> Dict[str, Dict[str, List[str]]]:
        return {"links": self.forward, "linkedTo": self.reverse}

    def import_data(self, data: Dict[str, Any]) -> None:
        self.forward = {k: list(v) for k, v in (data.get("links") or {}).items()}
        self.reverse = {k: list(v) for k, v in (data.get("linkedTo") or {}).items()}
