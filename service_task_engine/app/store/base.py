"""
Document store contract shared by all backends.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

from shared.errors import ValidationError

from ..snapshot import MISSING, resolve_path

# Store-side limit on the number of literals in a single "in" clause
MAX_IN_VALUES = 30

FILTER_OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in", "array_contains")

VERSION_FIELD = "_version"


@dataclass(frozen=True)
class QueryFilter:
    """Single field predicate of a store query."""
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPERATORS:
            raise ValidationError(
                f"Unsupported filter operator: {self.op}",
                {"field": self.field, "op": self.op},
            )
        if self.op == "in":
            if not isinstance(self.value, (list, tuple, set, frozenset)):
                raise ValidationError(
                    "'in' filter requires a list of values",
                    {"field": self.field},
                )
            if len(self.value) > MAX_IN_VALUES:
                raise ValidationError(
                    f"'in' filter accepts at most {MAX_IN_VALUES} values",
                    {"field": self.field, "count": len(self.value)},
                )

    def matches(self, doc: Dict[str, Any]) -> bool:
        value = resolve_path(doc, self.field)
        if value is MISSING:
            return False

        if self.op == "==":
            return strict_equals(value, self.value)
        if self.op == "!=":
            return not strict_equals(value, self.value)
        if self.op == "in":
            return any(strict_equals(value, candidate) for candidate in self.value)
        if self.op == "array_contains":
            return isinstance(value, list) and any(strict_equals(item, self.value) for item in value)

        if not _comparable(value, self.value):
            return False
        if self.op == "<":
            return value < self.value
        if self.op == "<=":
            return value <= self.value
        if self.op == ">":
            return value > self.value
        return value >= self.value


@dataclass(frozen=True)
class OrderBy:
    """Sort key of a store query."""
    field: str
    descending: bool = False


def strict_equals(left: Any, right: Any) -> bool:
    """Equality that never treats booleans as numbers."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _comparable(left: Any, right: Any) -> bool:
    if is_number(left) and is_number(right):
        return True
    return isinstance(left, str) and isinstance(right, str)


def _sort_key(value: Any):
    # Total order across types: missing < None < bool < number < string < other
    if value is MISSING:
        return (0, 0)
    if value is None:
        return (1, 0)
    if isinstance(value, bool):
        return (2, int(value))
    if is_number(value):
        return (3, value)
    if isinstance(value, str):
        return (4, value)
    return (5, json.dumps(value, sort_keys=True, default=str))


def apply_query(docs: Iterable[Dict[str, Any]],
                filters: Optional[Sequence[QueryFilter]] = None,
                order_by: Optional[Sequence[OrderBy]] = None,
                limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Filter, sort and limit documents client-side."""
    results = [doc for doc in docs if all(f.matches(doc) for f in (filters or ()))]

    # Stable sorts applied from the least significant key up
    results.sort(key=lambda d: str(d.get("id", "")))
    for key in reversed(list(order_by or ())):
        results.sort(key=lambda d, k=key: _sort_key(resolve_path(d, k.field)), reverse=key.descending)

    if limit is not None:
        results = results[:max(limit, 0)]
    return results


class DocumentStore(ABC):
    """Async document store.

    Every stored document carries its ``id`` and an integer ``_version``
    that increases on each write. ``expected_version`` arguments turn
    writes into compare-and-swap operations.
    """

    backend_name = "abstract"

    @abstractmethod
    async def create(self, collection: str, doc: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        """Insert a document, generating an id when none is given."""

    @abstractmethod
    async def create_if_absent(self, collection: str, doc_id: str, doc: Dict[str, Any]) -> bool:
        """Atomically insert a document only when the id is unused."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one document or None."""

    @abstractmethod
    async def query(self, collection: str,
                    filters: Optional[Sequence[QueryFilter]] = None,
                    order_by: Optional[Sequence[OrderBy]] = None,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return documents matching every filter."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, partial: Dict[str, Any],
                     expected_version: Optional[int] = None) -> Dict[str, Any]:
        """Shallow-merge fields into a document and return the new version."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str, expected_version: Optional[int] = None) -> bool:
        """Remove a document; False when it did not exist."""

    @abstractmethod
    def subscribe(self, collection: str,
                  filters: Optional[Sequence[QueryFilter]] = None,
                  order_by: Optional[Sequence[OrderBy]] = None,
                  limit: Optional[int] = None) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield the current result set, then a full re-query after every change."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
