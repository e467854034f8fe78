"""
Entity snapshots and dot-path resolution.
"""

from collections.abc import Mapping
from typing import Any, Dict, Iterator, Optional


class _Missing:
    """Sentinel for a path that does not resolve to a value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def resolve_path(data: Any, path: str) -> Any:
    """Walk a dot path through mappings and list indexes.

    Returns MISSING when any segment is absent. A stored None is a value,
    not a missing one.
    """
    if not path:
        return MISSING

    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def flatten(data: Mapping, prefix: str = "") -> Dict[str, Any]:
    """Flatten nested mappings into dotted keys."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping) and value:
            flat.update(flatten(value, dotted))
        else:
            flat[dotted] = value
    return flat


class EntitySnapshot(Mapping):
    """Read-only view of a business entity at one point in time."""

    def __init__(self, data: Optional[Mapping] = None):
        self._data: Dict[str, Any] = dict(data or {})

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"EntitySnapshot({self._data!r})"

    def resolve(self, path: str) -> Any:
        return resolve_path(self._data, path)

    def flatten(self) -> Dict[str, Any]:
        return flatten(self._data)

    def entity_id(self) -> Optional[str]:
        for key in ("id", "entityId", "entity_id"):
            value = self._data.get(key)
            if value not in (None, ""):
                return str(value)
        return None

    def event_type(self) -> Optional[str]:
        for key in ("eventType", "event_type"):
            value = self._data.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    def org_id(self) -> Optional[str]:
        for key in ("orgId", "org_id", "organizationId"):
            value = self._data.get(key)
            if value not in (None, ""):
                return str(value)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    @classmethod
    def of(cls, entity: Any) -> "EntitySnapshot":
        """Wrap a mapping unless it is already a snapshot."""
        if isinstance(entity, EntitySnapshot):
            return entity
        return cls(entity)
