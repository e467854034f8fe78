"""
In-memory document store.
"""

import asyncio
import copy
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from shared.errors import ConcurrentModificationError, NotFoundError
from shared.logging import get_logger

from .base import DocumentStore, OrderBy, QueryFilter, VERSION_FIELD, apply_query


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store.

    Each method completes without awaiting anything, so every call is
    atomic with respect to other coroutines on the same event loop.
    """

    backend_name = "memory"

    def __init__(self):
        self.logger = get_logger("task-engine.store.memory")
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def _notify(self, collection: str):
        for queue in self._subscribers.get(collection, []):
            queue.put_nowait(None)

    def _insert(self, collection: str, doc_id: str, doc: Dict[str, Any]):
        stored = copy.deepcopy(doc)
        stored["id"] = doc_id
        stored[VERSION_FIELD] = 1
        self._collection(collection)[doc_id] = stored
        self._notify(collection)

    async def create(self, collection: str, doc: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or uuid.uuid4().hex
        existing = self._collection(collection).get(doc_id)
        if existing is not None:
            raise ConcurrentModificationError(collection, doc_id, 0, existing[VERSION_FIELD])
        self._insert(collection, doc_id, doc)
        return doc_id

    async def create_if_absent(self, collection: str, doc_id: str, doc: Dict[str, Any]) -> bool:
        if doc_id in self._collection(collection):
            return False
        self._insert(collection, doc_id, doc)
        return True

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self._collection(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def query(self, collection: str,
                    filters: Optional[Sequence[QueryFilter]] = None,
                    order_by: Optional[Sequence[OrderBy]] = None,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        results = apply_query(self._collection(collection).values(), filters, order_by, limit)
        return copy.deepcopy(results)

    async def update(self, collection: str, doc_id: str, partial: Dict[str, Any],
                     expected_version: Optional[int] = None) -> Dict[str, Any]:
        docs = self._collection(collection)
        current = docs.get(doc_id)
        if current is None:
            raise NotFoundError(f"{collection}/{doc_id} not found", {"collection": collection, "id": doc_id})
        if expected_version is not None and current[VERSION_FIELD] != expected_version:
            raise ConcurrentModificationError(collection, doc_id, expected_version, current[VERSION_FIELD])

        merged = dict(current)
        merged.update(copy.deepcopy({k: v for k, v in partial.items() if k not in ("id", VERSION_FIELD)}))
        merged[VERSION_FIELD] = current[VERSION_FIELD] + 1
        docs[doc_id] = merged
        self._notify(collection)
        return copy.deepcopy(merged)

    async def delete(self, collection: str, doc_id: str, expected_version: Optional[int] = None) -> bool:
        docs = self._collection(collection)
        current = docs.get(doc_id)
        if current is None:
            return False
        if expected_version is not None and current[VERSION_FIELD] != expected_version:
            raise ConcurrentModificationError(collection, doc_id, expected_version, current[VERSION_FIELD])
        del docs[doc_id]
        self._notify(collection)
        return True

    async def subscribe(self, collection: str,
                        filters: Optional[Sequence[QueryFilter]] = None,
                        order_by: Optional[Sequence[OrderBy]] = None,
                        limit: Optional[int] = None) -> AsyncIterator[List[Dict[str, Any]]]:
        changes: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(collection, []).append(changes)
        self.logger.debug("Subscriber added", collection=collection)
        try:
            yield await self.query(collection, filters, order_by, limit)
            while True:
                await changes.get()
                # Coalesce bursts of writes into one snapshot
                while not changes.empty():
                    changes.get_nowait()
                yield await self.query(collection, filters, order_by, limit)
        finally:
            self._subscribers[collection].remove(changes)
            self.logger.debug("Subscriber removed", collection=collection)
