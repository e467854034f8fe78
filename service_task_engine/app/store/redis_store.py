"""
Redis-backed document store.

Layout per collection:
  {prefix}:{collection}:{id}      JSON document
  {prefix}:{collection}:__ids__   set of document ids
  {prefix}:{collection}:__changes__  pub/sub channel, one message per write
"""

import json
import uuid
from contextlib import contextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from shared.errors import ConcurrentModificationError, NotFoundError, StoreUnavailableError
from shared.logging import get_logger

from .base import DocumentStore, OrderBy, QueryFilter, VERSION_FIELD, apply_query

# Unconditional updates retry this many times when a concurrent write races them
_MAX_WATCH_RETRIES = 5


@contextmanager
def _unavailable_on_connection_error():
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as e:
        raise StoreUnavailableError("redis", str(e)) from e


class RedisDocumentStore(DocumentStore):
    """Document store shared between engine replicas through Redis."""

    backend_name = "redis"

    def __init__(self, redis_url: str, key_prefix: str = "opsflow", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("task-engine.store.redis")
        self.redis: Optional[redis.Redis] = client

    async def start(self):
        """Connect to Redis."""
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
        with _unavailable_on_connection_error():
            await self.redis.ping()
        self.logger.info("Redis document store started", prefix=self.key_prefix)

    async def close(self):
        if self.redis is not None:
            await self.redis.aclose()
            self.logger.info("Redis document store stopped")

    async def ping(self) -> bool:
        with _unavailable_on_connection_error():
            return bool(await self.redis.ping())

    def _doc_key(self, collection: str, doc_id: str) -> str:
        return f"{self.key_prefix}:{collection}:{doc_id}"

    def _ids_key(self, collection: str) -> str:
        return f"{self.key_prefix}:{collection}:__ids__"

    def _channel(self, collection: str) -> str:
        return f"{self.key_prefix}:{collection}:__changes__"

    @staticmethod
    def _encode(doc: Dict[str, Any]) -> str:
        return json.dumps(doc, default=str)

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def _publish(self, collection: str, doc_id: str):
        await self.redis.publish(self._channel(collection), doc_id)

    async def _insert(self, collection: str, doc_id: str, doc: Dict[str, Any]) -> bool:
        stored = dict(doc)
        stored["id"] = doc_id
        stored[VERSION_FIELD] = 1
        with _unavailable_on_connection_error():
            created = await self.redis.set(self._doc_key(collection, doc_id), self._encode(stored), nx=True)
            if not created:
                return False
            await self.redis.sadd(self._ids_key(collection), doc_id)
            await self._publish(collection, doc_id)
        return True

    async def create(self, collection: str, doc: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or uuid.uuid4().hex
        if not await self._insert(collection, doc_id, doc):
            existing = await self.get(collection, doc_id)
            raise ConcurrentModificationError(
                collection, doc_id, 0, existing.get(VERSION_FIELD) if existing else None
            )
        return doc_id

    async def create_if_absent(self, collection: str, doc_id: str, doc: Dict[str, Any]) -> bool:
        return await self._insert(collection, doc_id, doc)

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with _unavailable_on_connection_error():
            raw = await self.redis.get(self._doc_key(collection, doc_id))
        return self._decode(raw)

    async def _load_collection(self, collection: str) -> List[Dict[str, Any]]:
        with _unavailable_on_connection_error():
            ids = await self.redis.smembers(self._ids_key(collection))
            if not ids:
                return []
            keys = [self._doc_key(collection, i if isinstance(i, str) else i.decode("utf-8")) for i in ids]
            raws = await self.redis.mget(keys)
        return [doc for doc in (self._decode(raw) for raw in raws) if doc is not None]

    async def query(self, collection: str,
                    filters: Optional[Sequence[QueryFilter]] = None,
                    order_by: Optional[Sequence[OrderBy]] = None,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = await self._load_collection(collection)
        return apply_query(docs, filters, order_by, limit)

    async def update(self, collection: str, doc_id: str, partial: Dict[str, Any],
                     expected_version: Optional[int] = None) -> Dict[str, Any]:
        key = self._doc_key(collection, doc_id)
        changes = {k: v for k, v in partial.items() if k not in ("id", VERSION_FIELD)}

        for _ in range(_MAX_WATCH_RETRIES):
            with _unavailable_on_connection_error():
                async with self.redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    current = self._decode(await pipe.get(key))
                    if current is None:
                        await pipe.unwatch()
                        raise NotFoundError(
                            f"{collection}/{doc_id} not found", {"collection": collection, "id": doc_id}
                        )
                    if expected_version is not None and current.get(VERSION_FIELD) != expected_version:
                        await pipe.unwatch()
                        raise ConcurrentModificationError(
                            collection, doc_id, expected_version, current.get(VERSION_FIELD)
                        )

                    merged = dict(current)
                    merged.update(changes)
                    merged[VERSION_FIELD] = current.get(VERSION_FIELD, 0) + 1

                    pipe.multi()
                    pipe.set(key, self._encode(merged))
                    pipe.publish(self._channel(collection), doc_id)
                    try:
                        await pipe.execute()
                    except WatchError:
                        if expected_version is not None:
                            raise ConcurrentModificationError(
                                collection, doc_id, expected_version, None
                            )
                        self.logger.debug("Update raced, retrying", collection=collection, id=doc_id)
                        continue
                    return merged

        raise ConcurrentModificationError(collection, doc_id, -1, None)

    async def delete(self, collection: str, doc_id: str, expected_version: Optional[int] = None) -> bool:
        key = self._doc_key(collection, doc_id)

        with _unavailable_on_connection_error():
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = self._decode(await pipe.get(key))
                if current is None:
                    await pipe.unwatch()
                    return False
                if expected_version is not None and current.get(VERSION_FIELD) != expected_version:
                    await pipe.unwatch()
                    raise ConcurrentModificationError(
                        collection, doc_id, expected_version, current.get(VERSION_FIELD)
                    )

                pipe.multi()
                pipe.delete(key)
                pipe.srem(self._ids_key(collection), doc_id)
                pipe.publish(self._channel(collection), doc_id)
                try:
                    await pipe.execute()
                except WatchError:
                    raise ConcurrentModificationError(
                        collection, doc_id, expected_version or current.get(VERSION_FIELD), None
                    )
        return True

    async def subscribe(self, collection: str,
                        filters: Optional[Sequence[QueryFilter]] = None,
                        order_by: Optional[Sequence[OrderBy]] = None,
                        limit: Optional[int] = None) -> AsyncIterator[List[Dict[str, Any]]]:
        pubsub = self.redis.pubsub()
        with _unavailable_on_connection_error():
            await pubsub.subscribe(self._channel(collection))
        try:
            yield await self.query(collection, filters, order_by, limit)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                yield await self.query(collection, filters, order_by, limit)
        finally:
            await pubsub.unsubscribe(self._channel(collection))
            await pubsub.aclose()
