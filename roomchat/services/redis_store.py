# roomchat/services/redis_store.py
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from roomchat.services.document_store import (
    SERVER_TIMESTAMP,
    CollectionCallback,
    DocumentCallback,
    DocumentSnapshot,
    DocumentStore,
    StoreError,
    Subscription,
    new_document_id,
)

logger = logging.getLogger(__name__)

_TIMESTAMP_TAG = "__timestamp__"
_SEQ_FIELD = "__seq__"

# KEYS: doc, index, seq counter. ARGV: json body, doc id, server timestamp fields...
# Replacing an existing id keeps its position in the collection index.
ADD_SCRIPT = """
local t = redis.call('TIME')
local stamp = string.format('%d.%06d', tonumber(t[1]), tonumber(t[2]))
local doc = cjson.decode(ARGV[1])
for i = 3, #ARGV do
    doc[ARGV[i]] = {__timestamp__ = stamp}
end
local seq = redis.call('ZSCORE', KEYS[2], ARGV[2])
if not seq then
    seq = redis.call('INCR', KEYS[3])
    redis.call('ZADD', KEYS[2], seq, ARGV[2])
end
doc['__seq__'] = tonumber(seq)
redis.call('SET', KEYS[1], cjson.encode(doc))
return 1
"""

# KEYS: doc. ARGV: field, value. Returns 0 when the document is missing.
ADD_TO_SET_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return 0
end
local doc = cjson.decode(raw)
local values = doc[ARGV[1]]
if type(values) ~= 'table' then
    values = {}
end
for _, v in ipairs(values) do
    if v == ARGV[2] then
        return 1
    end
end
table.insert(values, ARGV[2])
doc[ARGV[1]] = values
redis.call('SET', KEYS[1], cjson.encode(doc))
return 1
"""


def _decode_value(obj: Dict[str, Any]) -> Any:
    if set(obj) == {_TIMESTAMP_TAG}:
        return datetime.fromtimestamp(float(obj[_TIMESTAMP_TAG]), tz=timezone.utc)
    return obj


class RedisDocumentStore(DocumentStore):
    """
    Document store on plain Redis.

    Layout:
        doc:{collection}/{id}     JSON body, server timestamps tagged
        index:{collection}        sorted set of ids, scored by insertion sequence
        seq:{collection}          insertion counter
        changes:{collection}      Pub/Sub channel, one message per write
        changes:{collection}/{id} Pub/Sub channel for a single document

    Watches subscribe to the change channel and re-read the full state on
    every notification, so a missed or coalesced message never leaves a
    watcher with partial data.
    """

    def __init__(self, host: str = "localhost", port: int = 6379, access_key: str = "", tls: bool = True):
        self.host = host
        self.port = port
        self.access_key = access_key
        self.tls = tls
        self.client = None
        self._add_script = None
        self._add_to_set_script = None
        self._watch_tasks: set[asyncio.Task] = set()

    async def connect(self):
        """Establish async connection to Redis."""
        scheme = "rediss" if self.tls else "redis"
        self.client = redis.from_url(
            f"{scheme}://:{self.access_key}@{self.host}:{self.port}",
            decode_responses=True,
        )
        await self.client.ping()
        self._add_script = self.client.register_script(ADD_SCRIPT)
        self._add_to_set_script = self.client.register_script(ADD_TO_SET_SCRIPT)
        logger.info(f"✓ Connected to Redis at {self.host}:{self.port}")

    @staticmethod
    def _doc_key(collection: str, doc_id: str) -> str:
        return f"doc:{collection}/{doc_id}"

    @staticmethod
    def _parse(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        return json.loads(raw, object_hook=_decode_value)

    async def _publish(self, *channels: str) -> None:
        for channel in channels:
            await self.client.publish(f"changes:{channel}", "1")

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        try:
            raw = await self.client.get(self._doc_key(collection, doc_id))
        except RedisError as e:
            raise StoreError(f"Read failed for {collection}/{doc_id}: {e}") from e
        data = self._parse(raw)
        if data is not None:
            data.pop(_SEQ_FIELD, None)
        return DocumentSnapshot(doc_id, data)

    async def add(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or new_document_id()
        stamped = [k for k, v in data.items() if v is SERVER_TIMESTAMP]
        body = {k: v for k, v in data.items() if v is not SERVER_TIMESTAMP}
        try:
            await self._add_script(
                keys=[self._doc_key(collection, doc_id), f"index:{collection}", f"seq:{collection}"],
                args=[json.dumps(body), doc_id, *stamped],
            )
            await self._publish(collection, f"{collection}/{doc_id}")
        except RedisError as e:
            raise StoreError(f"Write failed for {collection}: {e}") from e
        return doc_id

    async def add_to_set(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        try:
            found = await self._add_to_set_script(keys=[self._doc_key(collection, doc_id)], args=[field, value])
            if found:
                await self._publish(collection, f"{collection}/{doc_id}")
        except RedisError as e:
            raise StoreError(f"Update failed for {collection}/{doc_id}: {e}") from e
        if not found:
            raise StoreError(f"No document to update: {collection}/{doc_id}")

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(self._doc_key(collection, doc_id))
                pipe.zrem(f"index:{collection}", doc_id)
                await pipe.execute()
            await self._publish(collection, f"{collection}/{doc_id}")
        except RedisError as e:
            raise StoreError(f"Delete failed for {collection}/{doc_id}: {e}") from e

    async def delete_collection(self, collection: str) -> int:
        try:
            ids = await self.client.zrange(f"index:{collection}", 0, -1)
            async with self.client.pipeline(transaction=True) as pipe:
                for doc_id in ids:
                    pipe.delete(self._doc_key(collection, doc_id))
                pipe.delete(f"index:{collection}", f"seq:{collection}")
                await pipe.execute()
            await self._publish(collection, *(f"{collection}/{doc_id}" for doc_id in ids))
        except RedisError as e:
            raise StoreError(f"Delete failed for {collection}: {e}") from e
        return len(ids)

    async def _read_collection(self, collection: str, order_by: str) -> List[DocumentSnapshot]:
        ids = await self.client.zrange(f"index:{collection}", 0, -1)
        if not ids:
            return []
        raws = await self.client.mget([self._doc_key(collection, doc_id) for doc_id in ids])
        docs = [(doc_id, self._parse(raw)) for doc_id, raw in zip(ids, raws) if raw is not None]
        docs.sort(key=lambda d: (d[1].get(order_by) is None, d[1].get(order_by) or 0, d[1].get(_SEQ_FIELD, 0)))
        for _, data in docs:
            data.pop(_SEQ_FIELD, None)
        return [DocumentSnapshot(doc_id, data) for doc_id, data in docs]

    def watch_document(self, collection: str, doc_id: str, callback: DocumentCallback) -> Subscription:
        sub = Subscription(f"{collection}/{doc_id}")

        async def _read():
            return await self.get(collection, doc_id)

        self._start_watch(sub, f"changes:{collection}/{doc_id}", _read, callback)
        return sub

    def watch_collection(self, collection: str, order_by: str, callback: CollectionCallback) -> Subscription:
        sub = Subscription(f"{collection} by {order_by}")

        async def _read():
            return await self._read_collection(collection, order_by)

        self._start_watch(sub, f"changes:{collection}", _read, callback)
        return sub

    def _start_watch(self, sub: Subscription, channel: str, read, callback) -> None:
        task = asyncio.create_task(self._listen(sub, channel, read, callback))
        self._watch_tasks.add(task)
        task.add_done_callback(self._watch_tasks.discard)
        sub.bind(task.cancel)

    async def _listen(self, sub: Subscription, channel: str, read, callback) -> None:
        """Deliver the current state, then again after every change notification."""
        pubsub = self.client.pubsub()
        try:
            await pubsub.subscribe(channel)
            logger.info(f"✓ Subscribed to Redis channel '{channel}'")
            await self._refresh(sub, channel, read, callback)

            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                await self._refresh(sub, channel, read, callback)
        except asyncio.CancelledError:
            pass
        except RedisError as e:
            logger.error(f"Redis watch on '{channel}' stopped: {e}")
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()

    @staticmethod
    async def _refresh(sub: Subscription, channel: str, read, callback) -> None:
        # A failed read skips one delivery; the next change re-reads everything
        try:
            state = await read()
        except (RedisError, StoreError) as e:
            logger.error(f"Error re-reading after change on '{channel}': {e}")
            return
        sub.deliver(callback, state)

    async def close(self):
        """Close connections."""
        for task in list(self._watch_tasks):
            task.cancel()
        if self.client:
            await self.client.aclose()
        logger.info("Redis connection closed")
