# roomchat/services/document_store.py

from __future__ import annotations

import asyncio
import itertools
import logging
import secrets
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_letters + string.digits


class _ServerTimestamp:
    """Placeholder replaced by the store's own clock at write time."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class StoreError(Exception):
    """Any failure reported by a document store backend."""


def new_document_id() -> str:
    """Random 20 character id, the same shape the hosted store assigns."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(20))


@dataclass(frozen=True)
class DocumentSnapshot:
    id: str
    data: Optional[Dict[str, Any]] = None

    @property
    def exists(self) -> bool:
        return self.data is not None


DocumentCallback = Callable[[DocumentSnapshot], None]
CollectionCallback = Callable[[List[DocumentSnapshot]], None]


class Subscription:
    """
    Handle for a live watch.

    Callbacks are routed through ``deliver`` which drops anything arriving
    after ``cancel()``; backends may still have a notification in flight
    when the consumer cancels.
    """

    def __init__(self, description: str, unsubscribe: Optional[Callable[[], None]] = None) -> None:
        self.description = description
        self.active = True
        self._unsubscribe = unsubscribe

    def bind(self, unsubscribe: Callable[[], None]) -> None:
        self._unsubscribe = unsubscribe

    def deliver(self, callback: Callable[..., None], *args: Any) -> None:
        if not self.active:
            logger.debug("Dropped late delivery for cancelled watch %s", self.description)
            return
        callback(*args)

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._unsubscribe is not None:
            try:
                self._unsubscribe()
            except Exception as e:
                logger.warning("Error while cancelling watch %s: %s", self.description, e)
        logger.debug("Cancelled watch %s", self.description)


# ============================================================================
# DOCUMENT STORE CONTRACT
# ============================================================================

class DocumentStore(ABC):
    """
    The remote, multi-user document store as seen by the chat core.

    Collections are addressed by slash paths (``rooms`` or
    ``rooms/{room_id}/messages``). Watches re-deliver the complete current
    state on every change instead of deltas, and their callbacks always run
    on the event loop that created them.
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        ...

    @abstractmethod
    async def add(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        """Create a document, or replace it when ``doc_id`` already exists."""

    @abstractmethod
    async def add_to_set(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        """Atomic set-union of ``value`` into an array field of an existing document."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        ...

    @abstractmethod
    async def delete_collection(self, collection: str) -> int:
        """Delete every document of a collection; returns how many were removed."""

    @abstractmethod
    def watch_document(self, collection: str, doc_id: str, callback: DocumentCallback) -> Subscription:
        ...

    @abstractmethod
    def watch_collection(self, collection: str, order_by: str, callback: CollectionCallback) -> Subscription:
        ...

    async def close(self) -> None:
        return None


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================

@dataclass
class _Record:
    data: Dict[str, Any]
    seq: int


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store used for development and tests.

    Writes are applied immediately; watchers are notified on a later turn of
    the event loop, so callers observe their own writes only through their
    subscriptions, like with the hosted store.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, _Record]] = {}
        self._seq = itertools.count(1)
        self._document_watches: Dict[Tuple[str, str], List[Tuple[Subscription, DocumentCallback]]] = {}
        self._collection_watches: Dict[str, List[Tuple[Subscription, str, CollectionCallback]]] = {}
        self._last_stamp: Optional[datetime] = None

    def _now(self) -> datetime:
        # Server clock: never goes backwards between two writes
        stamp = datetime.now(timezone.utc)
        if self._last_stamp is not None and stamp < self._last_stamp:
            stamp = self._last_stamp
        self._last_stamp = stamp
        return stamp

    def _resolve(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = self._now()
        return {k: (now if v is SERVER_TIMESTAMP else v) for k, v in data.items()}

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        record = self._collections.get(collection, {}).get(doc_id)
        return DocumentSnapshot(doc_id, dict(record.data) if record else None)

    async def add(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        docs = self._collections.setdefault(collection, {})
        doc_id = doc_id or new_document_id()
        existing = docs.get(doc_id)
        seq = existing.seq if existing else next(self._seq)
        docs[doc_id] = _Record(self._resolve(data), seq)
        self._notify(collection, doc_id)
        return doc_id

    async def add_to_set(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        record = self._collections.get(collection, {}).get(doc_id)
        if record is None:
            raise StoreError(f"No document to update: {collection}/{doc_id}")
        current = list(record.data.get(field) or [])
        if value not in current:
            current.append(value)
        record.data[field] = current
        self._notify(collection, doc_id)

    async def delete(self, collection: str, doc_id: str) -> None:
        if self._collections.get(collection, {}).pop(doc_id, None) is not None:
            self._notify(collection, doc_id)

    async def delete_collection(self, collection: str) -> int:
        docs = self._collections.pop(collection, {})
        for doc_id in docs:
            self._notify(collection, doc_id)
        return len(docs)

    def watch_document(self, collection: str, doc_id: str, callback: DocumentCallback) -> Subscription:
        key = (collection, doc_id)
        sub = Subscription(f"{collection}/{doc_id}")
        entry = (sub, callback)
        self._document_watches.setdefault(key, []).append(entry)
        sub.bind(lambda: self._document_watches.get(key, []).remove(entry))
        asyncio.get_running_loop().call_soon(self._deliver_document, sub, collection, doc_id, callback)
        return sub

    def watch_collection(self, collection: str, order_by: str, callback: CollectionCallback) -> Subscription:
        sub = Subscription(f"{collection} by {order_by}")
        entry = (sub, order_by, callback)
        self._collection_watches.setdefault(collection, []).append(entry)
        sub.bind(lambda: self._collection_watches.get(collection, []).remove(entry))
        asyncio.get_running_loop().call_soon(self._deliver_collection, sub, collection, order_by, callback)
        return sub

    def _notify(self, collection: str, doc_id: str) -> None:
        loop = asyncio.get_running_loop()
        for sub, callback in list(self._document_watches.get((collection, doc_id), [])):
            loop.call_soon(self._deliver_document, sub, collection, doc_id, callback)
        for sub, order_by, callback in list(self._collection_watches.get(collection, [])):
            loop.call_soon(self._deliver_collection, sub, collection, order_by, callback)

    def _deliver_document(self, sub: Subscription, collection: str, doc_id: str, callback: DocumentCallback) -> None:
        record = self._collections.get(collection, {}).get(doc_id)
        sub.deliver(callback, DocumentSnapshot(doc_id, dict(record.data) if record else None))

    def _deliver_collection(self, sub: Subscription, collection: str, order_by: str, callback: CollectionCallback) -> None:
        records = self._collections.get(collection, {})
        ordered = sorted(
            records.items(),
            key=lambda item: (item[1].data.get(order_by) is None, item[1].data.get(order_by) or 0, item[1].seq),
        )
        sub.deliver(callback, [DocumentSnapshot(doc_id, dict(r.data)) for doc_id, r in ordered])
