# roomchat/services/firestore_store.py

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore

from roomchat.services.document_store import (
    SERVER_TIMESTAMP,
    CollectionCallback,
    DocumentCallback,
    DocumentSnapshot,
    DocumentStore,
    StoreError,
    Subscription,
)

logger = logging.getLogger(__name__)

# Firestore caps a write batch at 500 operations
BATCH_SIZE = 500


def _to_firestore(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (firestore.SERVER_TIMESTAMP if v is SERVER_TIMESTAMP else v) for k, v in data.items()}


class FirestoreDocumentStore(DocumentStore):
    """
    Document store backed by Cloud Firestore.

    Architecture:
        - Async client for one-shot reads, writes and deletes
        - Sync client for ``on_snapshot`` watches, the only kind the SDK
          offers. Their callbacks fire on a background thread and are
          scheduled onto the event loop that opened the watch.
    """

    def __init__(
        self,
        project: Optional[str] = None,
        client: Optional[firestore.Client] = None,
        async_client: Optional[firestore.AsyncClient] = None,
    ) -> None:
        self.client = client or firestore.Client(project=project or None)
        self.async_client = async_client or firestore.AsyncClient(project=project or None)
        logger.info("✓ Firestore store ready (project=%s)", self.client.project)

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        try:
            snap = await self.async_client.collection(collection).document(doc_id).get()
        except google_exceptions.GoogleAPIError as e:
            raise StoreError(f"Read failed for {collection}/{doc_id}: {e}") from e
        return DocumentSnapshot(snap.id, snap.to_dict() if snap.exists else None)

    async def add(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        coll = self.async_client.collection(collection)
        try:
            if doc_id:
                await coll.document(doc_id).set(_to_firestore(data))
                return doc_id
            _, ref = await coll.add(_to_firestore(data))
        except google_exceptions.GoogleAPIError as e:
            raise StoreError(f"Write failed for {collection}: {e}") from e
        return ref.id

    async def add_to_set(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        ref = self.async_client.collection(collection).document(doc_id)
        try:
            await ref.update({field: firestore.ArrayUnion([value])})
        except google_exceptions.GoogleAPIError as e:
            raise StoreError(f"Update failed for {collection}/{doc_id}: {e}") from e

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            await self.async_client.collection(collection).document(doc_id).delete()
        except google_exceptions.GoogleAPIError as e:
            raise StoreError(f"Delete failed for {collection}/{doc_id}: {e}") from e

    async def delete_collection(self, collection: str) -> int:
        deleted = 0
        try:
            batch = self.async_client.batch()
            pending = 0
            async for snap in self.async_client.collection(collection).stream():
                batch.delete(snap.reference)
                pending += 1
                if pending == BATCH_SIZE:
                    await batch.commit()
                    deleted += pending
                    batch = self.async_client.batch()
                    pending = 0
            if pending:
                await batch.commit()
                deleted += pending
        except google_exceptions.GoogleAPIError as e:
            raise StoreError(f"Delete failed for {collection} after {deleted} documents: {e}") from e
        return deleted

    def watch_document(self, collection: str, doc_id: str, callback: DocumentCallback) -> Subscription:
        loop = asyncio.get_running_loop()
        sub = Subscription(f"{collection}/{doc_id}")

        def _on_snapshot(docs, changes, read_time):
            snap = docs[0] if docs else None
            if snap is not None and snap.exists:
                snapshot = DocumentSnapshot(snap.id, snap.to_dict())
            else:
                snapshot = DocumentSnapshot(doc_id, None)
            # Schedule on the loop that owns the subscriber
            loop.call_soon_threadsafe(sub.deliver, callback, snapshot)

        watch = self.client.collection(collection).document(doc_id).on_snapshot(_on_snapshot)
        sub.bind(watch.unsubscribe)
        return sub

    def watch_collection(self, collection: str, order_by: str, callback: CollectionCallback) -> Subscription:
        loop = asyncio.get_running_loop()
        sub = Subscription(f"{collection} by {order_by}")

        def _on_snapshot(docs, changes, read_time):
            snapshots = [DocumentSnapshot(d.id, d.to_dict()) for d in docs]
            loop.call_soon_threadsafe(sub.deliver, callback, snapshots)

        query = self.client.collection(collection).order_by(order_by, direction=firestore.Query.ASCENDING)
        watch = query.on_snapshot(_on_snapshot)
        sub.bind(watch.unsubscribe)
        return sub
