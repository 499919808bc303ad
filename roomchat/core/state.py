# roomchat/core/state.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from roomchat.core.config import settings
from roomchat.services.attachments import AttachmentPipeline, ImageHostClient
from roomchat.services.document_store import DocumentStore, InMemoryDocumentStore
from roomchat.services.identity import IdentityClient, SessionRegistry
from roomchat.services.room_manager import RoomManager
from roomchat.services.send_coordinator import SendCoordinator

# Global singletons for app state, wired by init_services() on startup
store: Optional[DocumentStore] = None
room_manager: Optional[RoomManager] = None
send_coordinator: Optional[SendCoordinator] = None
pipeline: Optional[AttachmentPipeline] = None
sessions: Optional[SessionRegistry] = None

# Metrics
active_views: int = 0
app_start_time: datetime = datetime.now(timezone.utc)


async def create_store() -> DocumentStore:
    if settings.STORE_BACKEND == "redis":
        from roomchat.services.redis_store import RedisDocumentStore

        redis_store = RedisDocumentStore(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            access_key=settings.REDIS_ACCESS_KEY,
            tls=settings.REDIS_TLS,
        )
        await redis_store.connect()
        return redis_store
    if settings.STORE_BACKEND == "firestore":
        from roomchat.services.firestore_store import FirestoreDocumentStore

        return FirestoreDocumentStore(project=settings.FIREBASE_PROJECT_ID)
    return InMemoryDocumentStore()


async def init_services() -> None:
    global store, room_manager, send_coordinator, pipeline, sessions

    store = await create_store()
    host = ImageHostClient(api_key=settings.IMGBB_API_KEY, upload_url=settings.IMGBB_UPLOAD_URL)
    pipeline = AttachmentPipeline(host, max_dimension=settings.IMAGE_MAX_DIMENSION, quality=settings.IMAGE_QUALITY)
    room_manager = RoomManager(store)
    send_coordinator = SendCoordinator(store, pipeline)
    sessions = SessionRegistry(IdentityClient(settings.FIREBASE_API_KEY), pipeline, max_age=settings.SESSION_MAX_AGE)
    sessions.start()


async def shutdown_services() -> None:
    global store, sessions
    if sessions is not None:
        await sessions.close()
        sessions = None
    if store is not None:
        await store.close()
        store = None
