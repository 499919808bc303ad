# roomchat/api/routes/health.py

from datetime import datetime, timezone

from fastapi import APIRouter

from roomchat.core import state
from roomchat.core.config import settings

router = APIRouter()

@router.get("/health")
async def health():
    """
    Health check endpoint.

    Returns:
        dict: Status, store backend, open room views, sessions, messages sent
    """
    uptime_seconds = (datetime.now(timezone.utc) - state.app_start_time).total_seconds()
    return {
        "status": "healthy" if state.store is not None else "starting",
        "store": settings.STORE_BACKEND,
        "active_views": state.active_views,
        "sessions": len(state.sessions.sessions) if state.sessions else 0,
        "messages_sent": state.send_coordinator.sent_count if state.send_coordinator else 0,
        "uptime_hours": round(uptime_seconds / 3600, 2),
    }
