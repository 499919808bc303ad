# roomchat/main.py

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from roomchat.core import state
from roomchat.core.config import settings
from roomchat.core.logging import setup_logging, get_logger
from roomchat.api.routes import root, health, rooms, auth
from roomchat.api import websocket as websocket_module

# Configure logging first
setup_logging()
logger = get_logger(__name__)

# FastAPI app
app = FastAPI(title="Roomchat - Live Group Chat")

# Cookies carry the session, so origins must be explicit
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# REST routes
app.include_router(root.router)
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(rooms.router)

# WebSocket routes
app.include_router(websocket_module.router)


@app.on_event("startup")
async def startup_event():
    logger.info(f"🚀 Application starting - store backend: {settings.STORE_BACKEND}")
    await state.init_services()


@app.on_event("shutdown")
async def on_shutdown():
    await state.shutdown_services()
    logger.info("Application stopped")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("roomchat.main:app", host="0.0.0.0", port=8000)
