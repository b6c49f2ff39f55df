"""
WebSocket endpoint streaming promotion progress via Redis pub/sub.

The state machine publishes ``{"type": ..., "payload": ...}`` messages on
``settings.progress_channel``; every connected operator sees them.
"""

import asyncio

import redis.asyncio as aioredis
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from core.config import get_settings
from core.security import decode_access_token

settings = get_settings()
router = APIRouter()

HEARTBEAT_SECONDS = 30


async def authenticate_ws(token: str | None) -> dict | None:
    """Validate JWT token from WebSocket query param."""
    if settings.debug:
        return {"sub": "dev-user", "email": "dev@offerops.local"}
    if not token:
        return None
    return decode_access_token(token)


@router.websocket("/ws/progress")
async def websocket_progress(websocket: WebSocket, token: str | None = Query(None)):
    """
    Connect: ws://host/ws/progress?token=<jwt>

    Messages sent to client:
        {"type": "progress", "payload": {"store_code", "entity_code", "text"}}
        {"type": "entity_status", "payload": {"store_code", "entity_code", "status", ...}}
        {"type": "heartbeat", "payload": {}}
    """
    user = await authenticate_ws(token)
    if user is None:
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()

    channel = settings.progress_channel
    redis = aioredis.from_url(settings.redis_url)
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)

    async def listen_redis():
        async for message in pubsub.listen():
            if message["type"] == "message":
                await websocket.send_text(message["data"].decode())

    async def send_heartbeat():
        while True:
            await asyncio.sleep(HEARTBEAT_SECONDS)
            await websocket.send_json({"type": "heartbeat", "payload": {}})

    try:
        await asyncio.gather(listen_redis(), send_heartbeat())
    except (WebSocketDisconnect, RuntimeError):
        pass
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        await redis.aclose()
