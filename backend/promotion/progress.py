"""
Progress sinks for long-running promotion steps.

The state machine reports spinner text and status changes through an
injected sink instead of a process-wide socket handle. The Redis sink
publishes to the channel the ``/ws/progress`` websocket relays.
"""

import json
from typing import Any, Protocol

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from core.config import get_settings

settings = get_settings()
logger = structlog.get_logger()


class ProgressSink(Protocol):
    async def publish(self, event: str, payload: dict[str, Any]) -> None: ...


class NullProgressSink:
    async def publish(self, event: str, payload: dict[str, Any]) -> None:
        return None


class RecordingProgressSink:
    """Keeps events in memory."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))


class RedisProgressSink:
    def __init__(self, url: str | None = None, channel: str | None = None):
        self.url = url or settings.redis_url
        self.channel = channel or settings.progress_channel

    async def publish(self, event: str, payload: dict[str, Any]) -> None:
        message = json.dumps({"type": event, "payload": payload}, default=str)
        redis = aioredis.from_url(self.url)
        try:
            await redis.publish(self.channel, message)
        except RedisError as exc:
            # Progress is advisory; the status change is already committed.
            logger.warning("progress.publish_failed", event_type=event, error=str(exc))
        finally:
            await redis.aclose()
