"""Best-effort live events for a video, published on a Redis pub/sub room."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import redis
import redis.asyncio as aioredis

from app.config import settings
from app.schemas import is_valid_video_id

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "video:"


def channel_for(video_id) -> Optional[str]:
    """Room name for ``video_id`` or None when the id is not routable."""
    if not is_valid_video_id(video_id):
        return None
    return f"{CHANNEL_PREFIX}{video_id}"


class Notifier:
    """
    Publishes ``progress``, ``completed`` and ``failed`` events.

    Delivery is fire-and-forget: invalid ids and broker errors are logged
    and dropped, never raised to the caller.
    """

    def __init__(self, client: Optional[redis.Redis] = None, url: Optional[str] = None) -> None:
        self.url = url or settings.REDIS_URL
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.url)
        return self._client

    def publish(self, video_id, event: str, **data) -> bool:
        channel = channel_for(video_id)
        if channel is None:
            logger.warning("Dropping %s event for invalid video id %r", event, video_id)
            return False
        payload = {
            "event": event,
            "video_id": video_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **data,
        }
        try:
            self.client.publish(channel, json.dumps(payload))
        except Exception as exc:
            logger.warning("Failed to publish %s event for %s: %s", event, video_id, exc)
            return False
        return True

    def progress(self, video_id, phase: str, progress: int) -> bool:
        return self.publish(video_id, "progress", phase=phase, progress=progress)

    def completed(self, video_id, transcript: str, summary: Optional[str]) -> bool:
        return self.publish(video_id, "completed", status="completed", transcript=transcript, summary=summary)

    def failed(self, video_id, error: str) -> bool:
        return self.publish(video_id, "failed", status="failed", error=error)

    async def subscribe(self, video_id) -> AsyncIterator[dict]:
        """Yield decoded events published to the room of ``video_id``."""
        channel = channel_for(video_id)
        if channel is None:
            raise ValueError(f"Invalid video id: {video_id!r}")

        client = aioredis.from_url(self.url)
        pubsub = client.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except ValueError:
                    logger.warning("Skipping undecodable message on %s", channel)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
            await client.aclose()
