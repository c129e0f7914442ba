import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Iterable, List, Tuple

import redis.asyncio as redis

from .config import settings
from .events import CONVERSATION_CHANNEL_PREFIX, USER_CHANNEL_PREFIX
from .websockets import ConnectionManager, manager

logger = logging.getLogger(__name__)

class LocalBroker:
    """Delivers straight to sockets held by this process."""

    def __init__(self, connections: ConnectionManager):
        self.connections = connections

    async def publish(self, channel: str, payload: dict) -> None:
        await self.connections.dispatch(channel, payload)

    async def close(self) -> None:
        return

class RedisBroker:
    """Publishes to Redis so every API process can relay to its own sockets."""

    def __init__(self, url: str):
        self.client = redis.from_url(url)

    async def publish(self, channel: str, payload: dict) -> None:
        await self.client.publish(channel, json.dumps(payload))

    async def close(self) -> None:
        await self.client.aclose()

async def run_redis_relay(client: redis.Redis, connections: ConnectionManager):
    """Forward every conversation/user channel message from Redis to local sockets."""
    pubsub = client.pubsub()
    await pubsub.psubscribe(f"{CONVERSATION_CHANNEL_PREFIX}*", f"{USER_CHANNEL_PREFIX}*")
    logger.info("Redis relay subscribed")
    try:
        while True:
            msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if not msg or msg.get("type") != "pmessage":
                continue
            channel = msg["channel"]
            data = msg["data"]
            if isinstance(channel, bytes):
                channel = channel.decode("utf-8")
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            try:
                await connections.dispatch(channel, json.loads(data))
            except json.JSONDecodeError:
                logger.warning(f"Dropping malformed payload on {channel}")
    finally:
        await pubsub.punsubscribe()
        await pubsub.aclose()

class FanoutPublisher:
    LOCK_STRIPES = 64

    def __init__(self, broker=None):
        self.broker = broker or LocalBroker(manager)
        # Striped so the lock table stays bounded however many conversations exist
        self._locks = [asyncio.Lock() for _ in range(self.LOCK_STRIPES)]

    @asynccontextmanager
    async def ordered(self, conversation_id: int):
        """Serialise mutation+publish for one conversation inside this process."""
        lock = self._locks[hash(conversation_id) % self.LOCK_STRIPES]
        async with lock:
            yield

    async def publish(self, channel: str, event) -> bool:
        """Best-effort publish; failures are logged and reported as False, never raised."""
        payload = event.model_dump(mode="json")
        try:
            await asyncio.wait_for(
                self.broker.publish(channel, payload),
                timeout=settings.PUBLISH_TIMEOUT_SECONDS,
            )
            return True
        except asyncio.TimeoutError:
            logger.error(f"Publish to {channel} timed out after {settings.PUBLISH_TIMEOUT_SECONDS}s")
        except Exception as e:
            logger.error(f"Publish to {channel} failed: {e}")
        return False

    async def publish_many(self, items: Iterable[Tuple[str, object]]) -> List[bool]:
        results = []
        for channel, event in items:
            results.append(await self.publish(channel, event))
        return results

def build_broker():
    if settings.REALTIME_BACKEND == "redis":
        return RedisBroker(settings.REDIS_URL)
    return LocalBroker(manager)

publisher = FanoutPublisher()
