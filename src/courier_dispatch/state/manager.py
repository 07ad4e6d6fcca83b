"""Redis connection wrapper shared by the Redis-backed stores."""

import json
from typing import Any

import redis.asyncio as redis

from courier_dispatch.utils.logging import get_logger

logger = get_logger(__name__)


class StateManager:
    """Owns the Redis connection and namespaces every key it touches."""

    def __init__(self, redis_url: str, namespace: str = "dispatch") -> None:
        self.redis_client: redis.Redis | None = None
        self.redis_url = redis_url
        self.namespace = namespace

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self.redis_client is None:
            self.redis_client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("redis_connected", url=self.redis_url)

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("redis_disconnected")

    async def client(self) -> redis.Redis:
        """Connected client, connecting lazily."""
        if not self.redis_client:
            await self.connect()
        return self.redis_client

    async def ping(self) -> bool:
        """Check the server answers."""
        client = await self.client()
        return bool(await client.ping())

    def key(self, *parts: str) -> str:
        """Namespaced key."""
        return ":".join((self.namespace, *parts))

    async def get_json(self, key: str) -> Any:
        """Get and decode a JSON value."""
        client = await self.client()
        value = await client.get(key)

        if value is None:
            return None

        return json.loads(value)

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Encode and set a JSON value with optional TTL."""
        client = await self.client()
        await client.set(key, json.dumps(value), ex=ttl)
        logger.debug("state_set", key=key, ttl=ttl)

    async def delete(self, key: str) -> None:
        """Delete a key from Redis."""
        client = await self.client()
        await client.delete(key)
        logger.debug("state_deleted", key=key)

    async def publish(self, channel: str, message: str) -> None:
        """Publish a message to a channel."""
        client = await self.client()
        await client.publish(channel, message)
        logger.debug("message_published", channel=channel)
