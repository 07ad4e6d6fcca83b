"""Presence channel for live driver positions."""

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable

from redis.exceptions import RedisError

from courier_dispatch.exceptions import PresenceError
from courier_dispatch.state.documents import (
    ErrorCallback,
    RedisSubscription,
    Subscription,
    dispatch_callback,
)
from courier_dispatch.state.manager import StateManager
from courier_dispatch.utils.logging import get_logger

logger = get_logger(__name__)

ValueCallback = Callable[[Any], Any]


def driver_location_path(ride_id: str, driver_id: str) -> str:
    """Path of the live position for one driver on one ride."""
    return f"driverLocations/{ride_id}/{driver_id}"


class PresenceChannel(ABC):
    """Low-latency key/value channel with remove-on-disconnect semantics."""

    @abstractmethod
    async def publish(self, path: str, value: Any) -> None:
        """Set the value at a path and notify subscribers."""

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Delete the value at a path and notify subscribers."""

    @abstractmethod
    async def on_disconnect_cleanup(self, path: str) -> None:
        """Remove the path if this client goes away without cleaning up."""

    @abstractmethod
    async def read(self, path: str) -> Any:
        """Current value at a path, or None."""

    @abstractmethod
    async def subscribe(
        self,
        path: str,
        on_change: ValueCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Deliver the value now and on every change."""


class _PresenceSubscription(Subscription):
    def __init__(self, channel: "MemoryPresenceChannel", path: str, callback: ValueCallback):
        self._channel = channel
        self._path = path
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def close(self) -> None:
        if self._active:
            self._active = False
            self._channel._subscribers[self._path].remove(self._callback)


class MemoryPresenceChannel(PresenceChannel):
    """
    Process-local presence channel.

    ``disconnect()`` simulates the publishing client dying: every path
    registered through ``on_disconnect_cleanup`` is removed. Setting
    ``publish_error`` makes publishes fail the way a rules rejection does.
    """

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}
        self._cleanup: set[str] = set()
        self._subscribers: dict[str, list[ValueCallback]] = defaultdict(list)
        self.publish_error: Exception | None = None

    async def publish(self, path: str, value: Any) -> None:
        if self.publish_error is not None:
            raise PresenceError(f"publish to {path} rejected: {self.publish_error}")
        self._values[path] = copy.deepcopy(value)
        self._notify(path)

    async def remove(self, path: str) -> None:
        self._cleanup.discard(path)
        if self._values.pop(path, None) is not None:
            self._notify(path)

    async def on_disconnect_cleanup(self, path: str) -> None:
        self._cleanup.add(path)

    async def read(self, path: str) -> Any:
        return copy.deepcopy(self._values.get(path))

    async def subscribe(
        self,
        path: str,
        on_change: ValueCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        self._subscribers[path].append(on_change)
        dispatch_callback(on_change, copy.deepcopy(self._values.get(path)))
        return _PresenceSubscription(self, path, on_change)

    def disconnect(self) -> None:
        """Drop every value registered for cleanup, as the server would."""
        for path in list(self._cleanup):
            self._cleanup.discard(path)
            if self._values.pop(path, None) is not None:
                self._notify(path)
        logger.info("presence_client_disconnected")

    def _notify(self, path: str) -> None:
        for callback in list(self._subscribers[path]):
            dispatch_callback(callback, copy.deepcopy(self._values.get(path)))


class RedisPresenceChannel(PresenceChannel):
    """
    Presence values as Redis keys.

    Paths registered for disconnect cleanup are written with a TTL that each
    publish refreshes, so a publisher that stops without removing its value
    is cleaned up once the TTL lapses.
    """

    def __init__(self, state: StateManager, ttl_seconds: int = 30):
        self.state = state
        self.ttl_seconds = ttl_seconds
        self._cleanup: set[str] = set()

    def _key(self, path: str) -> str:
        return self.state.key("presence", path)

    async def publish(self, path: str, value: Any) -> None:
        ttl = self.ttl_seconds if path in self._cleanup else None
        try:
            await self.state.set_json(self._key(path), value, ttl=ttl)
            await self.state.publish(self._key(path), json.dumps(value))
        except RedisError as e:
            raise PresenceError(f"publish to {path} failed: {e}") from e

    async def remove(self, path: str) -> None:
        self._cleanup.discard(path)
        try:
            await self.state.delete(self._key(path))
            await self.state.publish(self._key(path), json.dumps(None))
        except RedisError as e:
            raise PresenceError(f"remove {path} failed: {e}") from e

    async def on_disconnect_cleanup(self, path: str) -> None:
        self._cleanup.add(path)
        try:
            client = await self.state.client()
            await client.expire(self._key(path), self.ttl_seconds)
        except RedisError as e:
            raise PresenceError(f"register cleanup for {path} failed: {e}") from e

    async def read(self, path: str) -> Any:
        try:
            return await self.state.get_json(self._key(path))
        except RedisError as e:
            raise PresenceError(f"read {path} failed: {e}") from e

    async def subscribe(
        self,
        path: str,
        on_change: ValueCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        try:
            client = await self.state.client()
            pubsub = client.pubsub()
            await pubsub.subscribe(self._key(path))
        except RedisError as e:
            raise PresenceError(f"subscribe {path} failed: {e}") from e

        dispatch_callback(on_change, await self.read(path))

        async def listen() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") == "message":
                        dispatch_callback(on_change, json.loads(message["data"]))
            except RedisError as e:
                logger.error("presence_subscription_failed", path=path, error=str(e))
                if on_error:
                    dispatch_callback(on_error, e)

        return RedisSubscription(pubsub, asyncio.create_task(listen()))
