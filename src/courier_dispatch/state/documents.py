"""Document store: one record per request, driver and courier rate table."""

import asyncio
import copy
import inspect
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from redis.exceptions import RedisError, WatchError

from courier_dispatch.exceptions import (
    DocumentNotFoundError,
    PreconditionFailedError,
    StoreError,
)
from courier_dispatch.state.manager import StateManager
from courier_dispatch.utils.logging import get_logger

logger = get_logger(__name__)

REQUESTS = "rideRequests"
DRIVERS = "drivers"
COURIER_PRICING = "courierPricing"

Document = dict[str, Any]
Mutation = Callable[[Document | None], Document | None]
SnapshotCallback = Callable[[list[Document]], Any]
DocumentCallback = Callable[[Document | None], Any]
ErrorCallback = Callable[[Exception], Any]


class _ServerTimestamp:
    """Placeholder replaced by the store's clock at write time."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize to UTC. A datetime without an offset is taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_path(document: Document | None, path: str) -> Any:
    """Read a dotted path, returning None when any segment is missing."""
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def set_path(document: Document, path: str, value: Any) -> None:
    """Write a dotted path, creating intermediate mappings."""
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        nested = target.get(part)
        if not isinstance(nested, dict):
            nested = {}
            target[part] = nested
        target = nested
    target[parts[-1]] = value


def matches(document: Document, filters: dict[str, Any] | None) -> bool:
    """Check equality filters on dotted paths."""
    if not filters:
        return True
    return all(get_path(document, path) == value for path, value in filters.items())


def check_expectations(
    collection: str,
    doc_id: str,
    current: Document,
    expect: dict[str, Any] | None,
) -> None:
    """Raise if any expected field no longer holds its expected value."""
    if not expect:
        return

    mismatched = {
        path: get_path(current, path)
        for path, value in expect.items()
        if get_path(current, path) != value
    }
    if mismatched:
        raise PreconditionFailedError(
            f"{collection}/{doc_id} precondition failed: {mismatched}",
            collection=collection,
            doc_id=doc_id,
            actual=mismatched,
        )


_pending_callbacks: set[asyncio.Future] = set()


def dispatch_callback(callback: Callable[..., Any], *args: Any) -> None:
    """Invoke a subscriber callback, scheduling it when it is a coroutine."""
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            _pending_callbacks.add(task)
            task.add_done_callback(lambda done: _callback_done(done, callback))
    except Exception as e:
        logger.error("subscriber_callback_failed", error=str(e), callback=repr(callback))


def _callback_done(task: asyncio.Future, callback: Callable[..., Any]) -> None:
    _pending_callbacks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(
            "subscriber_callback_failed",
            error=str(error),
            error_type=type(error).__name__,
            callback=repr(callback),
        )


class Subscription(ABC):
    """Handle for a live subscription."""

    @property
    @abstractmethod
    def active(self) -> bool:
        """Whether changes are still delivered."""

    @abstractmethod
    async def close(self) -> None:
        """Stop delivering changes. Safe to call more than once."""


class DocumentStore(ABC):
    """Store contract consumed by the dispatch services."""

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self.clock = clock or utcnow

    def _resolve(self, value: Any) -> Any:
        """Replace SERVER_TIMESTAMP placeholders with the store clock."""
        if value is SERVER_TIMESTAMP:
            return self.clock().isoformat()
        if isinstance(value, dict):
            return {k: self._resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(v) for v in value]
        return value

    def _apply(self, current: Document, fields: Document) -> Document:
        updated = copy.deepcopy(current)
        for path, value in self._resolve(fields).items():
            set_path(updated, path, value)
        return updated

    @abstractmethod
    async def create(
        self,
        collection: str,
        fields: Document,
        doc_id: str | None = None,
    ) -> str:
        """Create a document and return its id."""

    @abstractmethod
    async def read(self, collection: str, doc_id: str) -> Document | None:
        """Read a document fresh from the store."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
    ) -> list[Document]:
        """Documents matching equality filters on dotted paths."""

    @abstractmethod
    async def transact(self, collection: str, doc_id: str, mutate: Mutation) -> Document:
        """
        Atomically read a document, compute fields to write, and write them.

        ``mutate`` receives the current document (or None) and returns the
        fields to merge, None to leave it unchanged, or raises to abort.
        """

    @abstractmethod
    async def subscribe(
        self,
        collection: str,
        filters: dict[str, Any] | None,
        on_change: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Deliver the matching snapshot now and after every write to the collection."""

    @abstractmethod
    async def watch(
        self,
        collection: str,
        doc_id: str,
        on_change: DocumentCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Deliver one document now and after every write to it."""

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Document,
        expect: dict[str, Any] | None = None,
    ) -> Document:
        """
        Write several fields in one write.

        Args:
            collection: Collection name
            doc_id: Document to update
            fields: Dotted paths and their new values
            expect: Dotted paths that must hold these values at write time

        Raises:
            DocumentNotFoundError: If the document does not exist
            PreconditionFailedError: If an expectation no longer holds
        """

        def mutate(current: Document | None) -> Document:
            if current is None:
                raise DocumentNotFoundError(
                    f"{collection}/{doc_id} not found",
                    collection=collection,
                    doc_id=doc_id,
                )
            check_expectations(collection, doc_id, current, expect)
            return fields

        return await self.transact(collection, doc_id, mutate)


# In-memory backend


@dataclass
class _Listener:
    collection: str
    filters: dict[str, Any] | None
    doc_id: str | None
    on_change: Callable[..., Any]
    on_error: ErrorCallback | None
    active: bool = True


class MemorySubscription(Subscription):
    def __init__(self, store: "MemoryDocumentStore", listener: _Listener):
        self._store = store
        self._listener = listener

    @property
    def active(self) -> bool:
        return self._listener.active

    async def close(self) -> None:
        self._store._remove_listener(self._listener)


class MemoryDocumentStore(DocumentStore):
    """
    Process-local store with per-document locks.

    Subscribers are notified synchronously after each write, which gives
    tests deterministic push delivery. ``latency`` inserts an await between
    read and write so concurrent callers interleave as they would over a
    network.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        latency: float = 0.0,
    ):
        super().__init__(clock)
        self.latency = latency
        self._collections: dict[str, dict[str, Document]] = defaultdict(dict)
        self._locks: dict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)
        self._listeners: dict[str, list[_Listener]] = defaultdict(list)

    async def _round_trip(self) -> None:
        await asyncio.sleep(self.latency)

    async def create(
        self,
        collection: str,
        fields: Document,
        doc_id: str | None = None,
    ) -> str:
        doc_id = doc_id or uuid4().hex
        await self._round_trip()

        async with self._locks[(collection, doc_id)]:
            document = self._apply({}, fields)
            document["id"] = doc_id
            self._collections[collection][doc_id] = document

        logger.debug("document_created", collection=collection, doc_id=doc_id)
        self._notify(collection, doc_id)
        return doc_id

    async def read(self, collection: str, doc_id: str) -> Document | None:
        await self._round_trip()
        return copy.deepcopy(self._collections[collection].get(doc_id))

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
    ) -> list[Document]:
        await self._round_trip()
        return self._snapshot(collection, filters)

    async def transact(self, collection: str, doc_id: str, mutate: Mutation) -> Document:
        async with self._locks[(collection, doc_id)]:
            current = copy.deepcopy(self._collections[collection].get(doc_id))
            await self._round_trip()

            fields = mutate(copy.deepcopy(current))
            if fields is None:
                return current
            if current is None:
                raise DocumentNotFoundError(
                    f"{collection}/{doc_id} not found",
                    collection=collection,
                    doc_id=doc_id,
                )

            updated = self._apply(current, fields)
            self._collections[collection][doc_id] = updated

        self._notify(collection, doc_id)
        return copy.deepcopy(updated)

    async def subscribe(
        self,
        collection: str,
        filters: dict[str, Any] | None,
        on_change: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        listener = _Listener(collection, filters, None, on_change, on_error)
        self._listeners[collection].append(listener)
        dispatch_callback(on_change, self._snapshot(collection, filters))
        return MemorySubscription(self, listener)

    async def watch(
        self,
        collection: str,
        doc_id: str,
        on_change: DocumentCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        listener = _Listener(collection, None, doc_id, on_change, on_error)
        self._listeners[collection].append(listener)
        dispatch_callback(on_change, copy.deepcopy(self._collections[collection].get(doc_id)))
        return MemorySubscription(self, listener)

    def fail_subscriptions(self, collection: str, error: Exception) -> None:
        """Terminate every subscription on a collection with an error."""
        for listener in list(self._listeners[collection]):
            self._remove_listener(listener)
            logger.error("subscription_failed", collection=collection, error=str(error))
            if listener.on_error:
                dispatch_callback(listener.on_error, error)

    def _snapshot(self, collection: str, filters: dict[str, Any] | None) -> list[Document]:
        return [
            copy.deepcopy(document)
            for document in self._collections[collection].values()
            if matches(document, filters)
        ]

    def _notify(self, collection: str, doc_id: str) -> None:
        for listener in list(self._listeners[collection]):
            if not listener.active:
                continue
            if listener.doc_id is not None:
                if listener.doc_id == doc_id:
                    document = self._collections[collection].get(doc_id)
                    dispatch_callback(listener.on_change, copy.deepcopy(document))
            else:
                dispatch_callback(listener.on_change, self._snapshot(collection, listener.filters))

    def _remove_listener(self, listener: _Listener) -> None:
        listener.active = False
        if listener in self._listeners[listener.collection]:
            self._listeners[listener.collection].remove(listener)


# Redis backend


class RedisSubscription(Subscription):
    def __init__(self, pubsub: Any, task: asyncio.Task):
        self._pubsub = pubsub
        self._task = task
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed and not self._task.done()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        except RedisError as e:
            logger.warning("subscription_close_failed", error=str(e))


class RedisDocumentStore(DocumentStore):
    """
    Documents as JSON strings, one index set per collection, and a pub/sub
    channel per collection announcing the id of every written document.
    Transactions use WATCH/MULTI and retry on concurrent modification.
    """

    def __init__(
        self,
        state: StateManager,
        max_retries: int = 5,
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__(clock)
        self.state = state
        self.max_retries = max_retries

    def _doc_key(self, collection: str, doc_id: str) -> str:
        return self.state.key(collection, doc_id)

    def _index_key(self, collection: str) -> str:
        return self.state.key(collection, "_index")

    def _channel(self, collection: str) -> str:
        return self.state.key(collection, "_changes")

    async def create(
        self,
        collection: str,
        fields: Document,
        doc_id: str | None = None,
    ) -> str:
        doc_id = doc_id or uuid4().hex
        document = self._apply({}, fields)
        document["id"] = doc_id

        try:
            client = await self.state.client()
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._doc_key(collection, doc_id), json.dumps(document))
                pipe.sadd(self._index_key(collection), doc_id)
                pipe.publish(self._channel(collection), doc_id)
                await pipe.execute()
        except RedisError as e:
            raise StoreError(f"create {collection} failed: {e}") from e

        logger.debug("document_created", collection=collection, doc_id=doc_id)
        return doc_id

    async def read(self, collection: str, doc_id: str) -> Document | None:
        try:
            return await self.state.get_json(self._doc_key(collection, doc_id))
        except RedisError as e:
            raise StoreError(f"read {collection}/{doc_id} failed: {e}") from e

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
    ) -> list[Document]:
        try:
            client = await self.state.client()
            doc_ids = sorted(await client.smembers(self._index_key(collection)))
            if not doc_ids:
                return []
            raw = await client.mget([self._doc_key(collection, doc_id) for doc_id in doc_ids])
        except RedisError as e:
            raise StoreError(f"query {collection} failed: {e}") from e

        documents = [json.loads(value) for value in raw if value is not None]
        return [document for document in documents if matches(document, filters)]

    async def transact(self, collection: str, doc_id: str, mutate: Mutation) -> Document:
        key = self._doc_key(collection, doc_id)

        try:
            client = await self.state.client()
            async with client.pipeline(transaction=True) as pipe:
                for attempt in range(self.max_retries):
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        current = json.loads(raw) if raw is not None else None

                        fields = mutate(copy.deepcopy(current))
                        if fields is None:
                            await pipe.reset()
                            return current
                        if current is None:
                            raise DocumentNotFoundError(
                                f"{collection}/{doc_id} not found",
                                collection=collection,
                                doc_id=doc_id,
                            )

                        updated = self._apply(current, fields)
                        pipe.multi()
                        pipe.set(key, json.dumps(updated))
                        pipe.publish(self._channel(collection), doc_id)
                        await pipe.execute()
                        return updated

                    except WatchError:
                        logger.debug(
                            "transaction_retry",
                            collection=collection,
                            doc_id=doc_id,
                            attempt=attempt + 1,
                        )
                        continue
        except RedisError as e:
            raise StoreError(f"transaction on {collection}/{doc_id} failed: {e}") from e

        raise StoreError(
            f"transaction on {collection}/{doc_id} contended after {self.max_retries} attempts"
        )

    async def subscribe(
        self,
        collection: str,
        filters: dict[str, Any] | None,
        on_change: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        async def deliver(_doc_id: str) -> None:
            dispatch_callback(on_change, await self.query(collection, filters))

        return await self._listen(collection, None, deliver, on_error)

    async def watch(
        self,
        collection: str,
        doc_id: str,
        on_change: DocumentCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        async def deliver(_doc_id: str) -> None:
            dispatch_callback(on_change, await self.read(collection, doc_id))

        return await self._listen(collection, doc_id, deliver, on_error)

    async def _listen(
        self,
        collection: str,
        doc_id: str | None,
        deliver: Callable[[str], Any],
        on_error: ErrorCallback | None,
    ) -> Subscription:
        try:
            client = await self.state.client()
            pubsub = client.pubsub()
            await pubsub.subscribe(self._channel(collection))
        except RedisError as e:
            raise StoreError(f"subscribe {collection} failed: {e}") from e

        await deliver(doc_id or "")

        async def listen() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    changed_id = message["data"]
                    if doc_id is not None and changed_id != doc_id:
                        continue
                    await deliver(changed_id)
            except (RedisError, StoreError) as e:
                logger.error("subscription_failed", collection=collection, error=str(e))
                if on_error:
                    dispatch_callback(on_error, e)

        task = asyncio.create_task(listen())
        return RedisSubscription(pubsub, task)
