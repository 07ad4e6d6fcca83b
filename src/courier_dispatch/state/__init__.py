"""State management modules."""

from courier_dispatch.state.documents import (
    COURIER_PRICING,
    DRIVERS,
    REQUESTS,
    SERVER_TIMESTAMP,
    DocumentStore,
    MemoryDocumentStore,
    RedisDocumentStore,
    Subscription,
)
from courier_dispatch.state.manager import StateManager
from courier_dispatch.state.presence import (
    MemoryPresenceChannel,
    PresenceChannel,
    RedisPresenceChannel,
    driver_location_path,
)
from courier_dispatch.state.workflow import LifecycleStage, LifecycleTransitions, lifecycle_stage

__all__ = [
    "StateManager",
    "DocumentStore",
    "MemoryDocumentStore",
    "RedisDocumentStore",
    "Subscription",
    "PresenceChannel",
    "MemoryPresenceChannel",
    "RedisPresenceChannel",
    "driver_location_path",
    "LifecycleStage",
    "LifecycleTransitions",
    "lifecycle_stage",
    "REQUESTS",
    "DRIVERS",
    "COURIER_PRICING",
    "SERVER_TIMESTAMP",
]
