"""Composition root: builds every collaborator from settings."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from courier_dispatch.config import Settings, get_settings
from courier_dispatch.services.availability import DriverAvailabilityController
from courier_dispatch.services.device import PushedPositionSource, ReportedPermissions
from courier_dispatch.services.earnings import DriverStatsService
from courier_dispatch.services.lifecycle import DeliveryLifecycle
from courier_dispatch.services.pricing import PricingRulesProvider
from courier_dispatch.services.request_manager import DeliveryRequestManager
from courier_dispatch.services.scheduling import ScheduledDeliveryActivator
from courier_dispatch.services.tracking import LocationTrackingSession
from courier_dispatch.state.documents import (
    DocumentStore,
    MemoryDocumentStore,
    RedisDocumentStore,
    utcnow,
)
from courier_dispatch.state.manager import StateManager
from courier_dispatch.state.presence import (
    MemoryPresenceChannel,
    PresenceChannel,
    RedisPresenceChannel,
)
from courier_dispatch.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DriverSession:
    """Everything one connected driver's device talks to."""

    controller: DriverAvailabilityController
    permissions: ReportedPermissions
    positions: PushedPositionSource
    prompts: dict = field(default_factory=dict)


class DispatchContainer:
    """Owns the backends, shared services and live driver sessions."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: DocumentStore | None = None,
        presence: PresenceChannel | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.state: StateManager | None = None

        if store is None or presence is None:
            if self.settings.storage_backend == "redis":
                self.state = StateManager(self.settings.redis_url)
                store = store or RedisDocumentStore(
                    self.state,
                    max_retries=self.settings.store_max_retries,
                    clock=self.clock,
                )
                presence = presence or RedisPresenceChannel(
                    self.state,
                    ttl_seconds=self.settings.presence_ttl_seconds,
                )
            else:
                store = store or MemoryDocumentStore(clock=self.clock)
                presence = presence or MemoryPresenceChannel()

        self.store = store
        self.presence = presence
        self.pricing = PricingRulesProvider(store, self.settings.default_minimum_charge)
        self.lifecycle = DeliveryLifecycle(
            store,
            presence,
            self.pricing,
            settings=self.settings,
            clock=self.clock,
        )
        self.scheduler = ScheduledDeliveryActivator(
            store,
            self.lifecycle,
            settings=self.settings,
            clock=self.clock,
        )
        self.stats = DriverStatsService(store, clock=self.clock)
        self.sessions: dict[str, DriverSession] = {}
        self._sweep_task: asyncio.Task | None = None

    async def start(self) -> None:
        if self.state is not None:
            await self.state.connect()
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_scheduled())
        logger.info("dispatch_container_started", backend=self.settings.storage_backend)

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        for driver_id in list(self.sessions):
            await self.close_session(driver_id)
        await self.scheduler.stop()

        if self.state is not None:
            await self.state.disconnect()
        logger.info("dispatch_container_stopped")

    def session(self, driver_id: str) -> DriverSession:
        """The driver's live session, created on first use."""
        if driver_id not in self.sessions:
            permissions = ReportedPermissions()
            positions = PushedPositionSource()
            tracker = LocationTrackingSession(
                self.presence,
                self.store,
                permissions,
                positions,
                settings=self.settings,
                clock=self.clock,
            )
            controller = DriverAvailabilityController(
                driver_id,
                self.store,
                self.lifecycle,
                DeliveryRequestManager(self.store, settings=self.settings, clock=self.clock),
                tracker,
                permissions,
                settings=self.settings,
            )
            self.sessions[driver_id] = DriverSession(controller, permissions, positions)
        return self.sessions[driver_id]

    async def close_session(self, driver_id: str) -> None:
        session = self.sessions.pop(driver_id, None)
        if session is None:
            return
        for prompt in session.prompts.values():
            prompt.close()
        await session.controller.close()

    async def _sweep_scheduled(self) -> None:
        interval = max(self.settings.scheduled_activation_lead_minutes * 60 / 3, 30)
        while True:
            try:
                await self.scheduler.sweep()
            except Exception as e:
                logger.error("scheduled_sweep_failed", error=str(e))
            await asyncio.sleep(interval)
