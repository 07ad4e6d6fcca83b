"""Driver availability: online state, ride ownership and self-healing."""

import asyncio
from typing import TYPE_CHECKING, Any

from courier_dispatch.config import Settings, get_settings
from courier_dispatch.exceptions import (
    DispatchError,
    DriverBusyError,
    DriverNotApprovedError,
    DriverNotFoundError,
    PermissionDeniedError,
    PresenceError,
    StoreError,
)
from courier_dispatch.models.driver import Driver, DriverStatus
from courier_dispatch.models.location import TrackingStatus
from courier_dispatch.models.request import (
    CancellationReason,
    CancelledBy,
    CancelledRequest,
    CollectingRequest,
    CompletedRequest,
    DeliveryRequest,
    InTransitRequest,
    ProofOfDelivery,
)
from courier_dispatch.services.device import PermissionProvider
from courier_dispatch.services.request_manager import DeliveryRequestManager, NewRequestCallback
from courier_dispatch.services.tracking import LocationTrackingSession
from courier_dispatch.state.documents import (
    DRIVERS,
    REQUESTS,
    SERVER_TIMESTAMP,
    Document,
    DocumentStore,
    Subscription,
)
from courier_dispatch.utils.logging import get_logger

if TYPE_CHECKING:
    from courier_dispatch.models.request import AcceptedRequest
    from courier_dispatch.services.lifecycle import DeliveryLifecycle

logger = get_logger(__name__)

TRACKING_RESTART_WARNING = "tracking_restart_failed"


async def load_driver(store: DocumentStore, driver_id: str) -> Driver:
    """
    Read a driver fresh from the store.

    Raises:
        DriverNotFoundError: If there is no such driver
    """
    document = await store.read(DRIVERS, driver_id)
    if document is None:
        raise DriverNotFoundError(f"Driver {driver_id} not found", driver_id=driver_id)
    return Driver.model_validate(document)


def _driver_or_raise(driver_id: str, current: Document | None) -> Driver:
    if current is None:
        raise DriverNotFoundError(f"Driver {driver_id} not found", driver_id=driver_id)
    return Driver.model_validate(current)


async def claim_driver(store: DocumentStore, driver_id: str, ride_id: str) -> Driver:
    """
    Point a driver at a ride, failing if they already hold another one.

    Raises:
        DriverNotFoundError: If there is no such driver
        DriverBusyError: If the driver holds a different ride
    """

    def mutate(current: Document | None) -> Document | None:
        driver = _driver_or_raise(driver_id, current)
        if driver.current_ride_id == ride_id:
            return None
        if driver.current_ride_id is not None:
            raise DriverBusyError(
                f"Driver {driver_id} already holds ride {driver.current_ride_id}",
                driver_id=driver_id,
                ride_id=driver.current_ride_id,
            )
        return {**driver.availability.busy(ride_id).as_fields(), "updatedAt": SERVER_TIMESTAMP}

    document = await store.transact(DRIVERS, driver_id, mutate)
    logger.info("driver_claimed", driver_id=driver_id, ride_id=ride_id)
    return Driver.model_validate(document)


async def release_driver(store: DocumentStore, driver_id: str, ride_id: str) -> Driver | None:
    """
    Clear a driver's ride if it is still the given one.

    A driver who has moved on to another ride, or no longer exists, is left
    untouched and None is returned.
    """

    released = False

    def mutate(current: Document | None) -> Document | None:
        nonlocal released
        released = False
        if current is None:
            return None
        driver = Driver.model_validate(current)
        if driver.current_ride_id != ride_id:
            return None
        released = True
        return {**driver.availability.free().as_fields(), "updatedAt": SERVER_TIMESTAMP}

    document = await store.transact(DRIVERS, driver_id, mutate)
    if not released:
        logger.warning("driver_release_skipped", driver_id=driver_id, ride_id=ride_id)
        return None

    logger.info("driver_released", driver_id=driver_id, ride_id=ride_id)
    return Driver.model_validate(document)


async def set_driver_online(store: DocumentStore, driver_id: str, online: bool) -> Driver:
    """Flip the online flag, keeping whatever ride the driver holds."""

    def mutate(current: Document | None) -> Document:
        availability = _driver_or_raise(driver_id, current).availability
        availability = availability.online() if online else availability.offline()
        return {**availability.as_fields(), "updatedAt": SERVER_TIMESTAMP}

    document = await store.transact(DRIVERS, driver_id, mutate)
    return Driver.model_validate(document)


async def count_available_drivers(store: DocumentStore, courier_id: str, vehicle_type: str) -> int:
    """Approved drivers currently online and free in a courier's vehicle pool."""
    drivers = await store.query(
        DRIVERS,
        {
            "courierId": courier_id,
            "vehicleType": vehicle_type,
            "status": DriverStatus.APPROVED.value,
            "isOnline": True,
            "isAvailable": True,
        },
    )
    return len(drivers)


class DriverAvailabilityController:
    """
    One driver's session: online state, offered requests and the active ride.

    Only this controller and the lifecycle write the driver's availability
    fields, and always as one write.
    """

    def __init__(
        self,
        driver_id: str,
        store: DocumentStore,
        lifecycle: "DeliveryLifecycle",
        request_manager: DeliveryRequestManager,
        tracker: LocationTrackingSession,
        permissions: PermissionProvider,
        settings: Settings | None = None,
    ):
        self.driver_id = driver_id
        self.store = store
        self.lifecycle = lifecycle
        self.request_manager = request_manager
        self.tracker = tracker
        self.permissions = permissions
        self.settings = settings or get_settings()

        self.driver: Driver | None = None
        self.warnings: list[str] = []
        self._ride_watch: Subscription | None = None
        self._watched_ride_id: str | None = None
        self._health_task: asyncio.Task | None = None

    async def load(self) -> Driver:
        self.driver = await load_driver(self.store, self.driver_id)
        return self.driver

    async def go_online(self, on_new_request: NewRequestCallback) -> list[str]:
        """
        Mark the driver online and start listening for requests.

        Returns warnings for the driver. If the driver already holds a ride,
        tracking is restarted for it; a failure there is only a warning.

        Raises:
            DriverNotApprovedError: If the account is not approved
            PermissionDeniedError: If foreground location is refused
        """
        driver = await self.load()
        if not driver.is_approved:
            raise DriverNotApprovedError(
                f"Driver {self.driver_id} status is {driver.status.value}",
                driver_id=self.driver_id,
            )

        if not await self.permissions.request_foreground():
            await set_driver_online(self.store, self.driver_id, online=False)
            logger.warning("go_online_permission_denied", driver_id=self.driver_id)
            raise PermissionDeniedError("location")

        await set_driver_online(self.store, self.driver_id, online=True)
        driver = await self.reconcile()

        await self.request_manager.start(driver, on_new_request)
        self.start_health_check()

        warnings: list[str] = []
        if driver.current_ride_id:
            warnings.extend(await self._resume_ride(driver.current_ride_id))

        self.warnings.extend(warnings)
        logger.info(
            "driver_online",
            driver_id=self.driver_id,
            current_ride_id=driver.current_ride_id,
            warnings=warnings,
        )
        return warnings

    async def go_offline(self) -> Driver:
        """Stop listening and tracking. A held ride stays assigned."""
        await self.stop_health_check()
        await self.request_manager.stop()
        await self.tracker.stop()
        await self._unwatch_ride()

        self.driver = await set_driver_online(self.store, self.driver_id, online=False)
        logger.info(
            "driver_offline",
            driver_id=self.driver_id,
            current_ride_id=self.driver.current_ride_id,
        )
        return self.driver

    async def accept(self, request_id: str) -> "AcceptedRequest":
        """
        Accept an offered request and start tracking for it.

        Raises:
            RequestUnavailableError: If another driver got it first
            DriverBusyError: If this driver already holds a ride
        """
        self.request_manager.mark_accepted(request_id)
        accepted = await self.lifecycle.accept(request_id, self.driver_id)

        driver = await self.load()
        self._sync_manager(driver)
        self.warnings.extend(await self._resume_ride(accepted.id))
        return accepted

    async def decline(self, request_id: str) -> DeliveryRequest:
        self.request_manager.mark_declined(request_id)
        driver_name = self.driver.full_name if self.driver else None
        return await self.lifecycle.decline(request_id, self.driver_id, driver_name=driver_name)

    async def start_collection(self, request_id: str) -> CollectingRequest:
        return await self.lifecycle.start_collection(request_id, self.driver_id)

    async def verify_pin(self, request_id: str, pin: str) -> InTransitRequest:
        return await self.lifecycle.verify_pin(request_id, self.driver_id, pin)

    async def complete(self, request_id: str, proof: ProofOfDelivery | str | None) -> CompletedRequest:
        completed = await self.lifecycle.complete(request_id, self.driver_id, proof)
        await self.finish_ride()
        return completed

    async def cancel(self, request_id: str, reason: CancellationReason | str) -> CancelledRequest:
        cancelled = await self.lifecycle.cancel(
            request_id,
            reason,
            cancelled_by=CancelledBy.DRIVER,
            actor_id=self.driver_id,
        )
        await self.finish_ride()
        return cancelled

    async def finish_ride(self) -> None:
        """Local teardown once the held ride has ended. Safe to repeat."""
        await self.tracker.stop()
        await self._unwatch_ride()
        driver = await self.load()
        self._sync_manager(driver)

    async def reconcile(self) -> Driver:
        """
        Clear a ride reference whose request is gone, ended, or reassigned.

        Returns the driver as stored afterwards.
        """
        driver = await self.load()
        ride_id = driver.current_ride_id
        if not ride_id:
            return driver

        document = await self.store.read(REQUESTS, ride_id)
        reason = self._stale_reason(document)
        if reason is None:
            return driver

        logger.warning(
            "stale_ride_cleared",
            driver_id=self.driver_id,
            ride_id=ride_id,
            reason=reason,
        )
        await release_driver(self.store, self.driver_id, ride_id)
        if self.tracker.ride_id == ride_id:
            await self.tracker.stop()

        driver = await self.load()
        self._sync_manager(driver)
        return driver

    def start_health_check(self) -> None:
        """Run ``reconcile`` periodically until stopped."""
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop())

    async def stop_health_check(self) -> None:
        task, self._health_task = self._health_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        """
        Release every local resource held by this session.

        A driver who was loaded is marked offline so they stop counting as
        available. A held ride stays assigned.
        """
        await self.stop_health_check()
        await self.request_manager.stop()
        await self.tracker.stop()
        await self._unwatch_ride()
        if self.driver is None:
            return
        try:
            self.driver = await set_driver_online(self.store, self.driver_id, online=False)
        except DispatchError as e:
            logger.warning("session_close_offline_failed", driver_id=self.driver_id, error=str(e))
            return
        logger.info("driver_session_closed", driver_id=self.driver_id, current_ride_id=self.driver.current_ride_id)

    def status(self) -> dict[str, Any]:
        tracking: TrackingStatus = self.tracker.status()
        return {
            "driver_id": self.driver_id,
            "is_online": self.driver.is_online if self.driver else False,
            "is_available": self.driver.is_available if self.driver else False,
            "current_ride_id": self.driver.current_ride_id if self.driver else None,
            "requests": self.request_manager.status(),
            "tracking": tracking.model_dump(mode="json"),
            "warnings": list(self.warnings),
        }

    def _stale_reason(self, document: Document | None) -> str | None:
        if document is None:
            return "missing"
        request = DeliveryRequest.model_validate(document)
        if request.is_terminal:
            return request.status.value
        if request.driver_id != self.driver_id:
            return "reassigned"
        return None

    def _sync_manager(self, driver: Driver) -> None:
        self.request_manager.update_driver(
            is_online=driver.is_online,
            is_available=driver.is_available,
            current_ride_id=driver.current_ride_id,
        )

    async def _resume_ride(self, ride_id: str) -> list[str]:
        warnings: list[str] = []
        try:
            warnings.extend(await self.tracker.start(ride_id, self.driver_id))
        except (PermissionDeniedError, PresenceError, StoreError) as e:
            logger.warning(
                "tracking_restart_failed",
                driver_id=self.driver_id,
                ride_id=ride_id,
                error=str(e),
            )
            warnings.append(TRACKING_RESTART_WARNING)

        await self._watch_ride(ride_id)
        return warnings

    async def _watch_ride(self, ride_id: str) -> None:
        if self._watched_ride_id == ride_id and self._ride_watch and self._ride_watch.active:
            return
        await self._unwatch_ride()
        self._watched_ride_id = ride_id
        try:
            self._ride_watch = await self.store.watch(REQUESTS, ride_id, self._on_ride_change)
        except StoreError as e:
            logger.error("ride_watch_failed", driver_id=self.driver_id, ride_id=ride_id, error=str(e))
            self._watched_ride_id = None

    async def _unwatch_ride(self) -> None:
        watch, self._ride_watch = self._ride_watch, None
        self._watched_ride_id = None
        if watch is not None:
            await watch.close()

    async def _on_ride_change(self, document: Document | None) -> None:
        if self._stale_reason(document) is None:
            return
        logger.info("held_ride_ended", driver_id=self.driver_id, ride_id=self._watched_ride_id)
        await self.finish_ride()

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_check_interval_seconds)
            try:
                await self.reconcile()
            except DispatchError as e:
                logger.error("health_check_failed", driver_id=self.driver_id, error=str(e))
