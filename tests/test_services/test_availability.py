"""Tests for driver availability and the driver session controller."""

import asyncio
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio

from courier_dispatch.config import Settings
from courier_dispatch.exceptions import (
    DriverBusyError,
    DriverNotApprovedError,
    PermissionDeniedError,
    RequestUnavailableError,
)
from courier_dispatch.models.location import LocationFix
from courier_dispatch.services.availability import (
    DriverAvailabilityController,
    claim_driver,
    count_available_drivers,
    release_driver,
)
from courier_dispatch.services.device import PushedPositionSource, ReportedPermissions
from courier_dispatch.services.lifecycle import DeliveryLifecycle
from courier_dispatch.services.request_manager import DeliveryRequestManager
from courier_dispatch.services.tracking import BACKGROUND_DENIED_WARNING, LocationTrackingSession
from courier_dispatch.state.documents import DRIVERS, REQUESTS, MemoryDocumentStore
from courier_dispatch.state.presence import MemoryPresenceChannel, driver_location_path

MakeDoc = Callable[..., Awaitable[str]]
PHOTO = "https://storage.example.com/proofs/ride-1.jpg"


@pytest.fixture
def permissions() -> ReportedPermissions:
    return ReportedPermissions(foreground=True, background=True)


@pytest.fixture
def positions() -> PushedPositionSource:
    return PushedPositionSource()


@pytest_asyncio.fixture
async def build_controller(
    store: MemoryDocumentStore,
    presence: MemoryPresenceChannel,
    lifecycle: DeliveryLifecycle,
    permissions: ReportedPermissions,
    positions: PushedPositionSource,
    settings: Settings,
    clock: Callable,
) -> AsyncGenerator[Callable[..., DriverAvailabilityController], None]:
    """Build a controller the way a fresh app process would."""
    built: list[DriverAvailabilityController] = []

    def _build(driver_id: str = "driver-1", settings: Settings = settings) -> DriverAvailabilityController:
        tracker = LocationTrackingSession(
            presence, store, permissions, positions, settings=settings, clock=clock
        )
        controller = DriverAvailabilityController(
            driver_id,
            store,
            lifecycle,
            DeliveryRequestManager(store, settings=settings, clock=clock),
            tracker,
            permissions,
            settings=settings,
        )
        built.append(controller)
        return controller

    yield _build

    for controller in built:
        await controller.stop_health_check()


@pytest.fixture
def offered() -> list[str]:
    return []


# Store-level helpers


@pytest.mark.asyncio
async def test_claim_and_release(store: MemoryDocumentStore, make_driver: MakeDoc) -> None:
    await make_driver("driver-1")

    claimed = await claim_driver(store, "driver-1", "ride-1")
    assert claimed.current_ride_id == "ride-1"
    assert claimed.is_available is False

    with pytest.raises(DriverBusyError):
        await claim_driver(store, "driver-1", "ride-2")

    assert await release_driver(store, "driver-1", "ride-2") is None
    released = await release_driver(store, "driver-1", "ride-1")
    assert released.current_ride_id is None
    assert released.is_available is True


@pytest.mark.asyncio
async def test_release_offline_driver_stays_unavailable(
    store: MemoryDocumentStore,
    make_driver: MakeDoc,
) -> None:
    await make_driver("driver-1", is_online=False, current_ride_id="ride-1")

    released = await release_driver(store, "driver-1", "ride-1")

    assert released.current_ride_id is None
    assert released.is_available is False


@pytest.mark.asyncio
async def test_count_available_drivers(store: MemoryDocumentStore, make_driver: MakeDoc) -> None:
    await make_driver("driver-1")
    await make_driver("driver-2")
    await make_driver("driver-3", is_online=False)
    await make_driver("driver-4", current_ride_id="ride-0")
    await make_driver("driver-5", status="pending")
    await make_driver("driver-6", vehicle_type="Car")

    assert await count_available_drivers(store, "courier-1", "Bike") == 2
    assert await count_available_drivers(store, "courier-1", "Car") == 1
    assert await count_available_drivers(store, "courier-2", "Bike") == 0


# Going online and offline


@pytest.mark.asyncio
async def test_go_online_requires_approval(build_controller: Callable, make_driver: MakeDoc) -> None:
    await make_driver("driver-1", status="pending", is_online=False)

    with pytest.raises(DriverNotApprovedError):
        await build_controller().go_online(lambda request: None)


@pytest.mark.asyncio
async def test_go_online_without_location_permission(
    build_controller: Callable,
    store: MemoryDocumentStore,
    permissions: ReportedPermissions,
    make_driver: MakeDoc,
) -> None:
    await make_driver("driver-1", is_online=False)
    permissions.update(foreground=False)
    controller = build_controller()

    with pytest.raises(PermissionDeniedError):
        await controller.go_online(lambda request: None)

    driver = await store.read(DRIVERS, "driver-1")
    assert driver["isOnline"] is False
    assert driver["isAvailable"] is False
    assert controller.request_manager.is_listening is False


@pytest.mark.asyncio
async def test_go_online_offers_requests(
    build_controller: Callable,
    store: MemoryDocumentStore,
    make_driver: MakeDoc,
    make_request: MakeDoc,
    offered: list[str],
) -> None:
    await make_driver("driver-1", is_online=False)
    await make_request("ride-1")
    controller = build_controller()

    warnings = await controller.go_online(lambda request: offered.append(request.id))

    assert warnings == []
    assert offered == ["ride-1"]
    driver = await store.read(DRIVERS, "driver-1")
    assert driver["isOnline"] is True
    assert driver["isAvailable"] is True


@pytest.mark.asyncio
async def test_restart_while_holding_ride_resumes_tracking(
    build_controller: Callable,
    lifecycle: DeliveryLifecycle,
    permissions: ReportedPermissions,
    make_driver: MakeDoc,
    make_request: MakeDoc,
    offered: list[str],
) -> None:
    """Test that going online with a held ride restarts tracking instead of offering requests."""
    await make_driver("driver-1")
    await make_request("ride-1")
    await lifecycle.accept("ride-1", "driver-1")
    await make_request("ride-2")
    permissions.update(background=False)

    controller = build_controller()
    warnings = await controller.go_online(lambda request: offered.append(request.id))

    assert controller.tracker.is_tracking is True
    assert controller.tracker.ride_id == "ride-1"
    assert warnings == [BACKGROUND_DENIED_WARNING]
    assert offered == []


@pytest.mark.asyncio
async def test_go_offline_keeps_ride(
    build_controller: Callable,
    store: MemoryDocumentStore,
    make_driver: MakeDoc,
    make_request: MakeDoc,
) -> None:
    """Test that going offline mid-delivery keeps the ride assigned."""
    await make_driver("driver-1")
    await make_request("ride-1")
    controller = build_controller()
    await controller.go_online(lambda request: None)
    await controller.accept("ride-1")

    await controller.go_offline()

    driver = await store.read(DRIVERS, "driver-1")
    assert driver["isOnline"] is False
    assert driver["isAvailable"] is False
    assert driver["currentRideId"] == "ride-1"
    assert controller.tracker.is_tracking is False
    assert controller.request_manager.is_listening is False

    request = await store.read(REQUESTS, "ride-1")
    assert request["status"] == "accepted"


@pytest.mark.asyncio
async def test_go_online_clears_missing_ride(
    build_controller: Callable,
    store: MemoryDocumentStore,
    make_driver: MakeDoc,
    make_request: MakeDoc,
    offered: list[str],
) -> None:
    """Test that a ride reference to a deleted request is cleared."""
    await make_driver("driver-1", is_online=False, current_ride_id="ride-gone")
    await make_request("ride-1")

    await build_controller().go_online(lambda request: offered.append(request.id))

    driver = await store.read(DRIVERS, "driver-1")
    assert driver["currentRideId"] is None
    assert driver["isAvailable"] is True
    assert offered == ["ride-1"]


@pytest.mark.asyncio
async def test_reconcile_clears_terminal_ride(
    build_controller: Callable,
    store: MemoryDocumentStore,
    make_driver: MakeDoc,
    make_request: MakeDoc,
) -> None:
    await make_driver("driver-1", current_ride_id="ride-1")
    await make_request("ride-1", status="cancelled", driverId="driver-1")

    driver = await build_controller().reconcile()

    assert driver.current_ride_id is None
    assert driver.is_available is True


@pytest.mark.asyncio
async def test_reconcile_keeps_active_ride(
    build_controller: Callable,
    lifecycle: DeliveryLifecycle,
    make_driver: MakeDoc,
    make_request: MakeDoc,
) -> None:
    await make_driver("driver-1")
    await make_request("ride-1")
    await lifecycle.accept("ride-1", "driver-1")

    driver = await build_controller().reconcile()

    assert driver.current_ride_id == "ride-1"


@pytest.mark.asyncio
async def test_health_check_reconciles(
    build_controller: Callable,
    store: MemoryDocumentStore,
    make_driver: MakeDoc,
) -> None:
    settings = Settings(_env_file=None, storage_backend="memory", health_check_interval_seconds=0.01)
    await make_driver("driver-1", current_ride_id="ride-gone")
    controller = build_controller(settings=settings)

    controller.start_health_check()
    await asyncio.sleep(0.1)
    await controller.stop_health_check()

    driver = await store.read(DRIVERS, "driver-1")
    assert driver["currentRideId"] is None


@pytest.mark.asyncio
async def test_going_online_runs_the_health_check(
    build_controller: Callable,
    store: MemoryDocumentStore,
    make_driver: MakeDoc,
) -> None:
    """Test that a ride reference going stale while online is cleared without another toggle."""
    settings = Settings(_env_file=None, storage_backend="memory", health_check_interval_seconds=0.01)
    await make_driver("driver-1", is_online=False)
    controller = build_controller(settings=settings)

    await controller.go_online(lambda request: None)
    await store.update(DRIVERS, "driver-1", {"currentRideId": "ride-gone", "isAvailable": False})
    await asyncio.sleep(0.1)

    driver = await store.read(DRIVERS, "driver-1")
    assert driver["currentRideId"] is None
    assert driver["isAvailable"] is True

    await controller.go_offline()
    assert controller._health_task is None

# Ride handling


@pytest.mark.asyncio
async def test_accept_starts_tracking_and_stops_offers(
    build_controller: Callable,
    presence: MemoryPresenceChannel,
    positions: PushedPositionSource,
    make_driver: MakeDoc,
    make_request: MakeDoc,
    offered: list[str],
) -> None:
    await make_driver("driver-1")
    controller = build_controller()
    await controller.go_online(lambda request: offered.append(request.id))
    await make_request("ride-1")

    await controller.accept("ride-1")
    await positions.push(LocationFix(latitude=6.9, longitude=79.8))
    await make_request("ride-2")

    assert offered == ["ride-1"]
    assert await presence.read(driver_location_path("ride-1", "driver-1")) is not None
    assert controller.status()["current_ride_id"] == "ride-1"


@pytest.mark.asyncio
async def test_accept_lost_race(
    build_controller: Callable,
    lifecycle: DeliveryLifecycle,
    store: MemoryDocumentStore,
    make_driver: MakeDoc,
    make_request: MakeDoc,
) -> None:
    await make_driver("driver-1")
    await make_driver("driver-2")
    await make_request("ride-1")
    await lifecycle.accept("ride-1", "driver-2")
    controller = build_controller("driver-1")
    await controller.go_online(lambda request: None)

    with pytest.raises(RequestUnavailableError):
        await controller.accept("ride-1")

    assert "ride-1" in controller.request_manager.notified
    assert controller.tracker.is_tracking is False
    driver = await store.read(DRIVERS, "driver-1")
    assert driver["currentRideId"] is None


@pytest.mark.asyncio
async def test_complete_makes_driver_available_again(
    build_controller: Callable,
    store: MemoryDocumentStore,
    make_driver: MakeDoc,
    make_request: MakeDoc,
    offered: list[str],
) -> None:
    await make_driver("driver-1")
    await make_request("ride-1")
    controller = build_controller()
    await controller.go_online(lambda request: offered.append(request.id))

    await controller.accept("ride-1")
    await controller.verify_pin("ride-1", "4821")
    await controller.complete("ride-1", PHOTO)
    await make_request("ride-2")

    assert controller.tracker.is_tracking is False
    assert offered == ["ride-1", "ride-2"]
    driver = await store.read(DRIVERS, "driver-1")
    assert driver["isAvailable"] is True


@pytest.mark.asyncio
async def test_driver_cancel(
    build_controller: Callable,
    store: MemoryDocumentStore,
    make_driver: MakeDoc,
    make_request: MakeDoc,
) -> None:
    await make_driver("driver-1")
    await make_request("ride-1")
    controller = build_controller()
    await controller.go_online(lambda request: None)
    await controller.accept("ride-1")

    cancelled = await controller.cancel("ride-1", "Vehicle breakdown")

    assert cancelled.cancelled_by.value == "driver"
    assert controller.tracker.is_tracking is False
    driver = await store.read(DRIVERS, "driver-1")
    assert driver["currentRideId"] is None


@pytest.mark.asyncio
async def test_customer_cancel_stops_driver_tracking(
    build_controller: Callable,
    lifecycle: DeliveryLifecycle,
    presence: MemoryPresenceChannel,
    make_driver: MakeDoc,
    make_request: MakeDoc,
    settle: Callable,
) -> None:
    """Test that the driver's session tears down when the customer cancels."""
    await make_driver("driver-1")
    await make_request("ride-1")
    controller = build_controller()
    await controller.go_online(lambda request: None)
    await controller.accept("ride-1")
    assert controller.tracker.is_tracking is True

    await lifecycle.cancel("ride-1", "Other issue", cancelled_by="customer", actor_id="customer-1")
    await settle()

    assert controller.tracker.is_tracking is False
    assert await presence.read(driver_location_path("ride-1", "driver-1")) is None
    assert controller.request_manager.driver.current_ride_id is None


@pytest.mark.asyncio
async def test_decline(
    build_controller: Callable,
    store: MemoryDocumentStore,
    make_driver: MakeDoc,
    make_request: MakeDoc,
) -> None:
    await make_driver("driver-1")
    await make_request("ride-1")
    controller = build_controller()
    await controller.go_online(lambda request: None)

    await controller.decline("ride-1")

    request = await store.read(REQUESTS, "ride-1")
    assert request["declinedDrivers"][0]["driverId"] == "driver-1"
    assert request["status"] == "searching"
