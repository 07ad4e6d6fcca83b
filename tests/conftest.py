"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import pytest
import pytest_asyncio

from courier_dispatch.config import Settings
from courier_dispatch.models.request import PackageDetails, RideDetails
from courier_dispatch.services.lifecycle import DeliveryLifecycle
from courier_dispatch.services.pricing import PricingRulesProvider
from courier_dispatch.state.documents import DRIVERS, REQUESTS, MemoryDocumentStore
from courier_dispatch.state.presence import MemoryPresenceChannel

START = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
PIN = "4821"


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def settings() -> Settings:
    """Settings for tests, ignoring any local .env file."""
    return Settings(
        _env_file=None,
        storage_backend="memory",
        log_format="text",
        log_level="DEBUG",
    )


@pytest.fixture
def store(clock: FixedClock) -> MemoryDocumentStore:
    return MemoryDocumentStore(clock=clock)


@pytest.fixture
def presence() -> MemoryPresenceChannel:
    return MemoryPresenceChannel()


@pytest.fixture
def pricing(store: MemoryDocumentStore) -> PricingRulesProvider:
    return PricingRulesProvider(store)


@pytest.fixture
def lifecycle(
    store: MemoryDocumentStore,
    presence: MemoryPresenceChannel,
    pricing: PricingRulesProvider,
    settings: Settings,
    clock: FixedClock,
) -> DeliveryLifecycle:
    return DeliveryLifecycle(
        store,
        presence,
        pricing,
        settings=settings,
        clock=clock,
        pin_generator=lambda: PIN,
    )


@pytest.fixture
def settle() -> Callable[[], Awaitable[None]]:
    """Let scheduled subscriber callbacks run."""

    async def _settle(rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle


# Sample data fixtures


@pytest.fixture
def make_driver(store: MemoryDocumentStore) -> Callable[..., Awaitable[str]]:
    """Create a driver document."""

    async def _make_driver(
        driver_id: str = "driver-1",
        courier_id: str = "courier-1",
        vehicle_type: str = "Bike",
        status: str = "approved",
        is_online: bool = True,
        current_ride_id: str | None = None,
        **extra: Any,
    ) -> str:
        fields = {
            "fullName": f"Driver {driver_id}",
            "phoneNumber": "+94770000000",
            "vehicleNumber": "WP-1234",
            "courierId": courier_id,
            "vehicleType": vehicle_type,
            "status": status,
            "isOnline": is_online,
            "isAvailable": is_online and current_ride_id is None,
            "currentRideId": current_ride_id,
            **extra,
        }
        return await store.create(DRIVERS, fields, doc_id=driver_id)

    return _make_driver


@pytest.fixture
def make_request(store: MemoryDocumentStore) -> Callable[..., Awaitable[str]]:
    """Create a searching request document directly in the store."""

    async def _make_request(
        request_id: str = "ride-1",
        courier_id: str = "courier-1",
        vehicle_type: str = "Bike",
        price: int | None = 1000,
        status: str = "searching",
        created_at: str | None = START.isoformat(),
        **extra: Any,
    ) -> str:
        fields = {
            "customerId": "customer-1",
            "status": status,
            "selectedCourier": courier_id,
            "packageDetails": {"pickupLocation": "Colombo 03", "dropoffLocation": "Kandy"},
            "rideDetails": {"vehicleType": vehicle_type, "price": price, "paymentMethod": "cash"},
            "declinedDrivers": [],
            **extra,
        }
        if created_at is not None:
            fields["createdAt"] = created_at
        return await store.create(REQUESTS, fields, doc_id=request_id)

    return _make_request


@pytest.fixture
def package_details() -> PackageDetails:
    return PackageDetails(pickup_location="Colombo 03", dropoff_location="Kandy", package_name="Documents")


@pytest.fixture
def ride_details() -> RideDetails:
    return RideDetails(vehicle_type="Bike", distance_km=12.5, payment_method="cash")


@pytest_asyncio.fixture
async def accepted_ride(
    lifecycle: DeliveryLifecycle,
    make_driver: Callable[..., Awaitable[str]],
    make_request: Callable[..., Awaitable[str]],
) -> str:
    """A request accepted by driver-1."""
    await make_driver("driver-1")
    request_id = await make_request("ride-1")
    await lifecycle.accept(request_id, "driver-1")
    return request_id
