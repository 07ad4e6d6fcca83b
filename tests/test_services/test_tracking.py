"""Tests for the location tracking session."""

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

import pytest

from courier_dispatch.config import Settings
from courier_dispatch.exceptions import PermissionDeniedError
from courier_dispatch.models.location import LocationFix
from courier_dispatch.services.device import PushedPositionSource, ReportedPermissions
from courier_dispatch.services.tracking import BACKGROUND_DENIED_WARNING, LocationTrackingSession
from courier_dispatch.state.documents import REQUESTS, MemoryDocumentStore
from courier_dispatch.state.presence import MemoryPresenceChannel, driver_location_path

T0 = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
PATH = driver_location_path("ride-1", "driver-1")


def fix(seconds: float = 0, lat: float = 6.9271, lng: float = 79.8612) -> LocationFix:
    return LocationFix(latitude=lat, longitude=lng, timestamp=T0 + timedelta(seconds=seconds))


@pytest.fixture
def permissions() -> ReportedPermissions:
    return ReportedPermissions(foreground=True, background=True)


@pytest.fixture
def positions() -> PushedPositionSource:
    return PushedPositionSource()


@pytest.fixture
def tracker(
    presence: MemoryPresenceChannel,
    store: MemoryDocumentStore,
    permissions: ReportedPermissions,
    positions: PushedPositionSource,
    settings: Settings,
    clock: Callable,
) -> LocationTrackingSession:
    return LocationTrackingSession(presence, store, permissions, positions, settings=settings, clock=clock)


@pytest.mark.asyncio
async def test_start_publishes_current_position(
    tracker: LocationTrackingSession,
    positions: PushedPositionSource,
    presence: MemoryPresenceChannel,
) -> None:
    await positions.push(fix())

    warnings = await tracker.start("ride-1", "driver-1")

    assert warnings == []
    assert tracker.status().is_tracking is True
    assert (await presence.read(PATH))["latitude"] == pytest.approx(6.9271)


@pytest.mark.asyncio
async def test_foreground_permission_required(
    tracker: LocationTrackingSession,
    permissions: ReportedPermissions,
) -> None:
    permissions.update(foreground=False)

    with pytest.raises(PermissionDeniedError):
        await tracker.start("ride-1", "driver-1")

    assert tracker.is_tracking is False


@pytest.mark.asyncio
async def test_background_permission_only_warns(
    tracker: LocationTrackingSession,
    permissions: ReportedPermissions,
) -> None:
    permissions.update(background=False)

    warnings = await tracker.start("ride-1", "driver-1")

    assert warnings == [BACKGROUND_DENIED_WARNING]
    assert tracker.is_tracking is True


@pytest.mark.asyncio
async def test_publish_throttle(
    tracker: LocationTrackingSession,
    positions: PushedPositionSource,
    presence: MemoryPresenceChannel,
) -> None:
    """Test that fixes are published after 5 seconds or 10 meters, not sooner."""
    await tracker.start("ride-1", "driver-1")
    await positions.push(fix(0))

    # 2 s later and about 1 m away: skipped
    await positions.push(fix(2, lat=6.92711))
    assert (await presence.read(PATH))["timestamp"] == fix(0).to_presence()["timestamp"]

    # 3 s later and about 20 m away: published
    await positions.push(fix(3, lat=6.92728))
    assert (await presence.read(PATH))["latitude"] == pytest.approx(6.92728)

    # 5 s after that without moving: published
    await positions.push(fix(8, lat=6.92728))
    assert (await presence.read(PATH))["timestamp"] == fix(8).to_presence()["timestamp"]


@pytest.mark.asyncio
async def test_stop_removes_position_and_is_idempotent(
    tracker: LocationTrackingSession,
    positions: PushedPositionSource,
    presence: MemoryPresenceChannel,
) -> None:
    await tracker.start("ride-1", "driver-1")
    await positions.push(fix())

    await tracker.stop()
    await tracker.stop()
    await positions.push(fix(30))

    assert await presence.read(PATH) is None
    assert tracker.status().is_tracking is False


@pytest.mark.asyncio
async def test_unclean_disconnect_removes_position(
    tracker: LocationTrackingSession,
    positions: PushedPositionSource,
    presence: MemoryPresenceChannel,
) -> None:
    await tracker.start("ride-1", "driver-1")
    await positions.push(fix())

    presence.disconnect()

    assert await presence.read(PATH) is None


@pytest.mark.asyncio
async def test_rejected_publish_falls_back_to_request(
    tracker: LocationTrackingSession,
    positions: PushedPositionSource,
    presence: MemoryPresenceChannel,
    store: MemoryDocumentStore,
    make_request: Callable[..., Awaitable[str]],
) -> None:
    """Test that a rejected publish writes the position onto the request."""
    await make_request("ride-1")
    presence.publish_error = PermissionError("permission-denied")

    await tracker.start("ride-1", "driver-1")
    await positions.push(fix())

    stored = await store.read(REQUESTS, "ride-1")
    assert stored["currentDriverLocation"]["latitude"] == pytest.approx(6.9271)
    assert tracker.status().using_fallback is True


@pytest.mark.asyncio
async def test_restart_for_another_ride(
    tracker: LocationTrackingSession,
    positions: PushedPositionSource,
    presence: MemoryPresenceChannel,
) -> None:
    await positions.push(fix())
    await tracker.start("ride-1", "driver-1")
    await tracker.start("ride-2", "driver-1")

    assert await presence.read(PATH) is None
    assert await presence.read(driver_location_path("ride-2", "driver-1")) is not None
    assert tracker.ride_id == "ride-2"
