"""Tests for the in-memory presence channel."""

import pytest

from courier_dispatch.exceptions import PresenceError
from courier_dispatch.state.presence import MemoryPresenceChannel, driver_location_path


def test_driver_location_path() -> None:
    assert driver_location_path("ride-1", "driver-1") == "driverLocations/ride-1/driver-1"


@pytest.mark.asyncio
async def test_publish_and_subscribe(presence: MemoryPresenceChannel) -> None:
    seen: list = []
    subscription = await presence.subscribe("p", seen.append)

    await presence.publish("p", {"latitude": 1})
    await presence.remove("p")
    await subscription.close()
    await presence.publish("p", {"latitude": 2})

    assert seen == [None, {"latitude": 1}, None]


@pytest.mark.asyncio
async def test_disconnect_removes_registered_paths_only(presence: MemoryPresenceChannel) -> None:
    await presence.publish("registered", 1)
    await presence.on_disconnect_cleanup("registered")
    await presence.publish("other", 2)

    presence.disconnect()

    assert await presence.read("registered") is None
    assert await presence.read("other") == 2


@pytest.mark.asyncio
async def test_publish_rejected(presence: MemoryPresenceChannel) -> None:
    presence.publish_error = PermissionError("permission-denied")

    with pytest.raises(PresenceError):
        await presence.publish("p", 1)

