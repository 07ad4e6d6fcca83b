"""Tests for driver earnings and ratings."""

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

import pytest

from courier_dispatch.models.request import DeliveryRequest
from courier_dispatch.services.earnings import DriverStatsService, summarize
from courier_dispatch.services.lifecycle import DeliveryLifecycle
from courier_dispatch.state.documents import MemoryDocumentStore

NOW = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


def completed(request_id: str, days_ago: int, price: int, **extra) -> DeliveryRequest:
    return DeliveryRequest.model_validate(
        {
            "id": request_id,
            "status": "completed",
            "deliveryStatus": "delivered",
            "selectedCourier": "courier-1",
            "driverId": "driver-1",
            "rideDetails": {"vehicleType": "Bike", "price": price},
            "completedAt": (NOW - timedelta(days=days_ago)).isoformat(),
            **extra,
        }
    )


def test_summary_periods_and_ratings() -> None:
    requests = [
        completed("r1", 1, 1000, driverEarnings=800, customerRating=5),
        completed("r2", 10, 500, customerRating=3),
        completed("r3", 40, 300),
    ]

    summary = summarize("driver-1", requests, NOW)

    assert summary.completed_trips == 3
    assert summary.total_earnings == 800 + 400 + 240
    assert summary.weekly_earnings == 800
    assert summary.monthly_earnings == 1200
    assert summary.average_per_trip == 480.0
    assert summary.average_rating == 4.0
    assert summary.total_reviews == 2


def test_summary_without_trips() -> None:
    summary = summarize("driver-1", [], NOW)

    assert summary.completed_trips == 0
    assert summary.average_rating is None


@pytest.mark.asyncio
async def test_stats_service_reads_completed_requests(
    store: MemoryDocumentStore,
    lifecycle: DeliveryLifecycle,
    clock: Callable,
    make_driver: Callable[..., Awaitable[str]],
    make_request: Callable[..., Awaitable[str]],
) -> None:
    await make_driver("driver-1")
    await make_request("ride-1", price=1000)
    await make_request("ride-2", price=700)
    await lifecycle.accept("ride-1", "driver-1")
    await lifecycle.verify_pin("ride-1", "driver-1", "4821")
    await lifecycle.complete("ride-1", "driver-1", "https://storage.example.com/p.jpg")
    await lifecycle.rate("ride-1", 4)
    await lifecycle.accept("ride-2", "driver-1")

    summary = await DriverStatsService(store, clock=clock).summary("driver-1")

    assert summary.completed_trips == 1
    assert summary.total_earnings == 800
    assert summary.weekly_earnings == 800
    assert summary.average_rating == 4.0
