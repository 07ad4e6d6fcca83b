"""Driver earnings and rating statistics over completed deliveries."""

from datetime import datetime, timedelta
from typing import Callable, Iterable

from pydantic import BaseModel

from courier_dispatch.models.request import DeliveryRequest, RequestStatus
from courier_dispatch.services.pricing import driver_share
from courier_dispatch.state.documents import REQUESTS, DocumentStore, utcnow


class EarningsSummary(BaseModel):
    """Totals for one driver."""

    driver_id: str
    completed_trips: int = 0
    total_earnings: int = 0
    average_per_trip: float = 0.0
    weekly_earnings: int = 0
    monthly_earnings: int = 0
    average_rating: float | None = None
    total_reviews: int = 0


def trip_earnings(request: DeliveryRequest) -> int:
    """Driver earnings recorded on a request, or derived from its price."""
    if request.driver_earnings is not None:
        return request.driver_earnings
    if request.ride_details.price is not None:
        return driver_share(request.ride_details.price)
    return 0


def summarize(driver_id: str, requests: Iterable[DeliveryRequest], now: datetime) -> EarningsSummary:
    completed = [r for r in requests if r.status == RequestStatus.COMPLETED and r.driver_id == driver_id]
    if not completed:
        return EarningsSummary(driver_id=driver_id)

    week_start = now - timedelta(days=7)
    month_start = now - timedelta(days=30)

    total = sum(trip_earnings(r) for r in completed)
    weekly = sum(trip_earnings(r) for r in completed if r.completed_at and r.completed_at >= week_start)
    monthly = sum(trip_earnings(r) for r in completed if r.completed_at and r.completed_at >= month_start)

    ratings = [r.customer_rating for r in completed if r.customer_rating is not None]

    return EarningsSummary(
        driver_id=driver_id,
        completed_trips=len(completed),
        total_earnings=total,
        average_per_trip=round(total / len(completed), 2),
        weekly_earnings=weekly,
        monthly_earnings=monthly,
        average_rating=round(sum(ratings) / len(ratings), 2) if ratings else None,
        total_reviews=len(ratings),
    )


class DriverStatsService:
    """Reads a driver's completed deliveries and totals them."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] | None = None):
        self.store = store
        self.clock = clock or utcnow

    async def completed_requests(self, driver_id: str) -> list[DeliveryRequest]:
        documents = await self.store.query(
            REQUESTS,
            {"driverId": driver_id, "status": RequestStatus.COMPLETED.value},
        )
        requests = [DeliveryRequest.model_validate(document) for document in documents]
        return sorted(requests, key=lambda r: r.completed_at or self.clock(), reverse=True)

    async def summary(self, driver_id: str) -> EarningsSummary:
        return summarize(driver_id, await self.completed_requests(driver_id), self.clock())
