"""Decides whether a driver should be offered a request."""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import AbstractSet

from courier_dispatch.models.driver import Driver
from courier_dispatch.models.request import DeliveryRequest, RequestStatus

DEFAULT_MAX_AGE = timedelta(hours=2)


class Ineligibility(str, Enum):
    """Why a request is not offered to a driver."""

    ALREADY_NOTIFIED = "already_notified"
    DRIVER_BUSY = "driver_busy"
    DRIVER_UNAVAILABLE = "driver_unavailable"
    DECLINED = "declined"
    NOT_SEARCHING = "not_searching"
    STALE = "stale"
    POOL_MISMATCH = "pool_mismatch"


def request_age(request: DeliveryRequest, now: datetime) -> timedelta:
    """
    Time the request has been open for matching.

    Scheduled requests count from activation; a request with no timestamp
    yet is treated as brand new.
    """
    opened_at = request.activated_at or request.created_at
    if opened_at is None:
        return timedelta(0)
    return now - opened_at


def ineligibility(
    driver: Driver,
    request: DeliveryRequest,
    already_notified: AbstractSet[str],
    now: datetime | None = None,
    max_age: timedelta = DEFAULT_MAX_AGE,
) -> Ineligibility | None:
    """First rule the request fails for this driver, or None if eligible."""
    now = now or datetime.now(timezone.utc)

    if request.id in already_notified:
        return Ineligibility.ALREADY_NOTIFIED

    if driver.current_ride_id:
        return Ineligibility.DRIVER_BUSY

    if not driver.is_available or not driver.is_online:
        return Ineligibility.DRIVER_UNAVAILABLE

    if request.declined_by(driver.id):
        return Ineligibility.DECLINED

    if request.status != RequestStatus.SEARCHING:
        return Ineligibility.NOT_SEARCHING

    if request_age(request, now) > max_age:
        return Ineligibility.STALE

    if (
        request.selected_courier != driver.courier_id
        or request.ride_details.vehicle_type != driver.vehicle_type
    ):
        return Ineligibility.POOL_MISMATCH

    return None


def should_notify(
    driver: Driver,
    request: DeliveryRequest,
    already_notified: AbstractSet[str],
    now: datetime | None = None,
    max_age: timedelta = DEFAULT_MAX_AGE,
) -> bool:
    """Check if the driver should be shown this request."""
    return ineligibility(driver, request, already_notified, now=now, max_age=max_age) is None
