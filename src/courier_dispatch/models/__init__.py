"""Data models for the dispatch core."""

from courier_dispatch.models.driver import Availability, Driver, DriverStatus
from courier_dispatch.models.location import LocationFix, TrackingStatus
from courier_dispatch.models.pricing import Quote, RateTable
from courier_dispatch.models.request import (
    AcceptedRequest,
    CancellationReason,
    CancelledBy,
    CancelledRequest,
    CollectingRequest,
    CompletedRequest,
    DeclinedDriver,
    DeliveryRequest,
    DeliveryStatus,
    InTransitRequest,
    PackageDetails,
    ProofOfDelivery,
    RequestStatus,
    RideDetails,
    ScheduledRequest,
    SearchingRequest,
    stage_of,
)

__all__ = [
    # Requests
    "DeliveryRequest",
    "RequestStatus",
    "DeliveryStatus",
    "CancellationReason",
    "CancelledBy",
    "PackageDetails",
    "RideDetails",
    "DeclinedDriver",
    "ProofOfDelivery",
    # Stages
    "ScheduledRequest",
    "SearchingRequest",
    "AcceptedRequest",
    "CollectingRequest",
    "InTransitRequest",
    "CompletedRequest",
    "CancelledRequest",
    "stage_of",
    # Drivers
    "Driver",
    "DriverStatus",
    "Availability",
    # Location
    "LocationFix",
    "TrackingStatus",
    # Pricing
    "Quote",
    "RateTable",
]
