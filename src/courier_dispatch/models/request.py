"""Delivery request models and lifecycle stage variants."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import ConfigDict, Field

from courier_dispatch.exceptions import MalformedRequestError
from courier_dispatch.models.base import DocumentModel

PIN_PATTERN = r"^[0-9]{4}$"


class RequestStatus(str, Enum):
    """Coarse request lifecycle."""

    SCHEDULED = "scheduled"
    SEARCHING = "searching"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class DeliveryStatus(str, Enum):
    """Physical progress of an accepted request."""

    ACCEPTED = "accepted"
    COLLECTING = "collecting"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"


class CancellationReason(str, Enum):
    """Closed set of reasons surfaced to the user."""

    CUSTOMER_NOT_AVAILABLE = "Customer not available"
    INCORRECT_ADDRESS = "Incorrect address"
    PACKAGE_DAMAGED = "Package damaged"
    VEHICLE_BREAKDOWN = "Vehicle breakdown"
    OTHER_ISSUE = "Other issue"


class CancelledBy(str, Enum):
    """Party that cancelled a request."""

    CUSTOMER = "customer"
    DRIVER = "driver"
    SYSTEM = "system"


TERMINAL_STATUSES = frozenset({RequestStatus.CANCELLED, RequestStatus.COMPLETED})


class PackageDetails(DocumentModel):
    """What is being moved and between where."""

    model_config = ConfigDict(extra="allow")

    pickup_location: str
    dropoff_location: str
    package_name: str | None = None
    weight: str | None = None
    dimensions: str | None = None
    shipment_type: str | None = None
    sender_name: str | None = None
    sender_phone: str | None = None
    tracking_id: str | None = None


class RideDetails(DocumentModel):
    """Vehicle class, quoted price and payment method."""

    vehicle_type: str
    price: int | None = Field(default=None, ge=0)
    payment_method: str | None = None
    distance_km: float | None = Field(default=None, ge=0)


class DeclinedDriver(DocumentModel):
    """Entry in a request's append-only decline log."""

    driver_id: str
    driver_name: str | None = None
    declined_at: datetime


class ProofOfDelivery(DocumentModel):
    """Reference to the already-uploaded delivery photo."""

    photo_url: str = Field(min_length=1)
    captured_at: datetime | None = None
    note: str | None = None


class DeliveryRequest(DocumentModel):
    """One delivery job as stored in the document store."""

    id: str
    customer_id: str | None = None
    status: RequestStatus
    delivery_status: DeliveryStatus | None = None

    package_details: PackageDetails | None = None
    courier_details: dict[str, Any] = Field(default_factory=dict)
    selected_courier: str
    ride_details: RideDetails

    # Assignment
    driver_id: str | None = None
    driver_name: str | None = None
    driver_phone: str | None = None
    vehicle_number: str | None = None
    driver_earnings: int | None = None
    declined_drivers: list[DeclinedDriver] = Field(default_factory=list)

    # Collection
    delivery_pin: str | None = Field(default=None, pattern=PIN_PATTERN)
    collection_pin_validated: bool = False

    # Outcome
    proof_of_delivery: ProofOfDelivery | None = None
    cancellation_reason: CancellationReason | None = None
    cancelled_by: CancelledBy | None = None
    customer_rating: int | None = Field(default=None, ge=1, le=5)
    customer_comment: str | None = None
    is_rated: bool = False

    current_driver_location: dict[str, Any] | None = None

    # Timing
    scheduled_at: datetime | None = None
    activated_at: datetime | None = None
    rescheduled_at: datetime | None = None
    created_at: datetime | None = None
    accepted_at: datetime | None = None
    collection_started_at: datetime | None = None
    package_collected_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    customer_rated_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Check if no further lifecycle writes are allowed."""
        return self.status in TERMINAL_STATUSES

    @property
    def vehicle_type(self) -> str:
        return self.ride_details.vehicle_type

    def declined_by(self, driver_id: str) -> bool:
        """Check if a driver already declined this request."""
        return any(entry.driver_id == driver_id for entry in self.declined_drivers)


# Stage variants: one model per lifecycle stage with that stage's fields required.


class _Stage(DocumentModel):
    id: str
    selected_courier: str
    ride_details: RideDetails


class ScheduledRequest(_Stage):
    status: Literal[RequestStatus.SCHEDULED]
    scheduled_at: datetime
    customer_id: str | None = None


class SearchingRequest(_Stage):
    status: Literal[RequestStatus.SEARCHING]
    driver_id: None = None
    created_at: datetime | None = None
    activated_at: datetime | None = None


class AcceptedRequest(_Stage):
    status: Literal[RequestStatus.ACCEPTED]
    delivery_status: Literal[DeliveryStatus.ACCEPTED]
    driver_id: str
    driver_name: str | None = None
    delivery_pin: str = Field(pattern=PIN_PATTERN)
    accepted_at: datetime


class CollectingRequest(AcceptedRequest):
    delivery_status: Literal[DeliveryStatus.COLLECTING]
    collection_started_at: datetime


class InTransitRequest(AcceptedRequest):
    delivery_status: Literal[DeliveryStatus.IN_TRANSIT]
    collection_started_at: datetime
    package_collected_at: datetime


class CompletedRequest(_Stage):
    status: Literal[RequestStatus.COMPLETED]
    delivery_status: Literal[DeliveryStatus.DELIVERED]
    driver_id: str
    proof_of_delivery: ProofOfDelivery
    completed_at: datetime
    driver_earnings: int | None = None
    customer_rating: int | None = None
    is_rated: bool = False


class CancelledRequest(_Stage):
    status: Literal[RequestStatus.CANCELLED]
    cancellation_reason: CancellationReason
    cancelled_by: CancelledBy
    cancelled_at: datetime
    driver_id: str | None = None


ActiveRequest = AcceptedRequest | CollectingRequest | InTransitRequest

RequestStage = (
    ScheduledRequest
    | SearchingRequest
    | AcceptedRequest
    | CollectingRequest
    | InTransitRequest
    | CompletedRequest
    | CancelledRequest
)

_ACCEPTED_STAGES: dict[DeliveryStatus | None, type[_Stage]] = {
    DeliveryStatus.ACCEPTED: AcceptedRequest,
    DeliveryStatus.COLLECTING: CollectingRequest,
    DeliveryStatus.IN_TRANSIT: InTransitRequest,
}

_STAGES: dict[RequestStatus, type[_Stage]] = {
    RequestStatus.SCHEDULED: ScheduledRequest,
    RequestStatus.SEARCHING: SearchingRequest,
    RequestStatus.COMPLETED: CompletedRequest,
    RequestStatus.CANCELLED: CancelledRequest,
}


def stage_of(request: DeliveryRequest) -> RequestStage:
    """
    Narrow a stored request to the variant for its lifecycle stage.

    Raises:
        MalformedRequestError: If the document lacks a field its stage requires
    """
    if request.status == RequestStatus.ACCEPTED:
        stage_cls = _ACCEPTED_STAGES.get(request.delivery_status)
    else:
        stage_cls = _STAGES.get(request.status)

    if stage_cls is None:
        raise MalformedRequestError(
            f"Request {request.id} has status={request.status.value} "
            f"deliveryStatus={getattr(request.delivery_status, 'value', None)}",
            request_id=request.id,
        )

    try:
        return stage_cls.model_validate(request.model_dump())
    except ValueError as e:
        raise MalformedRequestError(
            f"Request {request.id} is not a valid {stage_cls.__name__}: {e}",
            request_id=request.id,
        ) from e
