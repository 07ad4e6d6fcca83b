"""API routes for the dispatch service."""

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import AwareDatetime, BaseModel, Field

from courier_dispatch.container import DispatchContainer
from courier_dispatch.exceptions import (
    DispatchError,
    DriverBusyError,
    DriverNotApprovedError,
    DriverNotFoundError,
    InvalidCancellationReasonError,
    InvalidTransitionError,
    MalformedRequestError,
    PermissionDeniedError,
    PinAttemptsExceededError,
    PinFormatError,
    PinMismatchError,
    PreconditionFailedError,
    ProofRequiredError,
    RatingError,
    RequestNotFoundError,
    RequestUnavailableError,
    StoreError,
)
from courier_dispatch.models.pricing import Quote
from courier_dispatch.models.request import (
    CancellationReason,
    CancelledBy,
    PackageDetails,
    ProofOfDelivery,
    RideDetails,
)
from courier_dispatch.services.availability import DriverAvailabilityController, count_available_drivers
from courier_dispatch.services.earnings import EarningsSummary
from courier_dispatch.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

HTTP_422_UNPROCESSABLE = 422

# First match wins, so subclasses come before their bases.
ERROR_STATUS: list[tuple[type[DispatchError], int]] = [
    (RequestNotFoundError, status.HTTP_404_NOT_FOUND),
    (DriverNotFoundError, status.HTTP_404_NOT_FOUND),
    (PreconditionFailedError, status.HTTP_409_CONFLICT),
    (RequestUnavailableError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (DriverBusyError, status.HTTP_409_CONFLICT),
    (PinAttemptsExceededError, status.HTTP_409_CONFLICT),
    (PinFormatError, HTTP_422_UNPROCESSABLE),
    (PinMismatchError, HTTP_422_UNPROCESSABLE),
    (ProofRequiredError, HTTP_422_UNPROCESSABLE),
    (RatingError, HTTP_422_UNPROCESSABLE),
    (InvalidCancellationReasonError, HTTP_422_UNPROCESSABLE),
    (MalformedRequestError, HTTP_422_UNPROCESSABLE),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (DriverNotApprovedError, status.HTTP_403_FORBIDDEN),
    (StoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def error_status(error: DispatchError) -> int:
    for error_cls, status_code in ERROR_STATUS:
        if isinstance(error, error_cls):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    """Render a domain error as its status code and message body."""
    status_code = error_status(exc)
    logger.warning(
        "request_failed",
        path=request.url.path,
        error=exc.code,
        detail=exc.detail,
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def get_container(request: Request) -> DispatchContainer:
    return request.app.state.container


def live_controller(container: DispatchContainer, driver_id: str) -> DriverAvailabilityController | None:
    """The controller of a driver connected over the websocket, if any."""
    session = container.sessions.get(driver_id)
    return session.controller if session else None


# Request/Response Models


class CreateDeliveryRequest(BaseModel):
    """Customer's request for a delivery."""

    customer_id: str
    selected_courier: str
    package_details: PackageDetails
    ride_details: RideDetails
    courier_details: dict[str, Any] = {}
    scheduled_at: AwareDatetime | None = None


class QuoteRequest(BaseModel):
    courier_id: str | None = None
    vehicle_type: str
    distance_km: float = Field(ge=0)


class CancelRequest(BaseModel):
    reason: CancellationReason
    cancelled_by: CancelledBy = CancelledBy.CUSTOMER
    actor_id: str | None = None


class RatingRequest(BaseModel):
    rating: int
    comment: str | None = None


class RescheduleRequest(BaseModel):
    scheduled_at: AwareDatetime


class PinRequest(BaseModel):
    pin: str


class CompleteRequest(BaseModel):
    proof_of_delivery: ProofOfDelivery | None = None


class AvailableDriversResponse(BaseModel):
    courier_id: str
    vehicle_type: str
    available_drivers: int


def _document(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


# Customer routes


@router.post("/requests", status_code=status.HTTP_201_CREATED)
async def create_request(
    body: CreateDeliveryRequest,
    container: DispatchContainer = Depends(get_container),
) -> dict[str, Any]:
    """
    Create a delivery request.

    The price is quoted from the courier's rates when the body gives a
    distance and no price.
    """
    request = await container.lifecycle.create_request(
        customer_id=body.customer_id,
        selected_courier=body.selected_courier,
        package_details=body.package_details,
        ride_details=body.ride_details,
        courier_details=body.courier_details,
        scheduled_at=body.scheduled_at,
    )
    if body.scheduled_at:
        await container.scheduler.start(body.customer_id)
    return _document(request)


@router.get("/requests/{request_id}")
async def get_request(
    request_id: str,
    container: DispatchContainer = Depends(get_container),
) -> dict[str, Any]:
    return _document(await container.lifecycle.get(request_id))


@router.post("/requests/{request_id}/cancel")
async def cancel_request(
    request_id: str,
    body: CancelRequest,
    container: DispatchContainer = Depends(get_container),
) -> dict[str, Any]:
    controller = None
    if body.cancelled_by == CancelledBy.DRIVER and body.actor_id:
        controller = live_controller(container, body.actor_id)
    if controller is not None:
        cancelled = await controller.cancel(request_id, body.reason)
    else:
        cancelled = await container.lifecycle.cancel(
            request_id,
            body.reason,
            cancelled_by=body.cancelled_by,
            actor_id=body.actor_id,
        )
    return _document(cancelled)


@router.post("/requests/{request_id}/rating")
async def rate_request(
    request_id: str,
    body: RatingRequest,
    container: DispatchContainer = Depends(get_container),
) -> dict[str, Any]:
    return _document(await container.lifecycle.rate(request_id, body.rating, body.comment))


@router.post("/requests/{request_id}/reschedule")
async def reschedule_request(
    request_id: str,
    body: RescheduleRequest,
    container: DispatchContainer = Depends(get_container),
) -> dict[str, Any]:
    return _document(await container.scheduler.reschedule(request_id, body.scheduled_at))


@router.post("/quotes", response_model=Quote)
async def quote(
    body: QuoteRequest,
    container: DispatchContainer = Depends(get_container),
) -> Quote:
    return await container.pricing.quote(body.courier_id, body.vehicle_type, body.distance_km)


@router.get("/couriers/{courier_id}/drivers/available", response_model=AvailableDriversResponse)
async def available_drivers(
    courier_id: str,
    vehicle_type: str,
    container: DispatchContainer = Depends(get_container),
) -> AvailableDriversResponse:
    count = await count_available_drivers(container.store, courier_id, vehicle_type)
    return AvailableDriversResponse(
        courier_id=courier_id,
        vehicle_type=vehicle_type,
        available_drivers=count,
    )


# Driver routes


@router.post("/drivers/{driver_id}/requests/{request_id}/accept")
async def accept_request(
    driver_id: str,
    request_id: str,
    container: DispatchContainer = Depends(get_container),
) -> dict[str, Any]:
    controller = live_controller(container, driver_id)
    if controller is not None:
        accepted = await controller.accept(request_id)
    else:
        accepted = await container.lifecycle.accept(request_id, driver_id)
    return _document(accepted)


@router.post("/drivers/{driver_id}/requests/{request_id}/decline")
async def decline_request(
    driver_id: str,
    request_id: str,
    container: DispatchContainer = Depends(get_container),
) -> dict[str, Any]:
    controller = live_controller(container, driver_id)
    if controller is not None:
        declined = await controller.decline(request_id)
    else:
        declined = await container.lifecycle.decline(request_id, driver_id)
    return _document(declined)


@router.post("/drivers/{driver_id}/requests/{request_id}/collection")
async def start_collection(
    driver_id: str,
    request_id: str,
    container: DispatchContainer = Depends(get_container),
) -> dict[str, Any]:
    collecting = await container.lifecycle.start_collection(request_id, driver_id)
    return _document(collecting)


@router.post("/drivers/{driver_id}/requests/{request_id}/pin")
async def verify_pin(
    driver_id: str,
    request_id: str,
    body: PinRequest,
    container: DispatchContainer = Depends(get_container),
) -> dict[str, Any]:
    in_transit = await container.lifecycle.verify_pin(request_id, driver_id, body.pin)
    return _document(in_transit)


@router.post("/drivers/{driver_id}/requests/{request_id}/complete")
async def complete_request(
    driver_id: str,
    request_id: str,
    body: CompleteRequest,
    container: DispatchContainer = Depends(get_container),
) -> dict[str, Any]:
    controller = live_controller(container, driver_id)
    if controller is not None:
        completed = await controller.complete(request_id, body.proof_of_delivery)
    else:
        completed = await container.lifecycle.complete(request_id, driver_id, body.proof_of_delivery)
    return _document(completed)


@router.get("/drivers/{driver_id}/earnings", response_model=EarningsSummary)
async def driver_earnings(
    driver_id: str,
    container: DispatchContainer = Depends(get_container),
) -> EarningsSummary:
    return await container.stats.summary(driver_id)
