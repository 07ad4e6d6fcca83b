"""Delivery lifecycle: every request transition and its guards."""

import re
import secrets
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable

from courier_dispatch.config import Settings, get_settings
from courier_dispatch.exceptions import (
    DriverNotApprovedError,
    InvalidCancellationReasonError,
    InvalidTransitionError,
    PinAttemptsExceededError,
    PinFormatError,
    PinMismatchError,
    PreconditionFailedError,
    PresenceError,
    ProofRequiredError,
    RatingError,
    RequestNotFoundError,
    RequestUnavailableError,
)
from courier_dispatch.models.request import (
    PIN_PATTERN,
    AcceptedRequest,
    CancellationReason,
    CancelledBy,
    CancelledRequest,
    CollectingRequest,
    CompletedRequest,
    DeliveryRequest,
    DeliveryStatus,
    InTransitRequest,
    PackageDetails,
    ProofOfDelivery,
    RequestStatus,
    RideDetails,
    SearchingRequest,
    stage_of,
)
from courier_dispatch.services.availability import claim_driver, load_driver, release_driver
from courier_dispatch.services.pricing import PricingRulesProvider, driver_share
from courier_dispatch.state.documents import (
    REQUESTS,
    SERVER_TIMESTAMP,
    Document,
    DocumentStore,
    as_utc,
    utcnow,
)
from courier_dispatch.state.presence import PresenceChannel, driver_location_path
from courier_dispatch.state.workflow import LifecycleStage, LifecycleTransitions, lifecycle_stage
from courier_dispatch.utils.logging import LifecycleLogger

lifecycle_logger = LifecycleLogger("lifecycle")


def generate_pin() -> str:
    """Random four-digit collection PIN."""
    return str(1000 + secrets.randbelow(9000))


def normalize_pin(entered: str | int) -> str:
    """
    Validate an entered PIN.

    Raises:
        PinFormatError: If it is not exactly four digits
    """
    pin = str(entered).strip() if entered is not None else ""
    if not re.fullmatch(PIN_PATTERN, pin):
        raise PinFormatError(f"Invalid PIN format: {pin!r}")
    return pin


class DeliveryLifecycle:
    """
    Owns writes that move a request between stages.

    Every write is conditional on the stage it was guarded against, so a
    concurrent writer turns into a rejection rather than a lost update.
    """

    def __init__(
        self,
        store: DocumentStore,
        presence: PresenceChannel,
        pricing: PricingRulesProvider,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        pin_generator: Callable[[], str] = generate_pin,
    ):
        self.store = store
        self.presence = presence
        self.pricing = pricing
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.pin_generator = pin_generator
        self._pin_failures: dict[str, int] = defaultdict(int)

    async def get(self, request_id: str) -> DeliveryRequest:
        """Read a request fresh from the store."""
        document = await self.store.read(REQUESTS, request_id)
        if document is None:
            raise RequestNotFoundError(f"Request {request_id} not found", request_id=request_id)
        return DeliveryRequest.model_validate(document)

    async def create_request(
        self,
        customer_id: str,
        selected_courier: str,
        package_details: PackageDetails,
        ride_details: RideDetails,
        courier_details: dict[str, Any] | None = None,
        scheduled_at: datetime | None = None,
    ) -> DeliveryRequest:
        """
        Create a request that is searching now, or scheduled for later.

        A missing price is quoted from the courier's rates when a distance
        is known.
        """
        if ride_details.price is None and ride_details.distance_km is not None:
            quote = await self.pricing.quote(
                selected_courier,
                ride_details.vehicle_type,
                ride_details.distance_km,
            )
            ride_details = ride_details.model_copy(update={"price": quote.total})

        status = RequestStatus.SCHEDULED if scheduled_at else RequestStatus.SEARCHING
        fields: Document = {
            "customerId": customer_id,
            "status": status.value,
            "selectedCourier": selected_courier,
            "packageDetails": package_details.to_document(exclude_none=True),
            "rideDetails": ride_details.to_document(exclude_none=True),
            "courierDetails": courier_details or {},
            "declinedDrivers": [],
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        }
        if scheduled_at:
            fields["scheduledAt"] = as_utc(scheduled_at).isoformat()

        request_id = await self.store.create(REQUESTS, fields)
        lifecycle_logger.log_transition(request_id, None, status.value, customer_id=customer_id)
        return await self.get(request_id)

    async def activate_scheduled(self, request_id: str) -> SearchingRequest:
        """
        Open a scheduled request for matching.

        Raises:
            RequestUnavailableError: If it is no longer scheduled
        """
        try:
            document = await self.store.update(
                REQUESTS,
                request_id,
                {
                    "status": RequestStatus.SEARCHING.value,
                    "activatedAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
                expect={"status": RequestStatus.SCHEDULED.value},
            )
        except PreconditionFailedError:
            lifecycle_logger.log_rejection(request_id, "activate", "not_scheduled")
            raise RequestUnavailableError(
                f"Request {request_id} is no longer scheduled", request_id=request_id
            ) from None

        lifecycle_logger.log_transition(request_id, "scheduled", "searching")
        return stage_of(DeliveryRequest.model_validate(document))

    async def accept(self, request_id: str, driver_id: str) -> AcceptedRequest:
        """
        Assign a searching request to a driver.

        Exactly one of any number of concurrent accepts succeeds; the rest
        raise ``RequestUnavailableError`` and leave their drivers free.

        Raises:
            RequestUnavailableError: If the request is not searching any more
            DriverBusyError: If the driver already holds a ride
            DriverNotApprovedError: If the driver is not approved
        """
        request = await self.get(request_id)
        if not LifecycleTransitions.can_transition(lifecycle_stage(request), LifecycleStage.ACCEPTED):
            lifecycle_logger.log_rejection(
                request_id, "accept", f"status_{request.status.value}", driver_id=driver_id
            )
            raise RequestUnavailableError(
                f"Request {request_id} is {request.status.value}",
                request_id=request_id,
            )

        driver = await load_driver(self.store, driver_id)
        if not driver.is_approved:
            raise DriverNotApprovedError(driver_id=driver_id)
        if (
            request.selected_courier != driver.courier_id
            or request.vehicle_type != driver.vehicle_type
        ):
            lifecycle_logger.log_rejection(request_id, "accept", "pool_mismatch", driver_id=driver_id)
            raise RequestUnavailableError(
                f"Request {request_id} is outside driver {driver_id}'s pool",
                request_id=request_id,
            )

        await claim_driver(self.store, driver_id, request_id)

        price = request.ride_details.price
        fields: Document = {
            "status": RequestStatus.ACCEPTED.value,
            "deliveryStatus": DeliveryStatus.ACCEPTED.value,
            "driverId": driver_id,
            "driverName": driver.full_name,
            "driverPhone": driver.phone_number,
            "vehicleNumber": driver.vehicle_number,
            "deliveryPin": self.pin_generator(),
            "driverEarnings": driver_share(price) if price is not None else None,
            "acceptedAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        }

        try:
            document = await self.store.update(
                REQUESTS,
                request_id,
                fields,
                expect={"status": RequestStatus.SEARCHING.value, "driverId": None},
            )
        except PreconditionFailedError:
            await release_driver(self.store, driver_id, request_id)
            lifecycle_logger.log_rejection(request_id, "accept", "taken", driver_id=driver_id)
            raise RequestUnavailableError(
                f"Request {request_id} was taken by another driver",
                request_id=request_id,
            ) from None

        lifecycle_logger.log_transition(request_id, "searching", "accepted", driver_id=driver_id)
        return stage_of(DeliveryRequest.model_validate(document))

    async def decline(
        self,
        request_id: str,
        driver_id: str,
        driver_name: str | None = None,
    ) -> DeliveryRequest:
        """Record that a driver declined. Repeats are ignored."""

        def mutate(current: Document | None) -> Document | None:
            if current is None:
                raise RequestNotFoundError(f"Request {request_id} not found", request_id=request_id)
            request = DeliveryRequest.model_validate(current)
            if request.declined_by(driver_id):
                return None
            entry = {"driverId": driver_id, "driverName": driver_name, "declinedAt": SERVER_TIMESTAMP}
            return {
                "declinedDrivers": [*current.get("declinedDrivers", []), entry],
                "updatedAt": SERVER_TIMESTAMP,
            }

        document = await self.store.transact(REQUESTS, request_id, mutate)
        lifecycle_logger.logger.info("request_declined", request_id=request_id, driver_id=driver_id)
        return DeliveryRequest.model_validate(document)

    async def start_collection(self, request_id: str, driver_id: str) -> CollectingRequest:
        """
        The driver has arrived for pickup.

        Raises:
            InvalidTransitionError: If the request is not accepted by this driver
        """
        request = await self.get(request_id)
        stage = self._driver_stage(request, driver_id, "start_collection")

        if isinstance(stage, CollectingRequest):
            return stage
        self._guard(request, LifecycleStage.COLLECTING, "start_collection", driver_id)

        try:
            document = await self.store.update(
                REQUESTS,
                request_id,
                {
                    "deliveryStatus": DeliveryStatus.COLLECTING.value,
                    "collectionStartedAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
                expect={
                    "status": RequestStatus.ACCEPTED.value,
                    "deliveryStatus": DeliveryStatus.ACCEPTED.value,
                    "driverId": driver_id,
                },
            )
        except PreconditionFailedError:
            raise self._reject(await self.get(request_id), "start_collection", driver_id) from None

        lifecycle_logger.log_transition(request_id, "accepted", "collecting", driver_id=driver_id)
        return stage_of(DeliveryRequest.model_validate(document))

    async def verify_pin(self, request_id: str, driver_id: str, entered_pin: str | int) -> InTransitRequest:
        """
        Check the customer's PIN and mark the package collected.

        A wrong PIN changes nothing in the store. Collection is started
        first if the driver skipped that step.

        Raises:
            PinFormatError: If the PIN is not four digits
            PinMismatchError: If the PIN is wrong
            PinAttemptsExceededError: If the attempt limit is used up
            InvalidTransitionError: If the request is not being collected by this driver
        """
        pin = normalize_pin(entered_pin)

        limit = self.settings.max_pin_attempts
        if limit is not None and self._pin_failures[request_id] >= limit:
            lifecycle_logger.log_rejection(request_id, "verify_pin", "attempts_exceeded", driver_id=driver_id)
            raise PinAttemptsExceededError(request_id=request_id)

        request = await self.get(request_id)
        self._driver_stage(request, driver_id, "verify_pin")
        if lifecycle_stage(request) == LifecycleStage.ACCEPTED:
            await self.start_collection(request_id, driver_id)
            request = await self.get(request_id)
        self._guard(request, LifecycleStage.IN_TRANSIT, "verify_pin", driver_id)
        stage = stage_of(request)

        if pin != stage.delivery_pin:
            self._pin_failures[request_id] += 1
            remaining = None if limit is None else max(limit - self._pin_failures[request_id], 0)
            lifecycle_logger.log_rejection(
                request_id,
                "verify_pin",
                "pin_mismatch",
                driver_id=driver_id,
                attempts_remaining=remaining,
            )
            raise PinMismatchError(attempts_remaining=remaining, request_id=request_id)

        try:
            document = await self.store.update(
                REQUESTS,
                request_id,
                {
                    "deliveryStatus": DeliveryStatus.IN_TRANSIT.value,
                    "collectionPinValidated": True,
                    "packageCollectedAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
                expect={
                    "status": RequestStatus.ACCEPTED.value,
                    "deliveryStatus": DeliveryStatus.COLLECTING.value,
                    "driverId": driver_id,
                    "deliveryPin": pin,
                },
            )
        except PreconditionFailedError:
            raise self._reject(await self.get(request_id), "verify_pin", driver_id) from None

        self._pin_failures.pop(request_id, None)
        lifecycle_logger.log_transition(request_id, "collecting", "in_transit", driver_id=driver_id)
        return stage_of(DeliveryRequest.model_validate(document))

    async def complete(
        self,
        request_id: str,
        driver_id: str,
        proof: ProofOfDelivery | str | None,
    ) -> CompletedRequest:
        """
        Mark a package delivered, then free the driver and drop their live position.

        Raises:
            ProofRequiredError: If no proof photo is given
            InvalidTransitionError: If the package is not in transit with this driver
        """
        if isinstance(proof, str):
            proof = ProofOfDelivery(photo_url=proof) if proof.strip() else None
        if proof is None:
            raise ProofRequiredError(request_id=request_id)
        if proof.captured_at is None:
            proof = proof.model_copy(update={"captured_at": self.clock()})

        request = await self.get(request_id)
        self._driver_stage(request, driver_id, "complete")
        self._guard(request, LifecycleStage.DELIVERED, "complete", driver_id)

        try:
            document = await self.store.update(
                REQUESTS,
                request_id,
                {
                    "status": RequestStatus.COMPLETED.value,
                    "deliveryStatus": DeliveryStatus.DELIVERED.value,
                    "proofOfDelivery": proof.to_document(exclude_none=True),
                    "completedAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
                expect={
                    "status": RequestStatus.ACCEPTED.value,
                    "deliveryStatus": DeliveryStatus.IN_TRANSIT.value,
                    "driverId": driver_id,
                },
            )
        except PreconditionFailedError:
            raise self._reject(await self.get(request_id), "complete", driver_id) from None

        lifecycle_logger.log_transition(request_id, "in_transit", "delivered", driver_id=driver_id)
        await self._end_assignment(request_id, driver_id)
        return stage_of(DeliveryRequest.model_validate(document))

    async def cancel(
        self,
        request_id: str,
        reason: CancellationReason | str,
        cancelled_by: CancelledBy | str,
        actor_id: str | None = None,
    ) -> CancelledRequest:
        """
        Cancel a request that has not ended.

        Any assigned driver is freed and their live position removed before
        the request is marked cancelled.

        Raises:
            InvalidCancellationReasonError: If the reason is not in the taxonomy
            InvalidTransitionError: If the request has already ended, or the
                actor is not a party to it
        """
        try:
            reason = CancellationReason(reason)
        except ValueError:
            raise InvalidCancellationReasonError(f"Unknown reason: {reason!r}") from None
        cancelled_by = CancelledBy(cancelled_by)

        for _ in range(self.settings.store_max_retries):
            request = await self.get(request_id)
            self._guard(request, LifecycleStage.CANCELLED, "cancel", actor_id)
            self._check_actor(request, cancelled_by, actor_id)

            from_stage = lifecycle_stage(request).value
            if request.driver_id:
                await self._end_assignment(request_id, request.driver_id)

            try:
                document = await self.store.update(
                    REQUESTS,
                    request_id,
                    {
                        "status": RequestStatus.CANCELLED.value,
                        "cancellationReason": reason.value,
                        "cancelledBy": cancelled_by.value,
                        "cancelledAt": SERVER_TIMESTAMP,
                        "updatedAt": SERVER_TIMESTAMP,
                    },
                    expect={"status": request.status.value, "driverId": request.driver_id},
                )
            except PreconditionFailedError:
                lifecycle_logger.log_rejection(request_id, "cancel", "changed_concurrently", driver_id=actor_id)
                continue

            lifecycle_logger.log_transition(
                request_id,
                from_stage,
                "cancelled",
                driver_id=request.driver_id,
                reason=reason.value,
                cancelled_by=cancelled_by.value,
            )
            self._pin_failures.pop(request_id, None)
            return stage_of(DeliveryRequest.model_validate(document))

        raise InvalidTransitionError(
            f"Request {request_id} kept changing while cancelling", request_id=request_id
        )

    async def rate(self, request_id: str, rating: int, comment: str | None = None) -> CompletedRequest:
        """
        Record the customer's rating of a delivered request, once.

        Raises:
            RatingError: If out of range, not delivered yet, or already rated
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise RatingError(f"Rating must be an integer from 1 to 5, got {rating!r}")

        def mutate(current: Document | None) -> Document:
            if current is None:
                raise RequestNotFoundError(f"Request {request_id} not found", request_id=request_id)
            request = DeliveryRequest.model_validate(current)
            if request.status != RequestStatus.COMPLETED:
                raise RatingError(f"Request {request_id} is {request.status.value}", request_id=request_id)
            if request.is_rated:
                raise RatingError(f"Request {request_id} is already rated", request_id=request_id)
            return {
                "customerRating": rating,
                "customerComment": comment,
                "isRated": True,
                "customerRatedAt": SERVER_TIMESTAMP,
            }

        document = await self.store.transact(REQUESTS, request_id, mutate)
        lifecycle_logger.logger.info("request_rated", request_id=request_id, rating=rating)
        return stage_of(DeliveryRequest.model_validate(document))

    def _driver_stage(self, request: DeliveryRequest, driver_id: str, operation: str):
        stage = stage_of(request)
        if not isinstance(stage, AcceptedRequest) or stage.driver_id != driver_id:
            raise self._reject(request, operation, driver_id)
        return stage

    def _guard(
        self,
        request: DeliveryRequest,
        target: LifecycleStage,
        operation: str,
        driver_id: str | None,
    ) -> None:
        if not LifecycleTransitions.can_transition(lifecycle_stage(request), target):
            raise self._reject(request, operation, driver_id)

    def _reject(
        self,
        request: DeliveryRequest,
        operation: str,
        driver_id: str | None,
    ) -> InvalidTransitionError:
        stage = lifecycle_stage(request).value
        lifecycle_logger.log_rejection(request.id, operation, f"stage_{stage}", driver_id=driver_id)
        return InvalidTransitionError(
            f"Cannot {operation} request {request.id} at stage {stage}",
            request_id=request.id,
            stage=stage,
        )

    def _check_actor(
        self,
        request: DeliveryRequest,
        cancelled_by: CancelledBy,
        actor_id: str | None,
    ) -> None:
        if actor_id is None or cancelled_by == CancelledBy.SYSTEM:
            return
        owner = request.driver_id if cancelled_by == CancelledBy.DRIVER else request.customer_id
        if owner != actor_id:
            lifecycle_logger.log_rejection(request.id, "cancel", "not_a_party", driver_id=actor_id)
            raise InvalidTransitionError(
                f"{cancelled_by.value} {actor_id} cannot cancel request {request.id}",
                request_id=request.id,
            )

    async def _end_assignment(self, request_id: str, driver_id: str) -> None:
        await release_driver(self.store, driver_id, request_id)
        try:
            await self.presence.remove(driver_location_path(request_id, driver_id))
        except PresenceError as e:
            lifecycle_logger.log_error(str(e), request_id=request_id, driver_id=driver_id)
