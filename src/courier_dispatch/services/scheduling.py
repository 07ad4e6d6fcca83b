"""Scheduled deliveries: activation when due, rescheduling and listing."""

from datetime import datetime, timedelta
from typing import Any, Callable

from pydantic import ValidationError

from courier_dispatch.config import Settings, get_settings
from courier_dispatch.exceptions import (
    InvalidTransitionError,
    PreconditionFailedError,
    RequestUnavailableError,
    StoreError,
)
from courier_dispatch.models.request import DeliveryRequest, RequestStatus
from courier_dispatch.services.lifecycle import DeliveryLifecycle
from courier_dispatch.state.documents import (
    REQUESTS,
    SERVER_TIMESTAMP,
    DocumentStore,
    Subscription,
    as_utc,
    utcnow,
)
from courier_dispatch.utils.logging import get_logger

logger = get_logger(__name__)


def is_due(request: DeliveryRequest, now: datetime, lead: timedelta) -> bool:
    """Check if a scheduled request should start searching."""
    if request.status != RequestStatus.SCHEDULED or request.scheduled_at is None:
        return False
    return as_utc(now) >= as_utc(request.scheduled_at) - lead


class ScheduledDeliveryActivator:
    """Moves scheduled requests to searching once they are due."""

    def __init__(
        self,
        store: DocumentStore,
        lifecycle: DeliveryLifecycle,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.lead = timedelta(minutes=self.settings.scheduled_activation_lead_minutes)
        self._subscriptions: dict[str, Subscription] = {}

    async def start(self, customer_id: str) -> None:
        """Watch a customer's scheduled requests and activate them when due."""
        if customer_id in self._subscriptions:
            logger.info("scheduled_watch_already_started", customer_id=customer_id)
            return

        try:
            self._subscriptions[customer_id] = await self.store.subscribe(
                REQUESTS,
                {"customerId": customer_id, "status": RequestStatus.SCHEDULED.value},
                self._on_snapshot,
            )
        except StoreError as e:
            logger.error("scheduled_watch_failed", customer_id=customer_id, error=str(e))
            return
        logger.info("scheduled_watch_started", customer_id=customer_id)

    async def stop(self, customer_id: str | None = None) -> None:
        """Stop watching one customer, or everyone."""
        customer_ids = [customer_id] if customer_id else list(self._subscriptions)
        for cid in customer_ids:
            subscription = self._subscriptions.pop(cid, None)
            if subscription is not None:
                await subscription.close()

    async def activate(self, request_id: str) -> bool:
        """Activate one request. Returns False if it was no longer scheduled."""
        try:
            await self.lifecycle.activate_scheduled(request_id)
        except RequestUnavailableError:
            return False
        logger.info("scheduled_request_activated", request_id=request_id)
        return True

    async def sweep(self) -> list[str]:
        """Activate every due scheduled request. Returns the activated ids."""
        documents = await self.store.query(REQUESTS, {"status": RequestStatus.SCHEDULED.value})
        return await self._activate_due(documents)

    async def reschedule(self, request_id: str, scheduled_at: datetime) -> DeliveryRequest:
        """
        Move a scheduled request to a new time.

        Raises:
            InvalidTransitionError: If it is no longer scheduled
        """
        scheduled_at = as_utc(scheduled_at)
        try:
            document = await self.store.update(
                REQUESTS,
                request_id,
                {
                    "scheduledAt": scheduled_at.isoformat(),
                    "rescheduledAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
                expect={"status": RequestStatus.SCHEDULED.value},
            )
        except PreconditionFailedError:
            raise InvalidTransitionError(
                f"Request {request_id} is no longer scheduled", request_id=request_id
            ) from None

        logger.info("scheduled_request_rescheduled", request_id=request_id, scheduled_at=scheduled_at.isoformat())
        return DeliveryRequest.model_validate(document)

    async def scheduled_for(self, customer_id: str) -> list[DeliveryRequest]:
        """A customer's scheduled requests, soonest first."""
        documents = await self.store.query(
            REQUESTS,
            {"customerId": customer_id, "status": RequestStatus.SCHEDULED.value},
        )
        requests = [DeliveryRequest.model_validate(document) for document in documents]
        return sorted(requests, key=lambda r: as_utc(r.scheduled_at or self.clock()))

    async def _on_snapshot(self, documents: list[dict[str, Any]]) -> None:
        await self._activate_due(documents)

    async def _activate_due(self, documents: list[dict[str, Any]]) -> list[str]:
        now = self.clock()
        activated: list[str] = []
        for document in documents:
            try:
                request = DeliveryRequest.model_validate(document)
            except ValidationError as e:
                logger.warning("scheduled_document_invalid", request_id=document.get("id"), error=str(e))
                continue
            try:
                if is_due(request, now, self.lead) and await self.activate(request.id):
                    activated.append(request.id)
            except Exception as e:
                logger.error(
                    "scheduled_activation_failed",
                    request_id=request.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return activated
