"""Per-driver subscription to open requests in the driver's pool."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from courier_dispatch.config import Settings, get_settings
from courier_dispatch.exceptions import StoreError
from courier_dispatch.models.driver import Driver
from courier_dispatch.models.request import DeliveryRequest, RequestStatus
from courier_dispatch.services.eligibility import ineligibility
from courier_dispatch.state.documents import REQUESTS, DocumentStore, Subscription, dispatch_callback, utcnow
from courier_dispatch.utils.logging import get_logger

logger = get_logger(__name__)

NewRequestCallback = Callable[[DeliveryRequest], Any]


class DeliveryRequestManager:
    """
    Delivers each eligible searching request to a driver at most once.

    The notified set lives only as long as one listening session: ``start``
    after ``stop`` begins with an empty set.
    """

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.max_age = timedelta(seconds=self.settings.request_max_age_seconds)

        self.driver: Driver | None = None
        self.on_new_request: NewRequestCallback | None = None
        self.notified: set[str] = set()
        self._subscription: Subscription | None = None
        self._listening = False

    @property
    def is_listening(self) -> bool:
        return self._listening

    async def start(self, driver: Driver, on_new_request: NewRequestCallback) -> None:
        """
        Subscribe to searching requests for the driver's courier and vehicle.

        Calling again while listening is a no-op. A subscription failure is
        logged and leaves the manager stopped.
        """
        if self._listening:
            logger.info("request_manager_already_started", driver_id=driver.id)
            return

        self.driver = driver
        self.on_new_request = on_new_request
        self.notified = set()
        self._listening = True

        filters = {
            "status": RequestStatus.SEARCHING.value,
            "selectedCourier": driver.courier_id,
            "rideDetails.vehicleType": driver.vehicle_type,
        }

        try:
            self._subscription = await self.store.subscribe(
                REQUESTS,
                filters,
                self._on_snapshot,
                self._on_error,
            )
        except StoreError as e:
            self._listening = False
            logger.error("request_subscription_failed", driver_id=driver.id, error=str(e))
            return

        logger.info(
            "request_manager_started",
            driver_id=driver.id,
            courier_id=driver.courier_id,
            vehicle_type=driver.vehicle_type,
        )

    async def stop(self) -> None:
        """Unsubscribe and forget which requests were shown."""
        subscription, self._subscription = self._subscription, None
        was_listening = self._listening
        self._listening = False
        self.notified.clear()

        if subscription is not None:
            await subscription.close()
        if was_listening:
            logger.info("request_manager_stopped", driver_id=self.driver.id if self.driver else None)

    def update_driver(self, **fields: Any) -> None:
        """Refresh the local copy of the driver used for eligibility."""
        if self.driver is None:
            return
        self.driver = self.driver.model_copy(update=fields)

    def mark_accepted(self, request_id: str) -> None:
        self.notified.add(request_id)

    def mark_declined(self, request_id: str) -> None:
        self.notified.add(request_id)

    def process(self, request: DeliveryRequest) -> bool:
        """Offer one request to the driver if eligible. Returns True if offered."""
        if self.driver is None or self.on_new_request is None:
            return False

        reason = ineligibility(
            self.driver,
            request,
            self.notified,
            now=self.clock(),
            max_age=self.max_age,
        )
        if reason is not None:
            logger.debug(
                "request_skipped",
                driver_id=self.driver.id,
                request_id=request.id,
                reason=reason.value,
            )
            return False

        self.notified.add(request.id)
        logger.info("request_offered", driver_id=self.driver.id, request_id=request.id)
        dispatch_callback(self.on_new_request, request)
        return True

    def status(self) -> dict[str, Any]:
        """Listening state for diagnostics."""
        return {
            "is_listening": self._listening,
            "driver_id": self.driver.id if self.driver else None,
            "is_available": self.driver.is_available if self.driver else False,
            "current_ride_id": self.driver.current_ride_id if self.driver else None,
            "notified_count": len(self.notified),
        }

    def _on_snapshot(self, documents: list[dict[str, Any]]) -> None:
        if not self._listening:
            return
        for document in documents:
            try:
                request = DeliveryRequest.model_validate(document)
            except ValidationError as e:
                logger.warning(
                    "request_document_invalid",
                    request_id=document.get("id"),
                    error=str(e),
                )
                continue
            self.process(request)

    def _on_error(self, error: Exception) -> None:
        self._listening = False
        self._subscription = None
        logger.error(
            "request_subscription_lost",
            driver_id=self.driver.id if self.driver else None,
            error=str(error),
        )


class RequestPrompt:
    """
    An offered request waiting for the driver's answer.

    If neither ``resolve`` nor ``close`` is called before the timeout,
    ``on_timeout`` runs with the request, which normally declines it.
    """

    def __init__(
        self,
        request: DeliveryRequest,
        timeout: float,
        on_timeout: Callable[[DeliveryRequest], Awaitable[None]],
    ):
        self.request = request
        self.timeout = timeout
        self.on_timeout = on_timeout
        self.expired = False
        self._task: asyncio.Task | None = None

    @property
    def is_open(self) -> bool:
        return self._task is not None and not self._task.done()

    def open(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._expire())

    def resolve(self) -> None:
        """The driver answered in time."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    close = resolve

    async def _expire(self) -> None:
        await asyncio.sleep(self.timeout)
        self.expired = True
        logger.info("request_prompt_expired", request_id=self.request.id, timeout=self.timeout)
        try:
            await self.on_timeout(self.request)
        except Exception as e:
            logger.error("request_prompt_timeout_failed", request_id=self.request.id, error=str(e))
