"""Live position publishing while a driver holds a ride."""

from datetime import datetime
from typing import Callable

from courier_dispatch.config import Settings, get_settings
from courier_dispatch.exceptions import PermissionDeniedError, PresenceError, StoreError
from courier_dispatch.models.location import LocationFix, TrackingStatus
from courier_dispatch.services.device import PermissionProvider, PositionSource, WatchHandle
from courier_dispatch.state.documents import REQUESTS, SERVER_TIMESTAMP, DocumentStore, utcnow
from courier_dispatch.state.presence import PresenceChannel, driver_location_path
from courier_dispatch.utils.geo import haversine_m
from courier_dispatch.utils.logging import get_logger

logger = get_logger(__name__)

BACKGROUND_DENIED_WARNING = "background_location_denied"


class LocationTrackingSession:
    """
    Publishes a driver's position for one ride.

    A fix is published when at least ``location_min_interval_seconds`` have
    passed since the last publish or the driver moved at least
    ``location_min_distance_meters``. When the presence channel rejects a
    publish the position is written onto the request document instead.
    """

    def __init__(
        self,
        presence: PresenceChannel,
        store: DocumentStore,
        permissions: PermissionProvider,
        positions: PositionSource,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.presence = presence
        self.store = store
        self.permissions = permissions
        self.positions = positions
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

        self.ride_id: str | None = None
        self.driver_id: str | None = None
        self.last_fix: LocationFix | None = None
        self.last_published_at: datetime | None = None
        self.using_fallback = False
        self._handle: WatchHandle | None = None
        self._tracking = False

    @property
    def is_tracking(self) -> bool:
        return self._tracking

    @property
    def path(self) -> str | None:
        if self.ride_id is None or self.driver_id is None:
            return None
        return driver_location_path(self.ride_id, self.driver_id)

    async def start(self, ride_id: str, driver_id: str) -> list[str]:
        """
        Begin publishing positions for a ride.

        Returns warnings the driver should see. Background permission is
        optional; foreground permission is not.

        Raises:
            PermissionDeniedError: If foreground location is refused
        """
        if self._tracking:
            if self.ride_id == ride_id and self.driver_id == driver_id:
                logger.info("tracking_already_active", ride_id=ride_id, driver_id=driver_id)
                return []
            await self.stop()

        if not await self.permissions.request_foreground():
            logger.warning("tracking_permission_denied", ride_id=ride_id, driver_id=driver_id)
            raise PermissionDeniedError("location")

        warnings: list[str] = []
        if not await self.permissions.request_background():
            logger.warning("background_location_denied", ride_id=ride_id, driver_id=driver_id)
            warnings.append(BACKGROUND_DENIED_WARNING)

        self.ride_id = ride_id
        self.driver_id = driver_id
        self.last_fix = None
        self.last_published_at = None
        self.using_fallback = False
        self._tracking = True

        try:
            await self.presence.on_disconnect_cleanup(self.path)
        except PresenceError as e:
            logger.warning("presence_cleanup_registration_failed", path=self.path, error=str(e))

        self._handle = await self.positions.watch(self._on_fix)

        fix = await self.positions.current()
        if fix is not None:
            await self.publish(fix)

        logger.info("tracking_started", ride_id=ride_id, driver_id=driver_id)
        return warnings

    async def stop(self) -> None:
        """Stop publishing and remove the live position. Safe to repeat."""
        if not self._tracking:
            return

        path = self.path
        self._tracking = False
        if self._handle is not None:
            self._handle.remove()
            self._handle = None

        try:
            await self.presence.remove(path)
        except PresenceError as e:
            logger.warning("presence_remove_failed", path=path, error=str(e))

        logger.info("tracking_stopped", ride_id=self.ride_id, driver_id=self.driver_id)
        self.ride_id = None
        self.driver_id = None
        self.last_fix = None
        self.using_fallback = False

    def should_publish(self, fix: LocationFix) -> bool:
        """Check the fix against the time and distance thresholds."""
        if self.last_fix is None:
            return True

        elapsed = (fix.timestamp - self.last_fix.timestamp).total_seconds()
        if elapsed >= self.settings.location_min_interval_seconds:
            return True

        moved = haversine_m(
            self.last_fix.latitude,
            self.last_fix.longitude,
            fix.latitude,
            fix.longitude,
        )
        return moved >= self.settings.location_min_distance_meters

    async def publish(self, fix: LocationFix) -> None:
        """Publish a fix, falling back to the request document."""
        if not self._tracking:
            return

        try:
            await self.presence.publish(self.path, fix.to_presence())
            self.using_fallback = False
        except PresenceError as e:
            logger.warning("presence_publish_failed", path=self.path, error=str(e))
            try:
                await self.store.update(
                    REQUESTS,
                    self.ride_id,
                    {
                        "currentDriverLocation": fix.to_request_fallback(),
                        "updatedAt": SERVER_TIMESTAMP,
                    },
                )
                self.using_fallback = True
            except StoreError as store_error:
                logger.error(
                    "location_fallback_failed",
                    ride_id=self.ride_id,
                    error=str(store_error),
                )
                return

        self.last_fix = fix
        self.last_published_at = self.clock()

    def status(self) -> TrackingStatus:
        return TrackingStatus(
            is_tracking=self._tracking,
            ride_id=self.ride_id,
            driver_id=self.driver_id,
            last_published_at=self.last_published_at,
            using_fallback=self.using_fallback,
        )

    async def _on_fix(self, fix: LocationFix) -> None:
        if self._tracking and self.should_publish(fix):
            await self.publish(fix)
