"""Driver models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from courier_dispatch.models.base import DocumentModel


class DriverStatus(str, Enum):
    """Account approval states."""

    PENDING = "pending"
    APPROVED = "approved"
    SUSPENDED = "suspended"


class Availability(BaseModel):
    """
    A driver's online flag and current ride, written as one unit.

    ``is_available`` is never stored independently: it is derived here and
    written alongside ``current_ride_id`` by ``as_fields``.
    """

    model_config = ConfigDict(frozen=True)

    is_online: bool = False
    current_ride_id: str | None = None

    @property
    def is_available(self) -> bool:
        """Check if driver can be offered new requests."""
        return self.is_online and self.current_ride_id is None

    def online(self) -> "Availability":
        return Availability(is_online=True, current_ride_id=self.current_ride_id)

    def offline(self) -> "Availability":
        return Availability(is_online=False, current_ride_id=self.current_ride_id)

    def busy(self, ride_id: str) -> "Availability":
        return Availability(is_online=self.is_online, current_ride_id=ride_id)

    def free(self) -> "Availability":
        return Availability(is_online=self.is_online, current_ride_id=None)

    def as_fields(self) -> dict[str, Any]:
        """Stored field values for this availability."""
        return {
            "isOnline": self.is_online,
            "isAvailable": self.is_available,
            "currentRideId": self.current_ride_id,
        }


class Driver(DocumentModel):
    """Delivery driver profile."""

    id: str
    uid: str | None = None
    full_name: str | None = None
    phone_number: str | None = None
    vehicle_number: str | None = None
    courier_id: str
    vehicle_type: str
    status: DriverStatus = DriverStatus.PENDING

    is_online: bool = False
    is_available: bool = False
    current_ride_id: str | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def availability(self) -> Availability:
        return Availability(is_online=self.is_online, current_ride_id=self.current_ride_id)

    @property
    def is_approved(self) -> bool:
        return self.status == DriverStatus.APPROVED

    def with_availability(self, availability: Availability) -> "Driver":
        """Copy of this driver carrying the given availability."""
        return self.model_copy(
            update={
                "is_online": availability.is_online,
                "is_available": availability.is_available,
                "current_ride_id": availability.current_ride_id,
            }
        )
