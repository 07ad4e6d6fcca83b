"""Live position models."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class LocationFix(BaseModel):
    """One position sample from the driver's device."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    heading: float = 0.0
    speed: float = 0.0
    accuracy: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_presence(self) -> dict[str, Any]:
        """Value published on the presence channel."""
        return self.model_dump(mode="json")

    def to_request_fallback(self) -> dict[str, Any]:
        """Value written onto the request when the presence channel rejects it."""
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "heading": self.heading,
            "updatedAt": self.timestamp.isoformat(),
        }


class TrackingStatus(BaseModel):
    """Snapshot of a location tracking session."""

    is_tracking: bool
    ride_id: str | None = None
    driver_id: str | None = None
    last_published_at: datetime | None = None
    using_fallback: bool = False
