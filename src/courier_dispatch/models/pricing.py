"""Pricing models."""

from pydantic import BaseModel, Field


class RateTable(BaseModel):
    """Per-km vehicle rates and minimum charge for one courier."""

    vehicle_rates: dict[str, int]
    minimum_charge: int = Field(ge=0)
    is_default: bool = False


class Quote(BaseModel):
    """Price of a delivery and the driver's share of it."""

    courier_id: str | None
    vehicle_type: str
    pricing_key: str
    rate_per_km: int
    distance_km: float
    minimum_charge: int
    total: int
    driver_earnings: int
    is_default: bool = False
