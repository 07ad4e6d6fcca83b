"""Pricing rules: per-courier vehicle rates with a minimum charge."""

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from courier_dispatch.exceptions import StoreError
from courier_dispatch.models.pricing import Quote, RateTable
from courier_dispatch.state.documents import COURIER_PRICING, SERVER_TIMESTAMP, DocumentStore
from courier_dispatch.utils.logging import get_logger

logger = get_logger(__name__)

# Share of the delivery total paid to the driver, everywhere in the system.
DRIVER_SHARE = Decimal("0.8")

DEFAULT_RATES: dict[str, int] = {
    "bike": 50,
    "tuk": 70,
    "car": 120,
    "miniLorry": 160,
    "lorry": 250,
    "carrier": 700,
}

FALLBACK_PRICING_KEY = "bike"

# Vehicle type names as shown to users mapped to rate table keys
VEHICLE_PRICING_KEYS: dict[str, str] = {
    "Bike": "bike",
    "Tuk": "tuk",
    "Car": "car",
    "Mini-Lorry": "miniLorry",
    "Truck": "lorry",
    "Lorry": "lorry",
    "Carrier": "carrier",
}


def round_half_up(value: Decimal) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def driver_share(total: int | Decimal) -> int:
    """Driver earnings for a delivery total."""
    return round_half_up(Decimal(total) * DRIVER_SHARE)


def pricing_key(vehicle_type: str | None) -> str:
    """Rate table key for a vehicle type, falling back to bike."""
    if not vehicle_type:
        return FALLBACK_PRICING_KEY
    if vehicle_type in VEHICLE_PRICING_KEYS:
        return VEHICLE_PRICING_KEYS[vehicle_type]
    if vehicle_type in DEFAULT_RATES:
        return vehicle_type
    return FALLBACK_PRICING_KEY


def calculate_quote(
    rate_table: RateTable,
    vehicle_type: str,
    distance_km: float,
    courier_id: str | None = None,
) -> Quote:
    """
    Price a delivery against a rate table.

    total = max(rate * distance, minimum charge), rounded;
    driver earnings = round(total * DRIVER_SHARE).

    Raises:
        ValueError: If the distance is negative or not finite
    """
    if not math.isfinite(distance_km) or distance_km < 0:
        raise ValueError(f"distance_km must be a non-negative number, got {distance_km}")

    key = pricing_key(vehicle_type)
    rate = (
        rate_table.vehicle_rates.get(key)
        or DEFAULT_RATES.get(key)
        or DEFAULT_RATES[FALLBACK_PRICING_KEY]
    )

    calculated = Decimal(rate) * Decimal(str(distance_km))
    total = round_half_up(max(calculated, Decimal(rate_table.minimum_charge)))

    return Quote(
        courier_id=courier_id,
        vehicle_type=vehicle_type,
        pricing_key=key,
        rate_per_km=rate,
        distance_km=distance_km,
        minimum_charge=rate_table.minimum_charge,
        total=total,
        driver_earnings=driver_share(total),
        is_default=rate_table.is_default,
    )


class PricingRulesProvider:
    """Quotes deliveries using each courier's rate table."""

    def __init__(self, store: DocumentStore, default_minimum_charge: int = 300):
        self.store = store
        self.default_minimum_charge = default_minimum_charge

    def default_rate_table(self) -> RateTable:
        """Rate table used when a courier has none."""
        return RateTable(
            vehicle_rates=dict(DEFAULT_RATES),
            minimum_charge=self.default_minimum_charge,
            is_default=True,
        )

    async def rate_table(self, courier_id: str | None) -> RateTable:
        """
        Fetch a courier's rate table merged over the defaults.

        Falls back to the default table when the courier has none or the
        store cannot be read.
        """
        if not courier_id:
            logger.warning("pricing_without_courier")
            return self.default_rate_table()

        try:
            data = await self.store.read(COURIER_PRICING, courier_id)
        except StoreError as e:
            logger.error("courier_pricing_read_failed", courier_id=courier_id, error=str(e))
            return self.default_rate_table()

        if not data:
            logger.info("courier_pricing_default", courier_id=courier_id)
            return self.default_rate_table()

        vehicle_rates = {**DEFAULT_RATES, **(data.get("vehicleRates") or {})}
        return RateTable(
            vehicle_rates=vehicle_rates,
            minimum_charge=data.get("minimumCharge") or self.default_minimum_charge,
        )

    async def quote(
        self,
        courier_id: str | None,
        vehicle_type: str,
        distance_km: float,
    ) -> Quote:
        """Price a delivery for a courier."""
        rate_table = await self.rate_table(courier_id)
        quote = calculate_quote(rate_table, vehicle_type, distance_km, courier_id=courier_id)

        logger.debug(
            "delivery_quoted",
            courier_id=courier_id,
            vehicle_type=vehicle_type,
            distance_km=distance_km,
            total=quote.total,
            driver_earnings=quote.driver_earnings,
        )
        return quote

    async def set_rate_table(
        self,
        courier_id: str,
        vehicle_rates: dict[str, int],
        minimum_charge: int,
    ) -> None:
        """Create or replace a courier's custom rates."""
        unknown = set(vehicle_rates) - set(DEFAULT_RATES)
        if unknown:
            raise ValueError(f"Unknown vehicle rate keys: {sorted(unknown)}")
        if minimum_charge < 0 or any(rate < 0 for rate in vehicle_rates.values()):
            raise ValueError("Rates and minimum charge must be non-negative")

        fields: dict[str, Any] = {
            "vehicleRates": vehicle_rates,
            "minimumCharge": minimum_charge,
            "updatedAt": SERVER_TIMESTAMP,
        }
        await self.store.create(COURIER_PRICING, fields, doc_id=courier_id)
        logger.info("courier_pricing_updated", courier_id=courier_id)
