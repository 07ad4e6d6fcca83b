"""Tests for the pricing rules provider."""

import pytest

from courier_dispatch.models.pricing import RateTable
from courier_dispatch.services.pricing import (
    DEFAULT_RATES,
    DRIVER_SHARE,
    PricingRulesProvider,
    calculate_quote,
    driver_share,
    pricing_key,
)
from courier_dispatch.state.documents import COURIER_PRICING, MemoryDocumentStore


def test_minimum_charge_applies_to_short_trips() -> None:
    """Test that 50 * 5 km is lifted to the minimum charge."""
    table = RateTable(vehicle_rates=dict(DEFAULT_RATES), minimum_charge=300)

    quote = calculate_quote(table, "Bike", 5)

    assert quote.total == 300
    assert quote.driver_earnings == 240


def test_rate_times_distance_above_minimum() -> None:
    """Test that 50 * 20 km is 1000 with 800 to the driver."""
    table = RateTable(vehicle_rates=dict(DEFAULT_RATES), minimum_charge=300)

    quote = calculate_quote(table, "Bike", 20)

    assert quote.total == 1000
    assert quote.driver_earnings == 800
    assert quote.rate_per_km == 50


def test_total_is_rounded_half_up() -> None:
    """Test rounding of fractional totals."""
    table = RateTable(vehicle_rates={"car": 125}, minimum_charge=0)

    # 125 * 10.1 = 1262.5
    quote = calculate_quote(table, "Car", 10.1)

    assert quote.total == 1263
    assert quote.driver_earnings == driver_share(1263) == 1010


def test_negative_distance_rejected() -> None:
    table = RateTable(vehicle_rates=dict(DEFAULT_RATES), minimum_charge=300)

    with pytest.raises(ValueError):
        calculate_quote(table, "Bike", -1)


@pytest.mark.parametrize(
    "vehicle_type,key",
    [
        ("Bike", "bike"),
        ("Tuk", "tuk"),
        ("Mini-Lorry", "miniLorry"),
        ("Truck", "lorry"),
        ("Lorry", "lorry"),
        ("Carrier", "carrier"),
        ("miniLorry", "miniLorry"),
        ("Hovercraft", "bike"),
        ("", "bike"),
    ],
)
def test_pricing_key(vehicle_type: str, key: str) -> None:
    assert pricing_key(vehicle_type) == key


def test_driver_share_is_eighty_percent() -> None:
    assert str(DRIVER_SHARE) == "0.8"
    assert driver_share(300) == 240
    assert driver_share(333) == 266


@pytest.mark.asyncio
async def test_quote_uses_defaults_without_courier_rates(pricing: PricingRulesProvider) -> None:
    """Test that a courier with no rate table gets the default rates."""
    quote = await pricing.quote("courier-1", "Lorry", 10)

    assert quote.is_default is True
    assert quote.total == 2500
    assert quote.driver_earnings == 2000


@pytest.mark.asyncio
async def test_quote_uses_courier_rates(store: MemoryDocumentStore, pricing: PricingRulesProvider) -> None:
    """Test that courier rates override defaults and fill gaps from them."""
    await store.create(
        COURIER_PRICING,
        {"vehicleRates": {"bike": 60}, "minimumCharge": 500},
        doc_id="courier-1",
    )

    bike = await pricing.quote("courier-1", "Bike", 5)
    car = await pricing.quote("courier-1", "Car", 10)

    assert bike.total == 500
    assert bike.is_default is False
    assert car.rate_per_km == DEFAULT_RATES["car"]
    assert car.total == 1200


@pytest.mark.asyncio
async def test_set_rate_table(pricing: PricingRulesProvider) -> None:
    await pricing.set_rate_table("courier-2", {"tuk": 90}, minimum_charge=400)

    quote = await pricing.quote("courier-2", "Tuk", 10)

    assert quote.total == 900


@pytest.mark.asyncio
async def test_set_rate_table_rejects_unknown_keys(pricing: PricingRulesProvider) -> None:
    with pytest.raises(ValueError):
        await pricing.set_rate_table("courier-2", {"boat": 90}, minimum_charge=400)
