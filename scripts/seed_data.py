"""Seed couriers' rate tables and drivers into the Redis store."""

import asyncio

from courier_dispatch.config import get_settings
from courier_dispatch.models.driver import Availability
from courier_dispatch.services.pricing import PricingRulesProvider
from courier_dispatch.state.documents import DRIVERS, SERVER_TIMESTAMP, RedisDocumentStore
from courier_dispatch.state.manager import StateManager

COURIER_RATES = {
    "courier-express": ({"bike": 55, "tuk": 75, "car": 130}, 350),
    "courier-cargo": ({"miniLorry": 170, "lorry": 260, "carrier": 720}, 1500),
}

DRIVERS_BY_COURIER = {
    "courier-express": [
        ("driver-nimal", "Nimal Silva", "Bike", "WP-BAA-1021"),
        ("driver-kasun", "Kasun Fernando", "Tuk", "WP-QA-4410"),
        ("driver-amaya", "Amaya Perera", "Car", "WP-CAB-7781"),
    ],
    "courier-cargo": [
        ("driver-ruwan", "Ruwan Jayasinghe", "Mini-Lorry", "WP-LH-2204"),
        ("driver-saman", "Saman Kumara", "Lorry", "WP-LJ-9910"),
    ],
}


async def seed_pricing(store: RedisDocumentStore) -> None:
    """Seed courier rate tables."""
    print("Seeding courier pricing...")

    pricing = PricingRulesProvider(store)
    for courier_id, (rates, minimum) in COURIER_RATES.items():
        await pricing.set_rate_table(courier_id, rates, minimum_charge=minimum)
        print(f"  ✓ {courier_id}: {rates} (minimum {minimum})")

    print("✓ Courier pricing seeded successfully\n")


async def seed_drivers(store: RedisDocumentStore) -> None:
    """Seed approved, offline drivers."""
    print("Seeding drivers...")

    for courier_id, drivers in DRIVERS_BY_COURIER.items():
        for driver_id, name, vehicle_type, vehicle_number in drivers:
            await store.create(
                DRIVERS,
                {
                    "fullName": name,
                    "vehicleType": vehicle_type,
                    "vehicleNumber": vehicle_number,
                    "courierId": courier_id,
                    "status": "approved",
                    **Availability().as_fields(),
                    "createdAt": SERVER_TIMESTAMP,
                },
                doc_id=driver_id,
            )
            print(f"  ✓ Added {name} ({vehicle_type}, {courier_id})")

    print("✓ Drivers seeded successfully\n")


async def main() -> None:
    """Run all seed functions."""
    print("\n" + "=" * 50)
    print("  Seeding Courier Dispatch Data")
    print("=" * 50 + "\n")

    settings = get_settings()
    state_manager = StateManager(settings.redis_url)
    await state_manager.connect()
    store = RedisDocumentStore(state_manager, max_retries=settings.store_max_retries)

    await seed_pricing(store)
    await seed_drivers(store)

    await state_manager.disconnect()

    print("=" * 50)
    print("  ✓ All data seeded successfully!")
    print("=" * 50 + "\n")


if __name__ == "__main__":
    asyncio.run(main())
