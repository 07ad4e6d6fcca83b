"""Reset all dispatch state in Redis (useful for testing)."""

import asyncio

from courier_dispatch.config import get_settings
from courier_dispatch.state.manager import StateManager


async def reset_all_state() -> None:
    """Delete every key in the dispatch namespace."""
    settings = get_settings()
    state_manager = StateManager(settings.redis_url)

    print(f"\n⚠️  WARNING: This will delete ALL {state_manager.namespace}:* keys from {settings.redis_url}!")
    response = input("Are you sure? (yes/no): ")

    if response.lower() != "yes":
        print("Cancelled.")
        return

    print("\nResetting state...")

    client = await state_manager.client()
    deleted = 0
    async for key in client.scan_iter(match=state_manager.key("*")):
        await client.delete(key)
        deleted += 1

    await state_manager.disconnect()

    print(f"✓ {deleted} keys cleared from Redis\n")


if __name__ == "__main__":
    asyncio.run(reset_all_state())
