"""
Demo driver roster so a fresh deployment can run assignments.
Run: python -m lastmile.seed   (or set SEED_DEMO_DRIVERS=true for the API)
"""
import asyncio
import logging
import sys

from lastmile.db import PostgresOrderStore, close_pool, get_pool, init_schema
from lastmile.errors import DuplicateDriverError
from lastmile.models import NewDriver
from lastmile.store import OrderStore

logger = logging.getLogger(__name__)

DEMO_DRIVERS = [
    NewDriver(name="John Driver", phone="9876543210", current_lat=17.3850, current_lng=78.4867),
    NewDriver(name="Jane Driver", phone="9876543211", current_lat=17.3851, current_lng=78.4868),
]


async def seed_demo_drivers(store: OrderStore) -> int:
    """Insert the demo drivers that are not registered yet. Returns how many were added."""
    added = 0
    for new_driver in DEMO_DRIVERS:
        try:
            driver = await store.create_driver(new_driver)
        except DuplicateDriverError:
            continue
        logger.info("Seeded driver %s (%s)", driver.id, driver.name)
        added += 1
    return added


async def _seed_postgres() -> int:
    pool = await get_pool()
    try:
        await init_schema(pool)
        return await seed_demo_drivers(PostgresOrderStore(pool))
    finally:
        await close_pool()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    added = asyncio.run(_seed_postgres())
    logger.info("Seeded %d demo driver(s)", added)


if __name__ == "__main__":
    main()
