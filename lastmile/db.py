"""
Async Postgres: orders, drivers, status log, courier outbox and callback logs.
A status change and its outbox record are written in one transaction, so the
worker can deliver the courier callback later without losing it on a crash.
"""
import json
from collections.abc import Iterable

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from lastmile.config import settings
from lastmile.errors import DriverNotFoundError, DuplicateDriverError, DuplicateOrderError, OrderNotFoundError
from lastmile.models import (
    CallbackAttempt,
    CourierCallbackEvent,
    Driver,
    NewDriver,
    NewOrder,
    Order,
    TransitionLogEntry,
)
from lastmile.order_state import OrderStatus

_pool: asyncpg.Pool | None = None

ORDER_COLUMNS = (
    "id, order_code, customer_name, phone, address, pincode, lat, lng, slot_date, slot_time, "
    "status, assigned_driver_id, created_at, updated_at"
)
DRIVER_COLUMNS = "id, name, phone, current_lat, current_lng"
# A relay that crashed mid-batch leaves its claim behind; other relays take over after this long.
OUTBOX_CLAIM_TIMEOUT_SEC = 300.0


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS drivers (
                id SERIAL PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                phone VARCHAR(10) NOT NULL UNIQUE,
                current_lat DOUBLE PRECISION,
                current_lng DOUBLE PRECISION,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id SERIAL PRIMARY KEY,
                order_code VARCHAR(255) NOT NULL UNIQUE,
                customer_name VARCHAR(255) NOT NULL,
                phone VARCHAR(10) NOT NULL,
                address TEXT NOT NULL,
                pincode VARCHAR(6) NOT NULL,
                lat DOUBLE PRECISION NOT NULL,
                lng DOUBLE PRECISION NOT NULL,
                slot_date DATE,
                slot_time VARCHAR(50),
                status VARCHAR(50) NOT NULL DEFAULT 'Pending Slot Selection',
                assigned_driver_id INT REFERENCES drivers(id),
                claim_token VARCHAR(64),
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_status_log (
                entry_id VARCHAR(32) PRIMARY KEY,
                order_id INT NOT NULL REFERENCES orders(id),
                old_status VARCHAR(50),
                new_status VARCHAR(50) NOT NULL,
                actor_id INT,
                created_at TIMESTAMPTZ NOT NULL
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS courier_outbox (
                event_id VARCHAR(32) PRIMARY KEY,
                order_id INT NOT NULL REFERENCES orders(id),
                payload JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                relay_token VARCHAR(32),
                relay_claimed_at TIMESTAMPTZ,
                published_at TIMESTAMPTZ
            );
        """)
        await conn.execute("""
            ALTER TABLE courier_outbox ADD COLUMN IF NOT EXISTS relay_token VARCHAR(32);
            ALTER TABLE courier_outbox ADD COLUMN IF NOT EXISTS relay_claimed_at TIMESTAMPTZ;
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_courier_outbox_unpublished
            ON courier_outbox(created_at) WHERE published_at IS NULL;
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS courier_callback_log (
                id BIGSERIAL PRIMARY KEY,
                order_code VARCHAR(255) NOT NULL,
                status VARCHAR(50) NOT NULL,
                success BOOLEAN NOT NULL,
                attempt INT NOT NULL,
                response JSONB,
                created_at TIMESTAMPTZ NOT NULL
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS courier_dead_letters (
                event_id VARCHAR(32) PRIMARY KEY,
                payload JSONB NOT NULL,
                attempts INT NOT NULL,
                last_error TEXT,
                failed_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)


def _order_from_row(row: asyncpg.Record) -> Order:
    return Order(**{k: row[k] for k in ORDER_COLUMNS.split(", ")})


class PostgresOrderStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def load_pending_orders(self) -> list[Order]:
        rows = await self.pool.fetch(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE status = $1 AND claim_token IS NULL ORDER BY id;",
            OrderStatus.SLOT_SELECTED.value,
        )
        return [_order_from_row(r) for r in rows]

    async def load_drivers(self) -> list[Driver]:
        rows = await self.pool.fetch(f"SELECT {DRIVER_COLUMNS} FROM drivers ORDER BY id;")
        return [Driver(**dict(r)) for r in rows]

    async def get_driver(self, driver_id: int) -> Driver:
        row = await self.pool.fetchrow(f"SELECT {DRIVER_COLUMNS} FROM drivers WHERE id = $1;", driver_id)
        if row is None:
            raise DriverNotFoundError(driver_id)
        return Driver(**dict(row))

    async def create_driver(self, new_driver: NewDriver) -> Driver:
        try:
            row = await self.pool.fetchrow(
                f"""
                INSERT INTO drivers (name, phone, current_lat, current_lng)
                VALUES ($1, $2, $3, $4)
                RETURNING {DRIVER_COLUMNS};
                """,
                new_driver.name,
                new_driver.phone,
                new_driver.current_lat,
                new_driver.current_lng,
            )
        except UniqueViolationError:
            raise DuplicateDriverError(new_driver.phone)
        return Driver(**dict(row))

    async def update_driver_location(self, driver_id: int, lat: float, lng: float) -> Driver:
        row = await self.pool.fetchrow(
            f"""
            UPDATE drivers SET current_lat = $1, current_lng = $2, updated_at = NOW()
            WHERE id = $3
            RETURNING {DRIVER_COLUMNS};
            """,
            lat,
            lng,
            driver_id,
        )
        if row is None:
            raise DriverNotFoundError(driver_id)
        return Driver(**dict(row))

    async def get_order(self, order_id: int) -> Order:
        row = await self.pool.fetchrow(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = $1;", order_id)
        if row is None:
            raise OrderNotFoundError(order_id)
        return _order_from_row(row)

    async def create_order(self, new_order: NewOrder) -> Order:
        try:
            row = await self.pool.fetchrow(
                f"""
                INSERT INTO orders (order_code, customer_name, phone, address, pincode, lat, lng, status)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING {ORDER_COLUMNS};
                """,
                new_order.order_code,
                new_order.customer_name,
                new_order.phone,
                new_order.address,
                new_order.pincode,
                new_order.lat,
                new_order.lng,
                OrderStatus.PENDING_SLOT_SELECTION.value,
            )
        except UniqueViolationError:
            raise DuplicateOrderError(new_order.order_code)
        return _order_from_row(row)

    async def save_order(self, order: Order, outbox: Iterable[CourierCallbackEvent] = ()) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE orders
                    SET status = $1, assigned_driver_id = $2, slot_date = $3, slot_time = $4, updated_at = $5
                    WHERE id = $6;
                    """,
                    order.status,
                    order.assigned_driver_id,
                    order.slot_date,
                    order.slot_time,
                    order.updated_at,
                    order.id,
                )
                if result == "UPDATE 0":
                    raise OrderNotFoundError(order.id)
                for event in outbox:
                    await conn.execute(
                        "INSERT INTO courier_outbox (event_id, order_id, payload) VALUES ($1, $2, $3::jsonb);",
                        event.event_id,
                        event.order_id,
                        event.model_dump_json(),
                    )

    async def claim_orders_for_assignment(self, claim_token: str) -> list[Order]:
        """Mark every unclaimed Slot Selected order with claim_token; concurrent runs never share an order."""
        rows = await self.pool.fetch(
            f"""
            UPDATE orders SET claim_token = $1
            WHERE id IN (
                SELECT id FROM orders
                WHERE status = $2 AND claim_token IS NULL
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {ORDER_COLUMNS};
            """,
            claim_token,
            OrderStatus.SLOT_SELECTED.value,
        )
        return sorted((_order_from_row(r) for r in rows), key=lambda o: o.id)

    async def release_claim(self, claim_token: str) -> None:
        await self.pool.execute("UPDATE orders SET claim_token = NULL WHERE claim_token = $1;", claim_token)

    async def orders_for_driver(self, driver_id: int) -> list[Order]:
        rows = await self.pool.fetch(
            f"""
            SELECT {ORDER_COLUMNS} FROM orders
            WHERE assigned_driver_id = $1
            ORDER BY slot_date ASC NULLS LAST, slot_time ASC NULLS LAST;
            """,
            driver_id,
        )
        return [_order_from_row(r) for r in rows]

    async def orders_for_phone(self, phone: str) -> list[Order]:
        rows = await self.pool.fetch(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE phone = $1 ORDER BY created_at DESC, id DESC;",
            phone,
        )
        return [_order_from_row(r) for r in rows]

    async def claim_outbox(self, relay_token: str, limit: int = 100) -> list[CourierCallbackEvent]:
        """Stamp up to limit unpublished rows with relay_token; concurrent relays never share a row."""
        rows = await self.pool.fetch(
            """
            UPDATE courier_outbox SET relay_token = $1, relay_claimed_at = NOW()
            WHERE event_id IN (
                SELECT event_id FROM courier_outbox
                WHERE published_at IS NULL
                  AND (relay_token IS NULL OR relay_claimed_at < NOW() - make_interval(secs => $3))
                ORDER BY created_at ASC
                LIMIT $2
                FOR UPDATE SKIP LOCKED
            )
            RETURNING payload, created_at;
            """,
            relay_token,
            limit,
            OUTBOX_CLAIM_TIMEOUT_SEC,
        )
        rows = sorted(rows, key=lambda r: r["created_at"])
        return [CourierCallbackEvent.model_validate_json(r["payload"]) for r in rows]

    async def mark_outbox_published(self, event_ids: list[str]) -> None:
        if not event_ids:
            return
        await self.pool.execute(
            "UPDATE courier_outbox SET published_at = NOW() WHERE event_id = ANY($1::varchar[]);",
            event_ids,
        )

    async def release_outbox_claim(self, relay_token: str) -> None:
        await self.pool.execute(
            "UPDATE courier_outbox SET relay_token = NULL WHERE relay_token = $1 AND published_at IS NULL;",
            relay_token,
        )

    async def record_dead_letter(self, event: CourierCallbackEvent, error: str) -> None:
        await self.pool.execute(
            """
            INSERT INTO courier_dead_letters (event_id, payload, attempts, last_error)
            VALUES ($1, $2::jsonb, $3, $4)
            ON CONFLICT (event_id) DO UPDATE
            SET attempts = EXCLUDED.attempts, last_error = EXCLUDED.last_error, failed_at = NOW();
            """,
            event.event_id,
            event.model_dump_json(),
            event.attempts,
            error,
        )

    async def insert_status_log(self, entry: TransitionLogEntry) -> None:
        await self.pool.execute(
            """
            INSERT INTO order_status_log (entry_id, order_id, old_status, new_status, actor_id, created_at)
            VALUES ($1, $2, $3, $4, $5, $6);
            """,
            entry.entry_id,
            entry.order_id,
            entry.old_status,
            entry.new_status,
            entry.actor_id,
            entry.timestamp,
        )

    async def insert_callback_attempt(self, attempt: CallbackAttempt) -> None:
        await self.pool.execute(
            """
            INSERT INTO courier_callback_log (order_code, status, success, attempt, response, created_at)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6);
            """,
            attempt.order_id,
            attempt.status,
            attempt.success,
            attempt.attempt,
            json.dumps(attempt.response),
            attempt.timestamp,
        )
