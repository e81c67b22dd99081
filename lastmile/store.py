"""
Persistence collaborator interface and the in-memory backend (dev server, tests).
The Postgres backend lives in lastmile.db.
"""
import asyncio
from collections.abc import Iterable
from datetime import date
from typing import Protocol

from lastmile.errors import DriverNotFoundError, DuplicateDriverError, DuplicateOrderError, OrderNotFoundError
from lastmile.models import CourierCallbackEvent, Driver, NewDriver, NewOrder, Order
from lastmile.order_state import OrderStatus


class OrderStore(Protocol):
    async def load_pending_orders(self) -> list[Order]: ...

    async def load_drivers(self) -> list[Driver]: ...

    async def get_driver(self, driver_id: int) -> Driver: ...

    async def create_driver(self, new_driver: NewDriver) -> Driver: ...

    async def update_driver_location(self, driver_id: int, lat: float, lng: float) -> Driver: ...

    async def get_order(self, order_id: int) -> Order: ...

    async def create_order(self, new_order: NewOrder) -> Order: ...

    async def save_order(self, order: Order, outbox: Iterable[CourierCallbackEvent] = ()) -> None: ...

    async def claim_orders_for_assignment(self, claim_token: str) -> list[Order]: ...

    async def release_claim(self, claim_token: str) -> None: ...

    async def orders_for_driver(self, driver_id: int) -> list[Order]: ...

    async def orders_for_phone(self, phone: str) -> list[Order]: ...

    async def claim_outbox(self, relay_token: str, limit: int = 100) -> list[CourierCallbackEvent]: ...

    async def mark_outbox_published(self, event_ids: list[str]) -> None: ...

    async def release_outbox_claim(self, relay_token: str) -> None: ...

    async def record_dead_letter(self, event: CourierCallbackEvent, error: str) -> None: ...


def slot_sort_key(order: Order) -> tuple[date, str]:
    return (order.slot_date or date.max, order.slot_time or "")


class InMemoryOrderStore:
    def __init__(self, orders: Iterable[Order] = (), drivers: Iterable[Driver] = ()):
        self._orders: dict[int, Order] = {o.id: o for o in orders}
        self._drivers: dict[int, Driver] = {d.id: d for d in drivers}
        self._claims: dict[int, str] = {}
        self._lock = asyncio.Lock()
        self.outbox: list[CourierCallbackEvent] = []
        self.published: set[str] = set()
        self._relay_claims: dict[str, str] = {}
        self.dead_letters: list[tuple[CourierCallbackEvent, str]] = []

    def add_driver(self, driver: Driver) -> None:
        self._drivers[driver.id] = driver

    async def get_driver(self, driver_id: int) -> Driver:
        try:
            return self._drivers[driver_id]
        except KeyError:
            raise DriverNotFoundError(driver_id) from None

    async def create_driver(self, new_driver: NewDriver) -> Driver:
        async with self._lock:
            if any(d.phone == new_driver.phone for d in self._drivers.values()):
                raise DuplicateDriverError(new_driver.phone)
            driver = Driver(id=max(self._drivers, default=0) + 1, **new_driver.model_dump())
            self._drivers[driver.id] = driver
            return driver

    async def update_driver_location(self, driver_id: int, lat: float, lng: float) -> Driver:
        driver = await self.get_driver(driver_id)
        updated = driver.model_copy(update={"current_lat": lat, "current_lng": lng})
        self._drivers[driver_id] = updated
        return updated

    async def load_pending_orders(self) -> list[Order]:
        return [
            o for o in self._orders.values()
            if o.status == OrderStatus.SLOT_SELECTED.value and o.id not in self._claims
        ]

    async def load_drivers(self) -> list[Driver]:
        return list(self._drivers.values())

    async def get_order(self, order_id: int) -> Order:
        try:
            return self._orders[order_id]
        except KeyError:
            raise OrderNotFoundError(order_id) from None

    async def create_order(self, new_order: NewOrder) -> Order:
        async with self._lock:
            if any(o.order_code == new_order.order_code for o in self._orders.values()):
                raise DuplicateOrderError(new_order.order_code)
            order = Order(id=max(self._orders, default=0) + 1, **new_order.model_dump())
            self._orders[order.id] = order
            return order

    async def save_order(self, order: Order, outbox: Iterable[CourierCallbackEvent] = ()) -> None:
        async with self._lock:
            if order.id not in self._orders:
                raise OrderNotFoundError(order.id)
            self._orders[order.id] = order
            self.outbox.extend(outbox)

    async def claim_orders_for_assignment(self, claim_token: str) -> list[Order]:
        async with self._lock:
            claimed = await self.load_pending_orders()
            for order in claimed:
                self._claims[order.id] = claim_token
            return claimed

    async def release_claim(self, claim_token: str) -> None:
        async with self._lock:
            for order_id in [k for k, v in self._claims.items() if v == claim_token]:
                del self._claims[order_id]

    async def orders_for_driver(self, driver_id: int) -> list[Order]:
        assigned = [o for o in self._orders.values() if o.assigned_driver_id == driver_id]
        return sorted(assigned, key=slot_sort_key)

    async def orders_for_phone(self, phone: str) -> list[Order]:
        matching = [o for o in self._orders.values() if o.phone == phone]
        return sorted(matching, key=lambda o: (o.created_at, o.id), reverse=True)

    async def claim_outbox(self, relay_token: str, limit: int = 100) -> list[CourierCallbackEvent]:
        async with self._lock:
            claimed = [
                e for e in self.outbox
                if e.event_id not in self.published and e.event_id not in self._relay_claims
            ][:limit]
            for event in claimed:
                self._relay_claims[event.event_id] = relay_token
            return claimed

    async def mark_outbox_published(self, event_ids: list[str]) -> None:
        async with self._lock:
            self.published.update(event_ids)
            for event_id in event_ids:
                self._relay_claims.pop(event_id, None)

    async def release_outbox_claim(self, relay_token: str) -> None:
        async with self._lock:
            for event_id in [k for k, v in self._relay_claims.items() if v == relay_token]:
                del self._relay_claims[event_id]

    async def record_dead_letter(self, event: CourierCallbackEvent, error: str) -> None:
        self.dead_letters.append((event, error))
