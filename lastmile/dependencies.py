"""
FastAPI dependencies: the order store backend and the lifecycle service built on it.
"""
from fastapi import Depends

from lastmile.audit import AuditRecorder
from lastmile.config import settings
from lastmile.db import PostgresOrderStore, get_pool, init_schema
from lastmile.lifecycle import OrderLifecycleService
from lastmile.seed import seed_demo_drivers
from lastmile.store import InMemoryOrderStore, OrderStore

_store: OrderStore | None = None


async def get_store() -> OrderStore:
    global _store
    if _store is None:
        if settings.store_backend == "memory":
            _store = InMemoryOrderStore()
        else:
            pool = await get_pool()
            await init_schema(pool)
            _store = PostgresOrderStore(pool)
        if settings.seed_demo_drivers:
            await seed_demo_drivers(_store)
    return _store


def reset_store() -> None:
    global _store
    _store = None


def build_service(store: OrderStore) -> OrderLifecycleService:
    sink = store.insert_status_log if isinstance(store, PostgresOrderStore) else None
    return OrderLifecycleService(
        store=store,
        audit=AuditRecorder(sink=sink),
        allow_unknown_statuses=settings.allow_unknown_status_transitions,
    )


async def get_service(store: OrderStore = Depends(get_store)) -> OrderLifecycleService:
    return build_service(store)
