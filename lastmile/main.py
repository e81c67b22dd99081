import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import Response

from lastmile.config import settings
from lastmile.db import close_pool
from lastmile.dependencies import reset_store
from lastmile.metrics import (
    callback_queue_messages_delayed,
    callback_queue_messages_waiting,
    get_metrics_bytes,
    get_metrics_content_type,
)
from lastmile.redis_client import close_redis
from lastmile.routes import admin, assignments, customers, drivers, orders
from lastmile.sqs_client import get_queue_depth

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_redis()
    await close_pool()
    reset_store()


app = FastAPI(title="Last-mile Order Engine", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(assignments.router)
app.include_router(drivers.router)
app.include_router(customers.router)
app.include_router(admin.router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: transitions, assignments, SQS callback queue depth (when using SQS)."""
    if settings.sqs_queue_url:
        try:
            waiting, in_flight = await get_queue_depth()
            callback_queue_messages_waiting.set(waiting)
            callback_queue_messages_delayed.set(in_flight)
        except Exception:
            logger.warning("Could not read SQS queue depth", exc_info=True)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
