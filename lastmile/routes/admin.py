from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from lastmile.config import settings
from lastmile.queue import replay_redis_dlq
from lastmile.redis_client import get_redis
from lastmile.sqs_client import replay_sqs_dlq

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/dlq/replay")
async def dlq_replay(limit: int = Query(default=100, ge=1, le=1000)) -> JSONResponse:
    """
    Replay dead-lettered courier callbacks to the main queue with a fresh attempt budget.
    Returns number of messages replayed.
    """
    if settings.sqs_queue_url:
        replayed = await replay_sqs_dlq(limit=limit)
    else:
        replayed = await replay_redis_dlq(await get_redis(), limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )
