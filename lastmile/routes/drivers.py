import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from lastmile.dependencies import get_store
from lastmile.errors import DriverNotFoundError, DuplicateDriverError
from lastmile.models import NewDriver
from lastmile.store import OrderStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/drivers", tags=["drivers"])


class LocationUpdateBody(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


def _not_found(e: DriverNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"status": "not_found", "message": str(e)})


@router.post("")
async def create_driver(body: NewDriver, store: OrderStore = Depends(get_store)) -> JSONResponse:
    try:
        driver = await store.create_driver(body)
    except DuplicateDriverError as e:
        return JSONResponse(status_code=409, content={"status": "duplicate", "message": str(e)})
    return JSONResponse(status_code=201, content={"status": "created", "driver": driver.model_dump(mode="json")})


@router.get("/{driver_id}/deliveries")
async def driver_deliveries(driver_id: int, store: OrderStore = Depends(get_store)) -> JSONResponse:
    """Orders assigned to a driver, earliest slot first."""
    try:
        await store.get_driver(driver_id)
    except DriverNotFoundError as e:
        return _not_found(e)
    orders = await store.orders_for_driver(driver_id)
    return JSONResponse(
        status_code=200,
        content={
            "driver_id": driver_id,
            "deliveries": [o.model_dump(mode="json") for o in orders],
            "count": len(orders),
        },
    )


@router.put("/{driver_id}/update-location")
async def update_location(
    driver_id: int,
    body: LocationUpdateBody,
    store: OrderStore = Depends(get_store),
) -> JSONResponse:
    try:
        driver = await store.update_driver_location(driver_id, body.lat, body.lng)
    except DriverNotFoundError as e:
        return _not_found(e)
    logger.info("Driver %s location updated to lat=%s lng=%s", driver_id, body.lat, body.lng)
    return JSONResponse(status_code=200, content={"status": "ok", "driver": driver.model_dump(mode="json")})
