from datetime import date

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from lastmile.dependencies import get_service, get_store
from lastmile.errors import DuplicateOrderError, InvalidTransitionError, OrderNotFoundError
from lastmile.lifecycle import OrderLifecycleService
from lastmile.models import NewOrder
from lastmile.order_state import OrderStatus, get_all_statuses, get_valid_transitions
from lastmile.store import OrderStore

router = APIRouter(prefix="/orders", tags=["orders"])


class SlotSelectionBody(BaseModel):
    slot_date: date = Field(..., description="Delivery date chosen by the customer")
    slot_time: str = Field(..., min_length=1, description="Delivery window, e.g. 10:00-12:00")


class StatusUpdateBody(BaseModel):
    status: OrderStatus = Field(..., description="Requested next status")


RESERVED_STATUSES = {
    OrderStatus.SLOT_SELECTED: "Slot Selected is set through PUT /orders/{id}/slot",
    OrderStatus.ASSIGNED_TO_DRIVER: "Assigned to Driver is set by assignment runs only",
}


def _not_found(e: OrderNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"status": "not_found", "message": str(e)})


def _invalid_transition(e: InvalidTransitionError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "status": "invalid_transition",
            "message": str(e),
            "current_status": e.current_status,
            "requested_status": e.requested_status,
        },
    )


@router.post("")
async def create_order(body: NewOrder, store: OrderStore = Depends(get_store)) -> JSONResponse:
    """New order from the courier system; starts in Pending Slot Selection."""
    try:
        order = await store.create_order(body)
    except DuplicateOrderError as e:
        return JSONResponse(status_code=409, content={"status": "duplicate", "message": str(e)})
    return JSONResponse(status_code=201, content={"status": "created", "order": order.model_dump(mode="json")})


@router.get("/statuses")
async def list_statuses() -> dict:
    return {"statuses": get_all_statuses()}


@router.get("/statuses/{status}/transitions")
async def list_transitions(status: str) -> dict:
    return {"status": status, "transitions": get_valid_transitions(status)}


@router.get("/{order_id}")
async def get_order(order_id: int, store: OrderStore = Depends(get_store)) -> JSONResponse:
    try:
        order = await store.get_order(order_id)
    except OrderNotFoundError as e:
        return _not_found(e)
    return JSONResponse(status_code=200, content={"status": "ok", "order": order.model_dump(mode="json")})


@router.put("/{order_id}/slot")
async def select_slot(
    order_id: int,
    body: SlotSelectionBody,
    actor_id: int | None = Header(default=None, alias="X-Actor-Id"),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    try:
        order = await service.store.get_order(order_id)
        result = await service.select_slot(order, body.slot_date, body.slot_time, actor_id=actor_id)
    except OrderNotFoundError as e:
        return _not_found(e)
    except InvalidTransitionError as e:
        return _invalid_transition(e)
    return JSONResponse(status_code=200, content={"status": "ok", "order": result.order.model_dump(mode="json")})


@router.put("/{order_id}/status")
async def update_status(
    order_id: int,
    body: StatusUpdateBody,
    actor_id: int | None = Header(default=None, alias="X-Actor-Id"),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    """Driver status update. Slot Selected and Assigned to Driver have their own paths."""
    if body.status in RESERVED_STATUSES:
        return JSONResponse(
            status_code=422,
            content={"status": "rejected", "message": RESERVED_STATUSES[body.status]},
        )
    try:
        order = await service.store.get_order(order_id)
        result = await service.transition(order, body.status.value, actor_id=actor_id)
    except OrderNotFoundError as e:
        return _not_found(e)
    except InvalidTransitionError as e:
        return _invalid_transition(e)
    return JSONResponse(
        status_code=200,
        content={
            "status": "ok",
            "order": result.order.model_dump(mode="json"),
            "log_entry": result.log_entry.model_dump(mode="json"),
        },
    )
