"""
Domain records: orders, drivers, transition log entries, assignment reports and
courier callback messages.
"""
import uuid
from datetime import date, datetime, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from lastmile.order_state import OrderStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class NewOrder(BaseModel):
    order_code: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("order_code", "order_id"),
        description="External order reference from the courier system",
    )
    customer_name: str = Field(..., min_length=1)
    phone: str = Field(..., pattern=r"^[0-9]{10}$")
    address: str = Field(..., min_length=1)
    pincode: str = Field(..., pattern=r"^[0-9]{6}$")
    lat: float
    lng: float


class Order(BaseModel):
    id: int
    order_code: str
    customer_name: str
    phone: str = Field(..., pattern=r"^[0-9]{10}$")
    address: str
    pincode: str = Field(..., pattern=r"^[0-9]{6}$")
    lat: float
    lng: float
    slot_date: date | None = None
    slot_time: str | None = None
    # Raw string: rows written by older versions may carry statuses OrderStatus does not model
    status: str = OrderStatus.PENDING_SLOT_SELECTION.value
    assigned_driver_id: int | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class NewDriver(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., pattern=r"^[0-9]{10}$")
    current_lat: float | None = Field(None, ge=-90, le=90)
    current_lng: float | None = Field(None, ge=-180, le=180)


class Driver(BaseModel):
    id: int
    name: str
    phone: str
    current_lat: float | None = None
    current_lng: float | None = None


class TransitionLogEntry(BaseModel):
    entry_id: str = Field(default_factory=new_id)
    order_id: int
    old_status: str | None
    new_status: str
    timestamp: datetime
    actor_id: int | None = None  # None for system-initiated transitions


class AssignmentGroup(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pincode: str
    orders: list[Order] = Field(default_factory=list)
    driver_count: int = Field(0, alias="driverCount")
    order_count: int = Field(0, alias="orderCount")

    @property
    def assignments(self) -> dict[int, int | None]:
        return {o.id: o.assigned_driver_id for o in self.orders}


class AssignmentResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    groups: dict[str, AssignmentGroup] = Field(default_factory=dict)
    total_drivers: int = Field(0, alias="totalDrivers")
    total_orders: int = Field(0, alias="totalOrders")

    @property
    def assignments(self) -> dict[int, int | None]:
        mapping: dict[int, int | None] = {}
        for group in self.groups.values():
            mapping.update(group.assignments)
        return mapping

    def to_response(self) -> dict[str, Any]:
        """Wire shape: groups keyed by pincode with orders, driverCount, orderCount."""
        return {
            "groups": {
                pincode: group.model_dump(mode="json", by_alias=True, exclude={"pincode"})
                for pincode, group in self.groups.items()
            },
            "totalDrivers": self.total_drivers,
            "totalOrders": self.total_orders,
        }


class CustomerNotification(BaseModel):
    order_code: str
    customer_name: str
    phone: str
    message: str
    correlation_id: str | None = None


class CourierCallbackEvent(BaseModel):
    """Outbox record: one pending courier callback for one status change."""
    event_id: str = Field(default_factory=new_id)
    order_id: int
    order_code: str
    status: str
    customer_name: str
    phone: str
    occurred_at: datetime = Field(default_factory=utcnow)
    attempts: int = 0

    @classmethod
    def for_order(cls, order: Order, status: str, occurred_at: datetime | None = None) -> "CourierCallbackEvent":
        return cls(
            order_id=order.id,
            order_code=order.order_code,
            status=status,
            customer_name=order.customer_name,
            phone=order.phone,
            occurred_at=occurred_at or utcnow(),
        )


class NotifyResult(BaseModel):
    success: bool
    message: str
    order_id: str
    status: str
    status_code: int | None = None
    error: str | None = None


class CallbackAttempt(BaseModel):
    order_id: str
    status: str
    success: bool
    timestamp: datetime
    response: Any = None
    attempt: int = 1
