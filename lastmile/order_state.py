"""
Order lifecycle state machine. Valid transitions enforce delivery business rules.
"""
from enum import Enum


class OrderStatus(str, Enum):
    PENDING_SLOT_SELECTION = "Pending Slot Selection"
    SLOT_SELECTED = "Slot Selected"
    ASSIGNED_TO_DRIVER = "Assigned to Driver"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CUSTOMER_NOT_AVAILABLE = "Customer Not Available"
    RESCHEDULED = "Rescheduled"


# Current status -> allowed next statuses
VALID_TRANSITIONS: dict[str, list[str]] = {
    OrderStatus.PENDING_SLOT_SELECTION.value: [
        OrderStatus.SLOT_SELECTED.value,
        OrderStatus.RESCHEDULED.value,
    ],
    OrderStatus.SLOT_SELECTED.value: [
        OrderStatus.ASSIGNED_TO_DRIVER.value,  # assignment engine path only
        OrderStatus.OUT_FOR_DELIVERY.value,
        OrderStatus.RESCHEDULED.value,
    ],
    OrderStatus.ASSIGNED_TO_DRIVER.value: [
        OrderStatus.OUT_FOR_DELIVERY.value,
        OrderStatus.RESCHEDULED.value,
    ],
    OrderStatus.OUT_FOR_DELIVERY.value: [
        OrderStatus.DELIVERED.value,
        OrderStatus.CUSTOMER_NOT_AVAILABLE.value,
        OrderStatus.RESCHEDULED.value,
    ],
    OrderStatus.CUSTOMER_NOT_AVAILABLE.value: [OrderStatus.RESCHEDULED.value],
    OrderStatus.RESCHEDULED.value: [
        OrderStatus.OUT_FOR_DELIVERY.value,
        OrderStatus.DELIVERED.value,
    ],
    OrderStatus.DELIVERED.value: [],  # terminal
}


def _value(status) -> str | None:
    if isinstance(status, OrderStatus):
        return status.value
    return status


def is_valid_transition(current_status, new_status, allow_unknown: bool = True) -> bool:
    """
    True if new_status is allowed after current_status.

    A current_status that is not in the table falls back to allow_unknown,
    which is the escape hatch for legacy rows carrying unmodelled statuses.
    """
    allowed = VALID_TRANSITIONS.get(_value(current_status))
    if allowed is None:
        return allow_unknown
    return _value(new_status) in allowed


def get_all_statuses() -> list[str]:
    return [s.value for s in OrderStatus]


def get_valid_transitions(status) -> list[str]:
    return list(VALID_TRANSITIONS.get(_value(status), []))


def is_terminal(status) -> bool:
    value = _value(status)
    return value in VALID_TRANSITIONS and not VALID_TRANSITIONS[value]
