"""
Error taxonomy for the order lifecycle core.
"""


class InvalidTransitionError(Exception):
    """Raised when a requested status change is not in the transition table."""
    def __init__(self, current_status: str | None, requested_status: str):
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"Invalid status transition from '{current_status}' to '{requested_status}'"
        )


class NoDriversAvailableError(Exception):
    """Raised when assignment is attempted with an empty driver pool."""


class CallbackDeliveryError(Exception):
    """Courier callback could not be signed or delivered."""
    def __init__(self, order_id: str, status: str, reason: str, status_code: int | None = None):
        self.order_id = order_id
        self.status = status
        self.status_code = status_code
        super().__init__(f"Callback for order {order_id} ({status}) failed: {reason}")


class OrderNotFoundError(Exception):
    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class DuplicateOrderError(Exception):
    """Raised when an order with the same external order code already exists."""
    def __init__(self, order_code: str):
        self.order_code = order_code
        super().__init__(f"Order {order_code} already exists")


class DriverNotFoundError(Exception):
    def __init__(self, driver_id):
        self.driver_id = driver_id
        super().__init__(f"Driver {driver_id} not found")


class DuplicateDriverError(Exception):
    """Raised when a driver with the same phone number is already registered."""
    def __init__(self, phone: str):
        self.phone = phone
        super().__init__(f"Driver with phone {phone} already exists")
