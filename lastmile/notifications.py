"""
Customer-facing notification content for status changes. Delivery (SMS, push)
belongs to the channel; nothing here retries.
"""
import logging
from typing import Protocol

from lastmile.metrics import notifications_failed_total, notifications_sent_total
from lastmile.models import CustomerNotification, Order
from lastmile.order_state import OrderStatus

logger = logging.getLogger(__name__)

STATUS_MESSAGES: dict[str, str] = {
    OrderStatus.SLOT_SELECTED.value: "Your delivery slot for order {code} is confirmed.",
    OrderStatus.ASSIGNED_TO_DRIVER.value: "A driver has been assigned to your order {code}.",
    OrderStatus.OUT_FOR_DELIVERY.value: "Your order {code} is on its way.",
    OrderStatus.DELIVERED.value: "Your order {code} has been delivered.",
    OrderStatus.CUSTOMER_NOT_AVAILABLE.value: (
        "We could not reach you to deliver order {code}. Please pick a new slot."
    ),
    OrderStatus.RESCHEDULED.value: "Your order {code} has been rescheduled.",
}


class NotificationChannel(Protocol):
    async def send(self, notification: CustomerNotification) -> None: ...


class LoggingNotificationChannel:
    async def send(self, notification: CustomerNotification) -> None:
        logger.info(
            "Notification to %s (%s): %s",
            notification.customer_name, notification.phone, notification.message,
        )


def compose_message(order: Order, new_status: str) -> str | None:
    template = STATUS_MESSAGES.get(new_status)
    if template is None:
        return None
    return template.format(code=order.order_code)


class NotificationDispatcher:
    def __init__(self, channel: NotificationChannel | None = None):
        self.channel = channel or LoggingNotificationChannel()

    async def dispatch(
        self,
        order: Order,
        old_status: str | None,
        new_status: str,
        correlation_id: str | None = None,
    ) -> CustomerNotification | None:
        message = compose_message(order, new_status)
        if message is None:
            logger.debug("No customer message for %s -> %s", old_status, new_status)
            return None
        notification = CustomerNotification(
            order_code=order.order_code,
            customer_name=order.customer_name,
            phone=order.phone,
            message=message,
            correlation_id=correlation_id,
        )
        try:
            await self.channel.send(notification)
            notifications_sent_total.inc()
        except Exception:
            notifications_failed_total.inc()
            logger.exception(
                "Notification for order %s (correlation %s) not delivered",
                order.order_code, correlation_id,
            )
        return notification
