"""
Order lifecycle orchestration: validate a requested status change, persist it
together with its courier outbox record, then record the audit entry and notify
the customer.

The courier callback itself is delivered by the worker from the outbox. A slow or
failing courier endpoint therefore never holds up, or rolls back, a status change.
Callers own row locking: each call works on one already-fetched order.
"""
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date

from lastmile.assignment import AssignmentEngine
from lastmile.audit import AuditRecorder
from lastmile.errors import InvalidTransitionError
from lastmile.metrics import (
    order_transitions_total,
    orders_assigned_total,
    orders_unassigned_total,
    transitions_rejected_total,
)
from lastmile.models import (
    AssignmentResult,
    CourierCallbackEvent,
    CustomerNotification,
    Order,
    TransitionLogEntry,
    utcnow,
)
from lastmile.notifications import NotificationDispatcher
from lastmile.order_state import OrderStatus, is_valid_transition
from lastmile.store import OrderStore

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    order: Order
    log_entry: TransitionLogEntry
    notification: CustomerNotification | None = None
    outbox: list[CourierCallbackEvent] = field(default_factory=list)


class OrderLifecycleService:
    def __init__(
        self,
        store: OrderStore,
        audit: AuditRecorder | None = None,
        dispatcher: NotificationDispatcher | None = None,
        engine: AssignmentEngine | None = None,
        allow_unknown_statuses: bool = True,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.audit = audit or AuditRecorder(clock=clock)
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.engine = engine or AssignmentEngine()
        self.allow_unknown_statuses = allow_unknown_statuses
        self.clock = clock

    def check_transition(self, order: Order, requested_status: str) -> None:
        if not is_valid_transition(order.status, requested_status, allow_unknown=self.allow_unknown_statuses):
            transitions_rejected_total.labels(from_status=order.status, to_status=requested_status).inc()
            raise InvalidTransitionError(order.status, requested_status)

    async def transition(
        self,
        order: Order,
        requested_status: str,
        actor_id: int | None = None,
        driver_id: int | None = None,
        **changes,
    ) -> TransitionResult:
        """
        Apply one status change. Raises InvalidTransitionError before anything is
        written; once the order is saved, audit and notification problems are logged
        and never undo it.
        """
        if isinstance(requested_status, OrderStatus):
            requested_status = requested_status.value
        self.check_transition(order, requested_status)

        if requested_status == OrderStatus.ASSIGNED_TO_DRIVER.value:
            if driver_id is None:
                raise ValueError("Assigned to Driver requires a driver_id")
            changes["assigned_driver_id"] = driver_id

        now = self.clock()
        old_status = order.status
        updated = order.model_copy(update={**changes, "status": requested_status, "updated_at": now})
        event = CourierCallbackEvent.for_order(updated, requested_status, occurred_at=now)

        await self.store.save_order(updated, outbox=[event])
        order_transitions_total.labels(from_status=old_status, to_status=requested_status).inc()

        entry = await self.audit.record(updated.id, old_status, requested_status, actor_id=actor_id)
        notification = await self.dispatcher.dispatch(
            updated, old_status, requested_status, correlation_id=entry.entry_id,
        )
        return TransitionResult(order=updated, log_entry=entry, notification=notification, outbox=[event])

    async def select_slot(
        self,
        order: Order,
        slot_date: date,
        slot_time: str,
        actor_id: int | None = None,
    ) -> TransitionResult:
        return await self.transition(
            order,
            OrderStatus.SLOT_SELECTED.value,
            actor_id=actor_id,
            slot_date=slot_date,
            slot_time=slot_time,
        )

    async def run_assignment(self) -> AssignmentResult:
        """
        Claim every unclaimed Slot Selected order, assign drivers and move each
        assigned order to Assigned to Driver. An empty driver pool completes with
        nothing assigned; the returned report shows driverCount 0.
        """
        claim_token = uuid.uuid4().hex
        orders = await self.store.claim_orders_for_assignment(claim_token)
        try:
            drivers = await self.store.load_drivers()
            result = self.engine.assign(orders, drivers)
            current = {o.id: o for o in orders}

            for order_id, driver_id in result.assignments.items():
                if driver_id is None:
                    orders_unassigned_total.inc()
                    continue
                try:
                    await self.transition(
                        current[order_id],
                        OrderStatus.ASSIGNED_TO_DRIVER.value,
                        driver_id=driver_id,
                    )
                    orders_assigned_total.inc()
                except InvalidTransitionError as e:
                    orders_unassigned_total.inc()
                    logger.warning("Order %s not assigned: %s", order_id, e)
        finally:
            await self.store.release_claim(claim_token)

        logger.info(
            "Assignment run %s: %d order(s) across %d pincode(s), %d driver(s)",
            claim_token, result.total_orders, len(result.groups), result.total_drivers,
        )
        return result
