import asyncio
from datetime import date, datetime, timezone

import pytest
from _helper import CALLBACK_URL, SECRET, Recorder, make_driver, make_order

from lastmile.audit import AuditRecorder
from lastmile.courier import CourierNotifier
from lastmile.errors import InvalidTransitionError
from lastmile.lifecycle import OrderLifecycleService
from lastmile.notifications import NotificationDispatcher
from lastmile.store import InMemoryOrderStore
from lastmile.worker import deliver

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class CollectingChannel:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send(self, notification):
        if self.fail:
            raise ConnectionError("sms gateway down")
        self.sent.append(notification)


def _service(store, channel=None, **kwargs):
    clock = lambda: FIXED_NOW  # noqa: E731
    return OrderLifecycleService(
        store,
        audit=AuditRecorder(clock=clock),
        dispatcher=NotificationDispatcher(channel or CollectingChannel()),
        clock=clock,
        **kwargs,
    )


async def test_delivered_to_rescheduled_is_rejected():
    order = make_order(1, status="Delivered")
    store = InMemoryOrderStore([order])
    service = _service(store)

    with pytest.raises(InvalidTransitionError) as exc:
        await service.transition(order, "Rescheduled")

    assert exc.value.current_status == "Delivered"
    assert exc.value.requested_status == "Rescheduled"
    assert "Delivered" in str(exc.value) and "Rescheduled" in str(exc.value)
    assert (await store.get_order(1)).status == "Delivered"
    assert service.audit.entries == ()
    assert store.outbox == []


async def test_assignment_transition_logs_once_and_calls_courier_once():
    order = make_order(1, status="Slot Selected")
    store = InMemoryOrderStore([order], [make_driver(4)])
    service = _service(store)

    result = await service.transition(order, "Assigned to Driver", driver_id=4)

    saved = await store.get_order(1)
    assert saved.status == "Assigned to Driver"
    assert saved.assigned_driver_id == 4
    assert len(service.audit.entries) == 1
    entry = service.audit.entries[0]
    assert (entry.order_id, entry.old_status, entry.new_status) == (1, "Slot Selected", "Assigned to Driver")
    assert entry.actor_id is None
    assert entry.timestamp == FIXED_NOW
    assert len(store.outbox) == 1
    assert result.outbox == store.outbox

    recorder = Recorder()
    notifier = CourierNotifier(CALLBACK_URL, SECRET, client=recorder.client())
    for event in store.outbox:
        await deliver(notifier, event)

    assert len(recorder.requests) == 1
    assert recorder.bodies()[0]["status"] == "Assigned to Driver"
    assert recorder.bodies()[0]["timestamp"] == "2024-05-01T12:00:00.000Z"


async def test_assignment_requires_driver_id():
    order = make_order(1, status="Slot Selected")
    store = InMemoryOrderStore([order])
    with pytest.raises(ValueError):
        await _service(store).transition(order, "Assigned to Driver")
    assert (await store.get_order(1)).assigned_driver_id is None


async def test_notification_is_correlated_with_log_entry():
    order = make_order(1, status="Assigned to Driver", assigned_driver_id=2)
    channel = CollectingChannel()
    service = _service(InMemoryOrderStore([order]), channel)

    result = await service.transition(order, "Out for Delivery", actor_id=2)

    assert result.log_entry.actor_id == 2
    assert channel.sent[0].message == "Your order ORD-001 is on its way."
    assert channel.sent[0].correlation_id == result.log_entry.entry_id


async def test_notification_failure_does_not_undo_transition():
    order = make_order(1, status="Out for Delivery")
    store = InMemoryOrderStore([order])
    service = _service(store, CollectingChannel(fail=True))

    result = await service.transition(order, "Delivered")

    assert result.order.status == "Delivered"
    assert (await store.get_order(1)).status == "Delivered"
    assert len(service.audit.entries) == 1


async def test_audit_sink_failure_is_not_fatal():
    async def broken_sink(entry):
        raise RuntimeError("log table locked")

    order = make_order(1, status="Out for Delivery")
    store = InMemoryOrderStore([order])
    service = OrderLifecycleService(store, audit=AuditRecorder(sink=broken_sink))

    await service.transition(order, "Customer Not Available")

    assert (await store.get_order(1)).status == "Customer Not Available"
    assert len(service.audit.entries) == 1


async def test_unknown_current_status_is_configurable():
    order = make_order(1, status="Legacy Hold")
    store = InMemoryOrderStore([order])

    strict = _service(store, allow_unknown_statuses=False)
    with pytest.raises(InvalidTransitionError):
        await strict.transition(order, "Delivered")

    permissive = _service(store)
    result = await permissive.transition(order, "Delivered")
    assert result.order.status == "Delivered"


async def test_select_slot():
    order = make_order(1, status="Pending Slot Selection")
    store = InMemoryOrderStore([order])

    result = await _service(store).select_slot(order, date(2024, 5, 2), "10:00-12:00", actor_id=9)

    saved = await store.get_order(1)
    assert saved.status == "Slot Selected"
    assert saved.slot_date == date(2024, 5, 2)
    assert saved.slot_time == "10:00-12:00"
    assert saved.updated_at == FIXED_NOW
    assert result.log_entry.actor_id == 9


async def test_run_assignment_assigns_and_transitions():
    orders = [
        make_order(1, pincode="500001", lat=17.3870),
        make_order(2, pincode="500001", lat=17.3850),
        make_order(3, pincode="500002", lat=17.4000),
        make_order(4, status="Pending Slot Selection"),
    ]
    store = InMemoryOrderStore(orders, [make_driver(1), make_driver(2)])
    service = _service(store)

    result = await service.run_assignment()

    assert result.total_orders == 3
    assert result.groups["500001"].assignments == {2: 1, 1: 2}
    assert result.groups["500002"].assignments == {3: 1}
    for order_id, driver_id in {1: 2, 2: 1, 3: 1}.items():
        saved = await store.get_order(order_id)
        assert saved.status == "Assigned to Driver"
        assert saved.assigned_driver_id == driver_id
    assert (await store.get_order(4)).status == "Pending Slot Selection"
    assert len(service.audit.entries) == 3
    assert len(store.outbox) == 3

    again = await service.run_assignment()
    assert again.groups == {}


async def test_run_assignment_without_drivers_assigns_nothing():
    store = InMemoryOrderStore([make_order(1), make_order(2)])
    service = _service(store)

    result = await service.run_assignment()

    assert result.total_drivers == 0
    assert result.groups["500001"].driver_count == 0
    assert (await store.get_order(1)).status == "Slot Selected"
    assert (await store.get_order(1)).assigned_driver_id is None
    assert service.audit.entries == ()
    assert await store.load_pending_orders() != []


async def test_concurrent_claims_never_share_an_order():
    store = InMemoryOrderStore([make_order(i) for i in range(1, 6)])

    first, second = await asyncio.gather(
        store.claim_orders_for_assignment("run-a"),
        store.claim_orders_for_assignment("run-b"),
    )

    ids_a = {o.id for o in first}
    ids_b = {o.id for o in second}
    assert ids_a.isdisjoint(ids_b)
    assert ids_a | ids_b == {1, 2, 3, 4, 5}

    await store.release_claim("run-a")
    assert {o.id for o in await store.load_pending_orders()} == ids_a
