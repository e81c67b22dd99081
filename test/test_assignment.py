import pytest
from _helper import make_driver, make_order

from lastmile.assignment import (
    AssignmentEngine,
    assign_round_robin,
    group_by_pincode,
    sort_by_location,
)
from lastmile.errors import NoDriversAvailableError


def test_scenario_sorted_by_latitude_then_round_robin():
    o1 = make_order(1, pincode="500001", lat=17.3870)
    o2 = make_order(2, pincode="500001", lat=17.3850)
    result = AssignmentEngine().assign([o1, o2], [make_driver(1), make_driver(2)])

    group = result.groups["500001"]
    assert [o.id for o in group.orders] == [2, 1]
    assert group.assignments == {2: 1, 1: 2}
    assert group.driver_count == 2
    assert group.order_count == 2


def test_empty_orders_give_empty_groups():
    result = AssignmentEngine().assign([], [make_driver(1)])
    assert result.groups == {}
    assert result.total_orders == 0
    assert result.total_drivers == 1


def test_no_drivers_leaves_orders_unassigned():
    orders = [make_order(1), make_order(2, pincode="500002")]
    result = AssignmentEngine().assign(orders, [])

    assert result.total_orders == 2
    assert result.total_drivers == 0
    for group in result.groups.values():
        assert group.driver_count == 0
        assert all(driver is None for driver in group.assignments.values())


def test_round_robin_law():
    orders = [make_order(i, lat=17.0 + i / 100) for i in range(1, 8)]
    drivers = [make_driver(i) for i in range(1, 4)]
    assigned = assign_round_robin(sort_by_location(orders), drivers)
    for i, order in enumerate(assigned):
        assert order.assigned_driver_id == drivers[i % len(drivers)].id


def test_round_robin_requires_drivers():
    with pytest.raises(NoDriversAvailableError):
        assign_round_robin([make_order(1)], [])


def test_group_by_pincode_is_stable():
    orders = [
        make_order(1, pincode="500002"),
        make_order(2, pincode="500001"),
        make_order(3, pincode="500002"),
    ]
    groups = group_by_pincode(orders)
    assert list(groups) == ["500002", "500001"]
    assert [o.id for o in groups["500002"]] == [1, 3]


def test_sort_breaks_latitude_ties_by_longitude():
    orders = [
        make_order(1, lat=17.3850, lng=78.49),
        make_order(2, lat=17.3850, lng=78.48),
        make_order(3, lat=17.3800, lng=78.50),
    ]
    assert [o.id for o in sort_by_location(orders)] == [3, 2, 1]
    assert [o.id for o in orders] == [1, 2, 3]


def test_assignment_is_deterministic():
    orders = [
        make_order(1, pincode="500001", lat=17.39, lng=78.48),
        make_order(2, pincode="500002", lat=17.41, lng=78.47),
        make_order(3, pincode="500001", lat=17.38, lng=78.49),
        make_order(4, pincode="500001", lat=17.38, lng=78.45),
    ]
    drivers = [make_driver(1), make_driver(2), make_driver(3)]
    engine = AssignmentEngine()

    first = engine.assign(orders, drivers)
    second = engine.assign(list(orders), list(drivers))
    shuffled = engine.assign(orders, [drivers[2], drivers[0], drivers[1]])

    assert first.model_dump_json() == second.model_dump_json()
    assert first.model_dump_json() == shuffled.model_dump_json()


def test_assignment_does_not_mutate_inputs():
    order = make_order(1)
    AssignmentEngine().assign([order], [make_driver(7)])
    assert order.assigned_driver_id is None


def test_response_shape():
    result = AssignmentEngine().assign([make_order(1), make_order(2)], [make_driver(1)])
    body = result.to_response()

    assert set(body) == {"groups", "totalDrivers", "totalOrders"}
    group = body["groups"]["500001"]
    assert group["driverCount"] == 1
    assert group["orderCount"] == 2
    assert [o["assigned_driver_id"] for o in group["orders"]] == [1, 1]


def test_custom_sort_strategy():
    engine = AssignmentEngine(sort_key=lambda o: (-o.lat,))
    result = engine.assign([make_order(1, lat=1.0), make_order(2, lat=2.0)], [make_driver(1), make_driver(2)])
    assert result.assignments == {2: 1, 1: 2}
