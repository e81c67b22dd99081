"""
Delivery grouping: partition orders by pincode, sort each group by location and
hand drivers out round robin.

The lat/lng sort approximates proximity only. AssignmentEngine takes the sort key
as a strategy so a distance-matrix or clustering implementation can replace it
without touching callers.
"""
import logging
from collections.abc import Callable, Iterable, Sequence

from lastmile.errors import NoDriversAvailableError
from lastmile.models import AssignmentGroup, AssignmentResult, Driver, Order

logger = logging.getLogger(__name__)

SortKey = Callable[[Order], tuple]


def location_key(order: Order) -> tuple[float, float]:
    return (order.lat, order.lng)


def group_by_pincode(orders: Iterable[Order]) -> dict[str, list[Order]]:
    """Stable grouping: pincodes in first-seen order, input order within a group."""
    groups: dict[str, list[Order]] = {}
    for order in orders:
        groups.setdefault(order.pincode, []).append(order)
    return groups


def sort_by_location(orders: Iterable[Order], key: SortKey = location_key) -> list[Order]:
    """Latitude ascending, ties broken by longitude. Returns a new list."""
    return sorted(orders, key=key)


def assign_round_robin(orders: Sequence[Order], drivers: Sequence[Driver]) -> list[Order]:
    """Order at position i gets drivers[i % len(drivers)]. Returns assigned copies."""
    if not drivers:
        raise NoDriversAvailableError("No drivers available for assignment")
    return [
        order.model_copy(update={"assigned_driver_id": drivers[i % len(drivers)].id})
        for i, order in enumerate(orders)
    ]


class AssignmentEngine:
    def __init__(self, sort_key: SortKey = location_key):
        self.sort_key = sort_key

    def assign(self, orders: Sequence[Order], drivers: Sequence[Driver]) -> AssignmentResult:
        """
        Group orders by pincode and assign drivers within each group.

        Pure and deterministic: the driver pool is put in id order first, so the
        same orders and the same drivers (in any input order) always produce the
        same mapping. Nothing is persisted and nothing is locked; callers must not
        run two batches over overlapping orders at the same time.
        """
        pool = sorted(drivers, key=lambda d: d.id)
        groups: dict[str, AssignmentGroup] = {}

        for pincode, pincode_orders in group_by_pincode(orders).items():
            sorted_orders = sort_by_location(pincode_orders, key=self.sort_key)
            try:
                assigned = assign_round_robin(sorted_orders, pool)
            except NoDriversAvailableError:
                logger.warning(
                    "No drivers available: %d order(s) in pincode %s left unassigned",
                    len(sorted_orders),
                    pincode,
                )
                assigned = sorted_orders
            groups[pincode] = AssignmentGroup(
                pincode=pincode,
                orders=assigned,
                driver_count=len(pool),
                order_count=len(assigned),
            )

        return AssignmentResult(
            groups=groups,
            total_drivers=len(pool),
            total_orders=len(orders),
        )
