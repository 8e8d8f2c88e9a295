from datetime import datetime
from typing import Dict, Optional

from dispatch.exceptions import InvalidTransition
from orders.models import Order, OrderStatus

# the only forward step allowed out of each status; nothing may be skipped
FORWARD_TRANSITIONS: Dict[OrderStatus, OrderStatus] = {
    OrderStatus.CREATED: OrderStatus.ASSIGNED,
    OrderStatus.ASSIGNED: OrderStatus.ACCEPTED,
    OrderStatus.ACCEPTED: OrderStatus.PICKED_UP,
    OrderStatus.PICKED_UP: OrderStatus.EN_ROUTE_TO_STORE,
    OrderStatus.EN_ROUTE_TO_STORE: OrderStatus.DROPPED_OFF,
    OrderStatus.DROPPED_OFF: OrderStatus.COMPLETED,
}

# reachable from any non-terminal status
ABORT_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUSED})

# statuses a driver moves the order into; only the bound driver may do it
DRIVER_STATUSES = frozenset({
    OrderStatus.ACCEPTED,
    OrderStatus.PICKED_UP,
    OrderStatus.EN_ROUTE_TO_STORE,
    OrderStatus.DROPPED_OFF,
    OrderStatus.COMPLETED,
})

# statuses after which the bound driver is free again
RELEASING_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUSED})


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    if current.is_terminal:
        return False
    if new in ABORT_STATUSES:
        return True
    return FORWARD_TRANSITIONS.get(current) == new


def transition_order_status(
    order: Order,
    new_status: OrderStatus,
    *,
    at: datetime,
    reason: str = "",
    actor: Optional[str] = None,
) -> Order:
    """
    Move the order one step along the status machine and record it in the history.
    """
    if not can_transition(order.status, new_status):
        raise InvalidTransition(
            f"Cannot transition order {order.id} from {order.status.value} to {new_status.value}"
        )
    order.record_status(new_status, at=at, reason=reason, actor=actor)
    return order


def reset_order_for_redispatch(order: Order, *, at: datetime, reason: str) -> Order:
    """
    Fallback for driver/store/system cancellations: the job is not over, so the
    order goes back to CREATED and waits for a new driver.
    """
    if order.status.is_terminal:
        raise InvalidTransition(f"Cannot re-dispatch order {order.id} from {order.status.value}")
    if order.status != OrderStatus.CREATED:
        order.record_status(OrderStatus.CREATED, at=at, reason=reason)
    return order
