"""
Purpose: Domain models for the Orders capability.
What it does:
- Defines core data structures:
- Order (id, pickup location, drop-off target, earnings estimate, status, binding fields)
- Location (lat/lng + optional address)
- DropoffTarget (retailer or a specific store location)
- StatusChange (one entry of an order's status history)

Defines enums/constants:
- OrderStatus = CREATED | ASSIGNED | ACCEPTED | PICKED_UP | EN_ROUTE_TO_STORE
                | DROPPED_OFF | COMPLETED | CANCELLED | REFUSED

Rule: No dispatch logic, no distance math. Models only.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Set, Tuple

LatLng = Tuple[float, float]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    CREATED = "created"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    EN_ROUTE_TO_STORE = "en_route_to_store"
    DROPPED_OFF = "dropped_off"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUSED = "refused"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUSED})


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    address: str = ""

    @property
    def coordinates(self) -> LatLng:
        return (self.lat, self.lng)


@dataclass(frozen=True)
class DropoffTarget:
    """
    Where the returned item goes: a retailer in general, or one specific store.
    """
    retailer: str
    store_id: Optional[str] = None
    location: Optional[Location] = None


@dataclass(frozen=True)
class StatusChange:
    previous: Optional[OrderStatus]
    new: OrderStatus
    at: datetime
    reason: str = ""
    actor: Optional[str] = None


@dataclass
class Order:
    """
    One pickup-to-return job.

    `bound_driver_id` is the single resolution point for both dispatch pathways:
    whichever path sets it first wins the order.
    """

    id: str
    pickup: Location
    dropoff: DropoffTarget
    estimated_earnings: Decimal

    created_at: datetime = field(default_factory=utcnow)
    status: OrderStatus = OrderStatus.CREATED

    bound_driver_id: Optional[str] = None
    active_assignment_id: Optional[str] = None
    excluded_driver_ids: Set[str] = field(default_factory=set)

    # visible to pull-based claims in the marketplace
    marketplace_visible: bool = False
    # when the order last (re-)entered dispatch without a driver
    unassigned_since: Optional[datetime] = None

    reassignment_count: int = 0
    escalated: bool = False
    cancellation_reason: Optional[str] = None

    status_history: List[StatusChange] = field(default_factory=list)

    @property
    def is_bound(self) -> bool:
        return self.bound_driver_id is not None

    @property
    def is_open_for_dispatch(self) -> bool:
        """
        Unbound, not terminal, still waiting for a driver.
        """
        return self.status == OrderStatus.CREATED and self.bound_driver_id is None

    def record_status(self, new_status: OrderStatus, *, at: datetime, reason: str = "", actor: Optional[str] = None) -> None:
        previous = self.status if self.status_history else None
        self.status = new_status
        self.status_history.append(StatusChange(previous=previous, new=new_status, at=at, reason=reason, actor=actor))

    @staticmethod  # Factory method used by the OrderCreated event handler
    def new(
        order_id: str,
        pickup: Location,
        dropoff: DropoffTarget,
        estimated_earnings,
        created_at: Optional[datetime] = None,
    ) -> Order:
        created_at = created_at or utcnow()
        order = Order(
            id=order_id,
            pickup=pickup,
            dropoff=dropoff,
            estimated_earnings=Decimal(str(estimated_earnings)),
            created_at=created_at,
        )
        order.status_history.append(
            StatusChange(previous=None, new=OrderStatus.CREATED, at=created_at, reason="order created")
        )
        return order
