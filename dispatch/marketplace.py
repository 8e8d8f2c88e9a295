"""
Purpose: Pull-based claim path (the marketplace).
What it does:
- expose(order_id): make an open order visible to every eligible driver
- list_available(location, radius, limit, driver_id): read-only feed, oldest first
- claim(order_id, driver_id): bind the order to the claiming driver

A claim races directed offers on the same field (the order's bound driver).
Inside one transaction it supersedes any pending offer for the order and binds
exactly the way an accepted offer does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from orders.models import LatLng, Order
from routing.geo import haversine_miles, within_bounding_box

from .assignments import AssignmentManager, BindOutcome, bind_order
from .clock import Clock, utcnow
from .exceptions import Conflict, DriverUnavailable
from .policy import DispatchPolicy, default_dispatch_policy
from .scoring import is_high_priority, priority_score, unassigned_age_seconds
from .store import DispatchStore, Transaction, run_guarded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketplaceListing:
    order: Order
    distance_miles: float
    age_seconds: float
    priority_score: float
    is_high_priority: bool


class MarketplaceFeed:
    def __init__(
        self,
        store: DispatchStore,
        assignments: AssignmentManager,
        *,
        policy: Optional[DispatchPolicy] = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.assignments = assignments
        self.policy = policy or default_dispatch_policy()
        self.clock = clock

    def expose(self, order_id: str) -> bool:
        """
        Returns False if the order is no longer open (bound, cancelled, finished).
        """

        def _expose(tx: Transaction) -> bool:
            order = tx.order(order_id)
            if not order.is_open_for_dispatch:
                return False
            if order.marketplace_visible:
                return True
            order.marketplace_visible = True
            order.unassigned_since = order.unassigned_since or self.clock()
            tx.save_order(order)
            return True

        return run_guarded(self.store, _expose, self.policy.max_write_attempts)

    def list_available(
        self,
        driver_location: LatLng,
        radius_miles: Optional[float] = None,
        limit: Optional[int] = None,
        *,
        driver_id: Optional[str] = None,
    ) -> List[MarketplaceListing]:
        """
        Unbound, visible orders within `radius_miles`, highest priority (oldest) first.
        Orders that excluded `driver_id` are hidden from that driver. No side effects.
        """
        radius_miles = self.policy.marketplace_default_radius_miles if radius_miles is None else radius_miles
        limit = self.policy.marketplace_default_limit if limit is None else limit
        if limit <= 0 or radius_miles < 0:
            return []

        if driver_id is not None:
            driver = self.store.find_driver(driver_id)
            # a bound driver cannot claim, so there is nothing to show
            if driver is not None and driver.bound_order_id is not None:
                return []

        now = self.clock()
        threshold = self.policy.priority_age_threshold_seconds
        snapshot = self.store.list_orders(lambda o: o.marketplace_visible and o.is_open_for_dispatch)

        listings: List[MarketplaceListing] = []
        for order in snapshot:
            if driver_id is not None and driver_id in order.excluded_driver_ids:
                continue

            pickup = order.pickup.coordinates
            if not within_bounding_box(driver_location, pickup, radius_miles):
                continue
            distance = haversine_miles(driver_location, pickup)
            if distance > radius_miles:
                continue

            listings.append(MarketplaceListing(
                order=order,
                distance_miles=distance,
                age_seconds=unassigned_age_seconds(order, now),
                priority_score=priority_score(order, now, threshold),
                is_high_priority=is_high_priority(order, now, threshold),
            ))

        listings.sort(key=lambda l: (-l.priority_score, l.distance_miles, l.order.created_at, l.order.id))
        return listings[:limit]

    def claim(self, order_id: str, driver_id: str) -> Order:
        """
        Raises:
            Conflict: another path already bound the order, or it left the marketplace
            DriverUnavailable: the claiming driver is offline or already holds an order
            NotFound: unknown order or driver
        """

        def _claim(tx: Transaction) -> BindOutcome:
            now = self.clock()
            order = tx.order(order_id)

            if not order.is_open_for_dispatch or not order.marketplace_visible:
                raise Conflict(f"Order {order_id} is already taken")
            if driver_id in order.excluded_driver_ids:
                raise Conflict(f"Order {order_id} is not available to driver {driver_id}")

            driver = tx.driver(driver_id)
            if not driver.is_free:
                raise DriverUnavailable(f"Driver {driver_id} is not available")

            own_offer = self.assignments.supersede_pending_for_order(tx, order_id, now)
            outcome = bind_order(tx, order, driver_id, now=now, reason="claimed from marketplace")
            if own_offer is not None:
                outcome.superseded.insert(0, own_offer)
            return outcome

        try:
            outcome = run_guarded(self.store, _claim, self.policy.max_write_attempts)
        except Conflict:
            logger.info("Driver %s lost the race to claim order %s", driver_id, order_id)
            raise

        logger.info("Driver %s claimed order %s from the marketplace", driver_id, order_id)
        self.assignments.after_bind(outcome, via="marketplace")
        return self.store.get_order(order_id)
