"""
Purpose: Orchestrator / decision pipeline (the "glue").
What it does:
Takes orders from the OrderCreated event, exposes them in the marketplace and
offers each one to the closest eligible driver at the same time. Owns the
requeue policy (declines, expiries, displaced offers), cancellation and
re-dispatch, the order status machine, and event emission.

Both pathways are live from the start: the directed offer and the marketplace
race on the order's bound driver, and whichever sets it first wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from drivers.models import DriverAvailability
from drivers.policy import DriverPolicy, default_driver_policy
from orders.clustering import ClusterPolicy, ClusterResult, build_clusters, default_cluster_policy
from orders.models import DropoffTarget, Location, Order, OrderStatus
from routing.geo import is_within_radius
from routing.geofence import GeofenceCandidate

from .assignments import AssignmentManager
from .candidate_filter import build_base_candidates, is_rule_qualified
from .clock import Clock, utcnow
from .exceptions import (
    DriverMismatch,
    DriverUnavailable,
    InvalidTransition,
    OrderAlreadyBound,
)
from .expiry import ExpiryScheduler
from .marketplace import MarketplaceFeed, MarketplaceListing
from .models import Assignment, CancellationReason
from .notifications import Notification, NotificationKind, NotificationPublisher, publish_safely
from .policy import DispatchPolicy, default_dispatch_policy
from .scoring import rank_candidates
from .state_machines.driver_state import (
    blank_driver,
    handle_availability_change,
    handle_driver_release,
    handle_location_update,
)
from .state_machines.order_state import (
    RELEASING_STATUSES,
    can_transition,
    reset_order_for_redispatch,
    transition_order_status,
)
from .store import DispatchStore, Transaction, run_guarded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NearbyOrders:
    listings: List[MarketplaceListing]
    clustering: ClusterResult

    @property
    def summary(self) -> str:
        return self.clustering.summary


@dataclass
class _Cancellation:
    order: Order
    superseded: Optional[Assignment]
    released_driver_id: Optional[str]


class DispatchCoordinator:
    """
    Wires the store, expiry scheduler, assignment manager and marketplace together.
    """

    def __init__(
        self,
        store: Optional[DispatchStore] = None,
        *,
        policy: Optional[DispatchPolicy] = None,
        driver_policy: Optional[DriverPolicy] = None,
        cluster_policy: Optional[ClusterPolicy] = None,
        publisher: Optional[NotificationPublisher] = None,
        clock: Clock = utcnow,
    ):
        self.store = store or DispatchStore()
        self.policy = policy or default_dispatch_policy()
        self.driver_policy = driver_policy or default_driver_policy()
        self.cluster_policy = cluster_policy or default_cluster_policy()
        self.publisher = publisher
        self.clock = clock

        self.scheduler = ExpiryScheduler(
            clock=clock,
            store=self.store,
            poll_interval_seconds=self.policy.expiry_poll_interval_seconds,
        )
        self.assignments = AssignmentManager(
            self.store,
            policy=self.policy,
            clock=clock,
            scheduler=self.scheduler,
            publisher=publisher,
            requeue=self.requeue,
        )
        self.marketplace = MarketplaceFeed(self.store, self.assignments, policy=self.policy, clock=clock)

    # ------------------------------------------------------------------
    # Consumed events
    # ------------------------------------------------------------------

    def handle_order_created(
        self,
        order_id: str,
        pickup: Location,
        dropoff: DropoffTarget,
        estimated_earnings,
        created_at: Optional[datetime] = None,
    ) -> Order:
        """
        OrderCreated. Delivered at-least-once, so a repeated id is ignored.
        """

        def _create(tx: Transaction) -> Optional[Order]:
            if tx.find_order(order_id) is not None:
                return None
            order = Order.new(order_id, pickup, dropoff, estimated_earnings, created_at=created_at or self.clock())
            tx.save_order(order)
            return order

        created = run_guarded(self.store, _create, self.policy.max_write_attempts)
        if created is None:
            logger.info("Ignoring duplicate OrderCreated for %s", order_id)
        else:
            logger.info("Order %s created (earnings %s)", order_id, created.estimated_earnings)
            self.enqueue(order_id)
        return self.store.get_order(order_id)

    def handle_driver_location(self, driver_id: str, lat: float, lng: float, at: Optional[datetime] = None) -> DriverAvailability:
        """
        DriverLocationUpdate. Touches only the location fields, never the binding.
        A naive `at` is taken as UTC. A free driver's first position triggers the
        same waiting-order offer as coming online.
        """
        at = at or self.clock()
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)

        def _locate(tx: Transaction):
            previous = tx.find_driver(driver_id) or blank_driver(driver_id)
            driver = handle_location_update(previous, (float(lat), float(lng)), at)
            tx.save_driver(driver)
            return previous, driver

        previous, driver = run_guarded(self.store, _locate, self.policy.max_write_attempts)

        if driver.is_free and previous.location is None and driver.location is not None:
            self.offer_waiting_orders(driver_id)
            return self.store.get_driver(driver_id)
        return driver

    def handle_driver_availability(self, driver_id: str, is_online: bool) -> DriverAvailability:
        """
        DriverAvailabilityChanged. A driver coming online is offered the oldest waiting order.
        """

        def _toggle(tx: Transaction):
            previous = tx.find_driver(driver_id) or blank_driver(driver_id)
            driver = handle_availability_change(previous, is_online)
            tx.save_driver(driver)
            return previous, driver

        previous, driver = run_guarded(self.store, _toggle, self.policy.max_write_attempts)
        logger.info("Driver %s is now %s", driver_id, "online" if is_online else "offline")

        if driver.is_free and not previous.is_online:
            self.offer_waiting_orders(driver_id)
        return self.store.get_driver(driver_id)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def enqueue(self, order_id: str) -> Optional[Assignment]:
        """
        Expose the order in the marketplace and offer it to the best eligible driver.
        Returns the new offer, or None if the order stays marketplace-only.
        """
        if not self.marketplace.expose(order_id):
            logger.debug("Order %s is no longer open; not enqueued", order_id)
            return None
        return self._offer_to_best_candidate(order_id)

    def select_candidates(self, order_id: str) -> List[GeofenceCandidate]:
        order = self.store.get_order(order_id)
        if not order.is_open_for_dispatch:
            return []

        # one outstanding directed offer per driver
        busy = {a.driver_id for a in self.store.pending_assignments()}
        base = build_base_candidates(
            order,
            self.store.list_drivers(),
            now=self.clock(),
            policy=self.driver_policy,
            busy_driver_ids=busy,
        )
        return rank_candidates(order.pickup.coordinates, base, self.driver_policy)

    def _offer_to_best_candidate(self, order_id: str) -> Optional[Assignment]:
        for candidate in self.select_candidates(order_id):
            try:
                return self.assignments.create_offer(order_id, candidate.driver_id)
            except OrderAlreadyBound:
                # claimed or offered by someone else in the meantime
                return None
            except DriverUnavailable:
                # candidate got bound between the snapshot and the offer
                continue

        logger.info("No eligible driver for order %s; marketplace only", order_id)
        return None

    def requeue(self, order_id: str, exclude_driver_id: Optional[str] = None, reason: str = "requeue") -> Optional[Assignment]:
        """
        Called on decline, expiry, or when the offered driver got bound elsewhere.
        Adds `exclude_driver_id` to the exclusion set and tries the next candidate.
        """

        def _requeue(tx: Transaction) -> Optional[Order]:
            order = tx.find_order(order_id)
            if order is None or not order.is_open_for_dispatch:
                return None
            if exclude_driver_id is not None:
                order.excluded_driver_ids.add(exclude_driver_id)
            order.reassignment_count += 1
            tx.save_order(order)
            return order

        order = run_guarded(self.store, _requeue, self.policy.max_write_attempts)
        if order is None:
            logger.debug("Order %s left dispatch before requeue (%s)", order_id, reason)
            return None

        logger.info(
            "Requeueing order %s after %s (attempt %s, excluded %s)",
            order_id, reason, order.reassignment_count, sorted(order.excluded_driver_ids),
        )
        publish_safely(self.publisher, Notification(
            kind=NotificationKind.ORDER_REASSIGNED,
            order_id=order_id,
            at=self.clock(),
            payload={
                "reason": reason,
                "excluded_driver_id": exclude_driver_id,
                "reassignment_count": order.reassignment_count,
            },
        ))

        assignment = self.enqueue(order_id)
        if assignment is None:
            self._maybe_escalate(order_id)
        return assignment

    def _maybe_escalate(self, order_id: str) -> None:

        def _escalate(tx: Transaction) -> Optional[Order]:
            order = tx.find_order(order_id)
            if order is None or not order.is_open_for_dispatch or order.escalated:
                return None
            if order.reassignment_count < self.policy.escalation_attempt_threshold:
                return None
            if tx.pending_assignment_for_order(order_id) is not None:
                return None
            order.escalated = True
            tx.save_order(order)
            return order

        order = run_guarded(self.store, _escalate, self.policy.max_write_attempts)
        if order is None:
            return

        logger.warning(
            "No available drivers for order %s after %s attempts; escalating", order_id, order.reassignment_count
        )
        publish_safely(self.publisher, Notification(
            kind=NotificationKind.ORDER_ESCALATED,
            order_id=order_id,
            at=self.clock(),
            payload={"reassignment_count": order.reassignment_count},
        ))

    def offer_waiting_orders(self, driver_id: str) -> Optional[Assignment]:
        """
        A driver just became free: offer them the oldest marketplace-only order they qualify for.
        """
        driver = self.store.find_driver(driver_id)
        if driver is None or not driver.is_free or driver.location is None:
            return None
        if any(a.is_pending for a in self.store.assignments_for_driver(driver_id)):
            return None

        now = self.clock()
        waiting = self.store.list_orders(lambda o: o.is_open_for_dispatch and o.active_assignment_id is None)
        waiting.sort(key=lambda o: (o.unassigned_since or o.created_at, o.id))

        for order in waiting:
            if not is_rule_qualified(driver, order, now=now, policy=self.driver_policy):
                continue
            if not is_within_radius(driver.location, order.pickup.coordinates, self.driver_policy.offer_radius_miles):
                continue
            try:
                return self.assignments.create_offer(order.id, driver_id)
            except OrderAlreadyBound:
                continue
            except DriverUnavailable:
                return None
        return None

    # ------------------------------------------------------------------
    # Driver actions
    # ------------------------------------------------------------------

    def respond(self, assignment_id: str, driver_id: str, decision) -> Assignment:
        return self.assignments.respond(assignment_id, driver_id, decision)

    def claim(self, order_id: str, driver_id: str) -> Order:
        return self.marketplace.claim(order_id, driver_id)

    def nearby_orders(self, driver_id: str, radius_miles: Optional[float] = None, limit: Optional[int] = None) -> NearbyOrders:
        driver = self.store.get_driver(driver_id)
        if driver.location is None:
            raise DriverUnavailable(f"Driver {driver_id} has not reported a location")

        listings = self.marketplace.list_available(driver.location, radius_miles, limit, driver_id=driver_id)
        clustering = build_clusters([l.order for l in listings], self.cluster_policy, reference=driver.location)
        return NearbyOrders(listings=listings, clustering=clustering)

    # ------------------------------------------------------------------
    # Status machine
    # ------------------------------------------------------------------

    def update_status(
        self,
        order_id: str,
        next_status,
        *,
        actor_driver_id: Optional[str] = None,
        reason: str = "",
    ) -> Order:
        """
        Validated status change.

        ASSIGNED is reached only by a winning bind. CANCELLED runs the customer
        cancellation path and REFUSED the refusal path. Every other step must be
        made by the bound driver.
        """
        next_status = OrderStatus(next_status)

        if next_status == OrderStatus.ASSIGNED:
            raise InvalidTransition("Orders become assigned only by accepting an offer or claiming them")
        if next_status == OrderStatus.CANCELLED:
            return self.cancel(order_id, CancellationReason.CUSTOMER_CANCELLED, actor=actor_driver_id, note=reason)
        if next_status == OrderStatus.REFUSED:
            return self.refuse(order_id, actor=actor_driver_id, reason=reason)

        def _advance(tx: Transaction):
            now = self.clock()
            order = tx.order(order_id)
            previous = order.status

            if not can_transition(previous, next_status):
                raise InvalidTransition(
                    f"Cannot transition order {order_id} from {previous.value} to {next_status.value}"
                )
            if order.bound_driver_id is None or order.bound_driver_id != actor_driver_id:
                raise DriverMismatch(f"Order {order_id} is not bound to driver {actor_driver_id}")

            transition_order_status(order, next_status, at=now, reason=reason, actor=actor_driver_id)
            released = None
            if next_status in RELEASING_STATUSES:
                # keep bound_driver_id as the record of who did the job
                released = self._release_driver_in(tx, order, clear_order=False)
            tx.save_order(order)
            return previous, released

        previous, released = run_guarded(self.store, _advance, self.policy.max_write_attempts)
        logger.info("Order %s: %s -> %s", order_id, previous.value, next_status.value)
        self._publish_status(order_id, previous, next_status, actor_driver_id)

        if released is not None:
            self.offer_waiting_orders(released)
        return self.store.get_order(order_id)

    def refuse(self, order_id: str, *, actor: Optional[str] = None, reason: str = "") -> Order:
        """
        Terminal refusal: supersede any pending offer, withdraw from the marketplace,
        free the driver. Repeating it is a no-op. A driver `actor` must be the
        one bound to the order.
        """

        def _refuse(tx: Transaction):
            now = self.clock()
            order = tx.order(order_id)
            if order.status == OrderStatus.REFUSED:
                return None
            self._check_acting_driver(order, actor)
            previous = order.status
            superseded = self.assignments.supersede_pending_for_order(tx, order_id, now)
            released = self._release_driver_in(tx, order, clear_order=False)
            order.marketplace_visible = False
            transition_order_status(order, OrderStatus.REFUSED, at=now, reason=reason or "refused", actor=actor)
            tx.save_order(order)
            return _Cancellation(order=order, superseded=superseded, released_driver_id=released), previous

        result = run_guarded(self.store, _refuse, self.policy.max_write_attempts)
        if result is None:
            return self.store.get_order(order_id)

        outcome, previous = result
        if outcome.superseded is not None:
            self.scheduler.cancel(outcome.superseded.id)
        logger.info("Order %s refused", order_id)
        self._publish_status(order_id, previous, OrderStatus.REFUSED, actor)

        if outcome.released_driver_id is not None:
            self.offer_waiting_orders(outcome.released_driver_id)
        return self.store.get_order(order_id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, order_id: str, reason=CancellationReason.CUSTOMER_CANCELLED, *, actor: Optional[str] = None, note: str = "") -> Order:
        """
        Valid from any non-terminal status and never loses a race: whatever is
        pending is superseded, any bound driver is released, and the order leaves
        the marketplace.

        customer_cancelled ends the order. Driver/store/system reasons put it back
        into dispatch; the exclusion set is kept or cleared per
        `preserve_exclusions_on_redispatch`.

        With a driver `actor` the order must be bound to that driver (DriverMismatch).
        """
        reason = CancellationReason(reason)

        def _cancel(tx: Transaction) -> Optional[_Cancellation]:
            now = self.clock()
            order = tx.order(order_id)

            if order.status == OrderStatus.CANCELLED:
                # arrived after the order was already cancelled
                return None
            if order.status.is_terminal:
                raise InvalidTransition(f"Cannot cancel order {order_id}: it is {order.status.value}")
            self._check_acting_driver(order, actor)

            superseded = self.assignments.supersede_pending_for_order(tx, order_id, now)
            released = self._release_driver_in(tx, order, clear_order=True)
            order.marketplace_visible = False
            order.active_assignment_id = None

            if reason.redispatches:
                if not self.policy.preserve_exclusions_on_redispatch:
                    order.excluded_driver_ids.clear()
                if released is not None and reason.excludes_released_driver:
                    order.excluded_driver_ids.add(released)
                order.reassignment_count += 1
                order.unassigned_since = now
                reset_order_for_redispatch(order, at=now, reason=note or reason.value)
            else:
                order.cancellation_reason = reason.value
                transition_order_status(order, OrderStatus.CANCELLED, at=now, reason=note or reason.value, actor=actor)

            tx.save_order(order)
            return _Cancellation(order=order, superseded=superseded, released_driver_id=released)

        outcome = run_guarded(self.store, _cancel, self.policy.max_write_attempts)
        if outcome is None:
            logger.info("Order %s was already cancelled", order_id)
            return self.store.get_order(order_id)

        if outcome.superseded is not None:
            self.scheduler.cancel(outcome.superseded.id)

        payload = {
            "reason": reason.value,
            "released_driver_id": outcome.released_driver_id,
            "superseded_assignment_id": outcome.superseded.id if outcome.superseded else None,
        }

        if reason.redispatches:
            logger.info("Order %s sent back to dispatch (%s)", order_id, reason.value)
            publish_safely(self.publisher, Notification(
                kind=NotificationKind.ORDER_REASSIGNED, order_id=order_id, at=self.clock(), payload=payload,
            ))
            self.enqueue(order_id)
        else:
            logger.info("Order %s cancelled (%s)", order_id, reason.value)
            publish_safely(self.publisher, Notification(
                kind=NotificationKind.ORDER_CANCELLED, order_id=order_id, at=self.clock(), payload=payload,
            ))

        if outcome.released_driver_id is not None:
            self.offer_waiting_orders(outcome.released_driver_id)
        return self.store.get_order(order_id)

    @staticmethod
    def _check_acting_driver(order: Order, actor: Optional[str]) -> None:
        # a driver may only end or hand back the order they are bound to
        if actor is not None and actor != order.bound_driver_id:
            raise DriverMismatch(f"Order {order.id} is not bound to driver {actor}")

    def _release_driver_in(self, tx: Transaction, order: Order, *, clear_order: bool) -> Optional[str]:
        driver_id = order.bound_driver_id
        if driver_id is None:
            return None

        driver = tx.find_driver(driver_id)
        if driver is not None:
            tx.save_driver(handle_driver_release(driver, order.id))
        if clear_order:
            order.bound_driver_id = None
        return driver_id

    def _publish_status(self, order_id: str, previous: OrderStatus, new: OrderStatus, actor: Optional[str]) -> None:
        publish_safely(self.publisher, Notification(
            kind=NotificationKind.ORDER_STATUS_CHANGED,
            order_id=order_id,
            at=self.clock(),
            payload={"previous": previous.value, "status": new.value, "actor": actor},
        ))

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def expire_overdue(self, now: Optional[datetime] = None) -> int:
        """
        Fire due timers, then sweep for overdue offers without one.
        """
        now = now or self.clock()
        return self.scheduler.run_due(now) + self.scheduler.sweep(now)

    def start(self) -> None:
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()


def order_created_from_payload(payload: dict) -> dict:
    """
    Normalize an OrderCreated payload into handle_order_created() keyword arguments.
    """
    pickup = payload["pickup"]
    dropoff = payload["dropoff"]
    dropoff_location = None
    if dropoff.get("lat") is not None and dropoff.get("lng") is not None:
        dropoff_location = Location(float(dropoff["lat"]), float(dropoff["lng"]), dropoff.get("address", "") or "")
    return {
        "order_id": str(payload["order_id"]),
        "pickup": Location(float(pickup["lat"]), float(pickup["lng"]), pickup.get("address", "") or ""),
        "dropoff": DropoffTarget(
            retailer=dropoff["retailer"],
            store_id=dropoff.get("store_id"),
            location=dropoff_location,
        ),
        "estimated_earnings": Decimal(str(payload["estimated_earnings"])),
    }
