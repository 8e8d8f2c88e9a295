"""
Purpose: Directed-offer lifecycle and race resolution.
What it does:
- create_offer(order_id, driver_id, ttl): one PENDING offer to one driver
- respond(assignment_id, driver_id, decision): accept or decline an offer
- expire(assignment_id): timer path, PENDING -> EXPIRED
- supersede(assignment_id): void an offer because another path won the order

Every path out of PENDING goes through resolve_assignment(), inside a store
transaction, so exactly one of respond / claim / expiry / cancellation can win.
Losers get Conflict and nothing they touched is written.

Requeueing is not decided here; declines, expiries and displaced offers are
handed to the `requeue` callback (the DispatchCoordinator).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from drivers.models import DriverAvailability
from orders.models import Order, OrderStatus

from .clock import Clock, utcnow
from .exceptions import (
    Conflict,
    DriverMismatch,
    DriverUnavailable,
    Expired,
    InvalidTransition,
    OrderAlreadyBound,
)
from .expiry import ExpiryScheduler
from .models import Assignment, AssignmentState, Decision
from .notifications import Notification, NotificationKind, NotificationPublisher, publish_safely
from .policy import DispatchPolicy, default_dispatch_policy
from .state_machines.assignment_state import resolve_assignment
from .state_machines.driver_state import handle_driver_binding
from .state_machines.order_state import transition_order_status
from .store import DispatchStore, Transaction, run_guarded

logger = logging.getLogger(__name__)

# requeue(order_id, exclude_driver_id, reason)
RequeueFn = Callable[[str, Optional[str], str], object]


@dataclass
class BindOutcome:
    order: Order
    driver: DriverAvailability
    # offers voided by the bind: the order's own offer (claim path) and the
    # driver's pending offers for other orders
    superseded: List[Assignment] = field(default_factory=list)

    @property
    def displaced(self) -> List[Assignment]:
        return [a for a in self.superseded if a.order_id != self.order.id]


def supersede_in(tx: Transaction, assignment: Assignment, now: datetime) -> Assignment:
    """
    PENDING -> SUPERSEDED inside an open transaction; also clears the order's pointer.
    """
    resolve_assignment(assignment, AssignmentState.SUPERSEDED, at=now)
    tx.save_assignment(assignment)

    order = tx.find_order(assignment.order_id)
    if order is not None and order.active_assignment_id == assignment.id:
        order.active_assignment_id = None
        tx.save_order(order)
    return assignment


def bind_order(tx: Transaction, order: Order, driver_id: str, *, now: datetime, reason: str) -> BindOutcome:
    """
    The single resolution point for both pathways: set the order's bound driver
    exactly once. Caller has already resolved (or superseded) the order's own offer.
    """
    if order.bound_driver_id is not None or order.status != OrderStatus.CREATED:
        raise Conflict(f"Order {order.id} is already taken")

    driver = handle_driver_binding(tx.driver(driver_id), order.id)

    # a bound driver is no longer a candidate for anything else
    superseded = [
        supersede_in(tx, other, now)
        for other in tx.pending_assignments_for_driver(driver_id)
        if other.order_id != order.id
    ]

    order.bound_driver_id = driver_id
    order.marketplace_visible = False
    order.unassigned_since = None
    transition_order_status(order, OrderStatus.ASSIGNED, at=now, reason=reason, actor=driver_id)

    tx.save_order(order)
    tx.save_driver(driver)
    return BindOutcome(order=order, driver=driver, superseded=superseded)


class AssignmentManager:
    def __init__(
        self,
        store: DispatchStore,
        *,
        policy: Optional[DispatchPolicy] = None,
        clock: Clock = utcnow,
        scheduler: Optional[ExpiryScheduler] = None,
        publisher: Optional[NotificationPublisher] = None,
        requeue: Optional[RequeueFn] = None,
    ):
        self.store = store
        self.policy = policy or default_dispatch_policy()
        self.clock = clock
        self.scheduler = scheduler
        self.publisher = publisher
        self.requeue = requeue

        if scheduler is not None and scheduler.on_fire is None:
            scheduler.on_fire = self.expire

    # --- create ---

    def create_offer(self, order_id: str, driver_id: str, ttl_seconds: Optional[float] = None) -> Assignment:
        """
        Offer `order_id` to one driver for `ttl_seconds` (default: policy TTL for the
        order's current reassignment count).

        Raises:
            OrderAlreadyBound: the order already has a pending offer or a bound driver
            DriverUnavailable: the driver is offline, bound, excluded for this order
                or already holding another pending offer
            InvalidTransition: the order is in a terminal status
        """

        def _create(tx: Transaction) -> Assignment:
            now = self.clock()
            order = tx.order(order_id)

            if order.status.is_terminal:
                raise InvalidTransition(f"Order {order_id} is {order.status.value}")
            if not order.is_open_for_dispatch:
                raise OrderAlreadyBound(f"Order {order_id} is already bound to a driver")
            if tx.pending_assignment_for_order(order_id) is not None:
                raise OrderAlreadyBound(f"Order {order_id} already has a pending offer")

            driver = tx.find_driver(driver_id)
            if driver is None or not driver.is_free:
                raise DriverUnavailable(f"Driver {driver_id} is not available")
            if driver_id in order.excluded_driver_ids:
                raise DriverUnavailable(f"Driver {driver_id} is excluded from order {order_id}")
            if tx.pending_assignments_for_driver(driver_id):
                raise DriverUnavailable(f"Driver {driver_id} already holds a pending offer")

            ttl = ttl_seconds if ttl_seconds is not None else self.policy.offer_ttl_for_attempt(order.reassignment_count)
            assignment = Assignment.new(
                order.id, driver_id, offered_at=now, ttl_seconds=ttl, attempt=order.reassignment_count
            )
            order.active_assignment_id = assignment.id

            tx.save_assignment(assignment)
            tx.save_order(order)
            return assignment

        assignment = run_guarded(self.store, _create, self.policy.max_write_attempts)

        if self.scheduler is not None:
            self.scheduler.schedule(assignment.id, assignment.expires_at)

        logger.info(
            "Offered order %s to driver %s until %s", order_id, driver_id, assignment.expires_at.isoformat()
        )
        publish_safely(self.publisher, Notification(
            kind=NotificationKind.ASSIGNMENT_OFFERED,
            order_id=order_id,
            at=assignment.offered_at,
            payload={
                "assignment_id": assignment.id,
                "driver_id": driver_id,
                "expires_at": assignment.expires_at.isoformat(),
            },
        ))
        return self.store.get_assignment(assignment.id)

    # --- respond ---

    def respond(self, assignment_id: str, driver_id: str, decision) -> Assignment:
        """
        Driver answers an offer.

        Raises:
            DriverMismatch: `driver_id` is not the driver the offer was made to
            Conflict: the offer is no longer pending (expired, superseded, answered)
            Expired: the deadline passed before the answer arrived; the offer is expired now
            DriverUnavailable: accepting while bound to another order or offline
        """
        decision = Decision(decision)

        def _respond(tx: Transaction):
            now = self.clock()
            assignment = tx.assignment(assignment_id)

            if assignment.driver_id != driver_id:
                raise DriverMismatch(f"Assignment {assignment_id} was not offered to driver {driver_id}")
            if not assignment.is_pending:
                raise Conflict(f"Assignment {assignment_id} is already {assignment.state.value}")

            if now >= assignment.expires_at:
                # late answer: the timer has not run yet, so apply the expiry ourselves
                self._expire_in(tx, assignment, now)
                return assignment, None

            order = tx.order(assignment.order_id)

            if decision is Decision.ACCEPT:
                resolve_assignment(assignment, AssignmentState.ACCEPTED, at=now)
                tx.save_assignment(assignment)
                outcome = bind_order(tx, order, driver_id, now=now, reason="offer accepted")
                return assignment, outcome

            resolve_assignment(assignment, AssignmentState.DECLINED, at=now)
            order.excluded_driver_ids.add(driver_id)
            if order.active_assignment_id == assignment.id:
                order.active_assignment_id = None
            tx.save_assignment(assignment)
            tx.save_order(order)
            return assignment, None

        try:
            assignment, outcome = run_guarded(self.store, _respond, self.policy.max_write_attempts)
        except Conflict:
            logger.info("Driver %s lost the race for assignment %s", driver_id, assignment_id)
            raise

        self._disarm(assignment.id)

        if assignment.state is AssignmentState.EXPIRED:
            self._requeue(assignment.order_id, assignment.driver_id, "timeout")
            raise Expired(f"Assignment {assignment_id} expired at {assignment.expires_at.isoformat()}")

        if assignment.state is AssignmentState.DECLINED:
            logger.info("Driver %s declined order %s", driver_id, assignment.order_id)
            self._requeue(assignment.order_id, driver_id, "driver_declined")
        else:
            logger.info("Driver %s accepted order %s", driver_id, assignment.order_id)
            self.after_bind(outcome, via="offer")

        return self.store.get_assignment(assignment.id)

    # --- expire ---

    def _expire_in(self, tx: Transaction, assignment: Assignment, now: datetime) -> None:
        resolve_assignment(assignment, AssignmentState.EXPIRED, at=now)
        tx.save_assignment(assignment)

        order = tx.find_order(assignment.order_id)
        if order is not None:
            order.excluded_driver_ids.add(assignment.driver_id)
            if order.active_assignment_id == assignment.id:
                order.active_assignment_id = None
            tx.save_order(order)

    def expire(self, assignment_id: str) -> bool:
        """
        Timer path. Returns False (and changes nothing) if the offer was already resolved.
        """

        def _expire(tx: Transaction) -> Optional[Assignment]:
            assignment = tx.find_assignment(assignment_id)
            if assignment is None or not assignment.is_pending:
                return None
            self._expire_in(tx, assignment, self.clock())
            return assignment

        assignment = run_guarded(self.store, _expire, self.policy.max_write_attempts)
        if assignment is None:
            return False

        self._disarm(assignment_id)
        self._requeue(assignment.order_id, assignment.driver_id, "timeout")
        return True

    # --- supersede ---

    def supersede(self, assignment_id: str) -> bool:
        """
        PENDING -> SUPERSEDED. Idempotent: returns False if the offer was already resolved.
        """

        def _supersede(tx: Transaction) -> bool:
            assignment = tx.assignment(assignment_id)
            if not assignment.is_pending:
                return False
            supersede_in(tx, assignment, self.clock())
            return True

        superseded = run_guarded(self.store, _supersede, self.policy.max_write_attempts)
        if superseded:
            self._disarm(assignment_id)
        return superseded

    def supersede_pending_for_order(self, tx: Transaction, order_id: str, now: datetime) -> Optional[Assignment]:
        """
        In-transaction form used by marketplace claims and cancellations.
        """
        pending = tx.pending_assignment_for_order(order_id)
        if pending is None:
            return None
        return supersede_in(tx, pending, now)

    # --- after commit ---

    def after_bind(self, outcome: BindOutcome, *, via: str) -> None:
        for assignment in outcome.superseded:
            self._disarm(assignment.id)

        publish_safely(self.publisher, Notification(
            kind=NotificationKind.ORDER_BOUND,
            order_id=outcome.order.id,
            at=self.clock(),
            payload={"driver_id": outcome.driver.driver_id, "via": via},
        ))

        for displaced in outcome.displaced:
            logger.info(
                "Offer %s for order %s superseded: driver %s bound to order %s",
                displaced.id, displaced.order_id, displaced.driver_id, outcome.order.id,
            )
            self._requeue(displaced.order_id, None, "driver_bound_elsewhere")

    def _disarm(self, assignment_id: str) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel(assignment_id)

    def _requeue(self, order_id: str, exclude_driver_id: Optional[str], reason: str) -> None:
        if self.requeue is not None:
            self.requeue(order_id, exclude_driver_id, reason)
