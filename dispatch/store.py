"""
Purpose: In-memory persistence for the dispatch engine.
What it does:
- Owns the three record families:
   - orders by id
   - assignments by id (+ secondary lookups by order id and by driver id)
   - driver availability by driver id

Provides operations:
   - atomic(): a unit of work; every read inside it is a staged copy and every
     write commits together or not at all
   - run_guarded(store, fn, attempts): retries a unit of work when the commit
     reports a retryable PersistenceError
   - snapshot reads (get_order, list_orders, ...) that return copies

Rule: The store knows nothing about dispatch rules. Guards live in the callers,
inside the transaction, so a retried transaction re-checks them.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, TypeVar

from drivers.models import DriverAvailability
from orders.models import Order

from .exceptions import NotFound, PersistenceError
from .models import Assignment, AssignmentState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Transaction:
    """
    Staged view of the store. Nothing here is visible to other callers until commit.
    """

    def __init__(self, store: DispatchStore):
        self._store = store
        self.orders: Dict[str, Order] = {}
        self.assignments: Dict[str, Assignment] = {}
        self.drivers: Dict[str, DriverAvailability] = {}
        self._dirty_orders: set = set()
        self._dirty_assignments: set = set()
        self._dirty_drivers: set = set()

    @property
    def has_changes(self) -> bool:
        return bool(self._dirty_orders or self._dirty_assignments or self._dirty_drivers)

    # --- orders ---

    def find_order(self, order_id: str) -> Optional[Order]:
        if order_id not in self.orders:
            stored = self._store._orders.get(order_id)
            if stored is None:
                return None
            self.orders[order_id] = copy.deepcopy(stored)
        return self.orders[order_id]

    def order(self, order_id: str) -> Order:
        order = self.find_order(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def save_order(self, order: Order) -> None:
        self.orders[order.id] = order
        self._dirty_orders.add(order.id)

    def open_orders(self) -> List[Order]:
        ids = [order_id for order_id, order in self._store._orders.items() if order.is_open_for_dispatch]
        ids.extend(order_id for order_id in self._dirty_orders if order_id not in ids)
        orders = [self.find_order(order_id) for order_id in ids]
        return [order for order in orders if order is not None and order.is_open_for_dispatch]

    # --- assignments ---

    def find_assignment(self, assignment_id: str) -> Optional[Assignment]:
        if assignment_id not in self.assignments:
            stored = self._store._assignments.get(assignment_id)
            if stored is None:
                return None
            self.assignments[assignment_id] = copy.copy(stored)
        return self.assignments[assignment_id]

    def assignment(self, assignment_id: str) -> Assignment:
        assignment = self.find_assignment(assignment_id)
        if assignment is None:
            raise NotFound(f"Assignment {assignment_id} not found")
        return assignment

    def save_assignment(self, assignment: Assignment) -> None:
        self.assignments[assignment.id] = assignment
        self._dirty_assignments.add(assignment.id)

    def _assignments_where(self, ids: List[str], key: Callable[[Assignment], bool]) -> List[Assignment]:
        ids = list(ids)
        # staged but not yet committed assignments are not in the indexes
        ids.extend(a.id for a in self.assignments.values() if a.id not in ids and key(a))
        found = [self.find_assignment(assignment_id) for assignment_id in ids]
        return [a for a in found if a is not None and key(a)]

    def assignments_for_order(self, order_id: str) -> List[Assignment]:
        return self._assignments_where(
            self._store._assignments_by_order.get(order_id, []),
            lambda a: a.order_id == order_id,
        )

    def pending_assignment_for_order(self, order_id: str) -> Optional[Assignment]:
        pending = [a for a in self.assignments_for_order(order_id) if a.is_pending]
        return pending[0] if pending else None

    def pending_assignments_for_driver(self, driver_id: str) -> List[Assignment]:
        return [
            a for a in self._assignments_where(
                self._store._assignments_by_driver.get(driver_id, []),
                lambda a: a.driver_id == driver_id,
            )
            if a.is_pending
        ]

    # --- drivers ---

    def find_driver(self, driver_id: str) -> Optional[DriverAvailability]:
        if driver_id not in self.drivers:
            stored = self._store._drivers.get(driver_id)
            if stored is None:
                return None
            # frozen dataclass, no copy needed
            self.drivers[driver_id] = stored
        return self.drivers[driver_id]

    def driver(self, driver_id: str) -> DriverAvailability:
        driver = self.find_driver(driver_id)
        if driver is None:
            raise NotFound(f"Driver {driver_id} not found")
        return driver

    def save_driver(self, driver: DriverAvailability) -> None:
        self.drivers[driver.driver_id] = driver
        self._dirty_drivers.add(driver.driver_id)

    def all_drivers(self) -> List[DriverAvailability]:
        ids = list(self._store._drivers)
        ids.extend(driver_id for driver_id in self._dirty_drivers if driver_id not in ids)
        return [self.find_driver(driver_id) for driver_id in ids]

    # --- commit payload ---

    def changes(self):
        return (
            [self.orders[i] for i in self._dirty_orders],
            [self.assignments[i] for i in self._dirty_assignments],
            [self.drivers[i] for i in self._dirty_drivers],
        )


class DispatchStore:
    """
    Orders, assignments and driver availability, guarded by one re-entrant lock.

    A transaction holds the lock from its first read to its commit, so the
    equality guards evaluated inside it cannot be invalidated by a concurrent
    writer. Snapshot reads take the lock only long enough to copy.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._orders: Dict[str, Order] = {}
        self._assignments: Dict[str, Assignment] = {}
        self._assignments_by_order: Dict[str, List[str]] = {}
        self._assignments_by_driver: Dict[str, List[str]] = {}
        self._drivers: Dict[str, DriverAvailability] = {}

    @contextmanager
    def atomic(self) -> Iterator[Transaction]:
        with self._lock:
            tx = Transaction(self)
            yield tx
            # an exception raised inside the block skips the commit entirely
            if tx.has_changes:
                self._write(tx)

    def _write(self, tx: Transaction) -> None:
        """
        Single commit hook. Either every staged record is applied or none is.
        """
        orders, assignments, drivers = tx.changes()

        for order in orders:
            self._orders[order.id] = copy.deepcopy(order)

        for assignment in assignments:
            if assignment.id not in self._assignments:
                self._assignments_by_order.setdefault(assignment.order_id, []).append(assignment.id)
                self._assignments_by_driver.setdefault(assignment.driver_id, []).append(assignment.id)
            self._assignments[assignment.id] = copy.copy(assignment)

        for driver in drivers:
            self._drivers[driver.driver_id] = driver

    # --- snapshot reads ---

    def get_order(self, order_id: str) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFound(f"Order {order_id} not found")
            return copy.deepcopy(order)

    def has_order(self, order_id: str) -> bool:
        with self._lock:
            return order_id in self._orders

    def list_orders(self, predicate: Optional[Callable[[Order], bool]] = None) -> List[Order]:
        with self._lock:
            return [
                copy.deepcopy(order)
                for order in self._orders.values()
                if predicate is None or predicate(order)
            ]

    def get_assignment(self, assignment_id: str) -> Assignment:
        with self._lock:
            assignment = self._assignments.get(assignment_id)
            if assignment is None:
                raise NotFound(f"Assignment {assignment_id} not found")
            return copy.copy(assignment)

    def assignments_for_order(self, order_id: str) -> List[Assignment]:
        with self._lock:
            return [copy.copy(self._assignments[i]) for i in self._assignments_by_order.get(order_id, [])]

    def assignments_for_driver(self, driver_id: str) -> List[Assignment]:
        with self._lock:
            return [copy.copy(self._assignments[i]) for i in self._assignments_by_driver.get(driver_id, [])]

    def pending_assignments(self) -> List[Assignment]:
        with self._lock:
            return [
                copy.copy(a) for a in self._assignments.values()
                if a.state is AssignmentState.PENDING
            ]

    def get_driver(self, driver_id: str) -> DriverAvailability:
        with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None:
                raise NotFound(f"Driver {driver_id} not found")
            return driver

    def find_driver(self, driver_id: str) -> Optional[DriverAvailability]:
        with self._lock:
            return self._drivers.get(driver_id)

    def list_drivers(self) -> List[DriverAvailability]:
        with self._lock:
            return list(self._drivers.values())


def run_guarded(store: DispatchStore, fn: Callable[[Transaction], T], attempts: int = 3) -> T:
    """
    Run `fn` inside a transaction, retrying when the commit fails with a
    retryable PersistenceError. `fn` re-reads and re-checks its guards on every
    attempt, so a retry after a failed commit is safe.

    Dispatch errors raised by `fn` (Conflict, NotFound, ...) are never retried.
    """
    attempt = 1
    while True:
        try:
            with store.atomic() as tx:
                return fn(tx)
        except PersistenceError as exc:
            if not exc.retryable or attempt >= attempts:
                logger.error("Guarded write failed after %s attempt(s): %s", attempt, exc)
                raise
            logger.warning("Retrying guarded write (attempt %s/%s): %s", attempt + 1, attempts, exc)
            attempt += 1
