"""
Purpose: TTL timers for directed offers.
What it does:
- schedule(assignment_id, expires_at): arm a timer
- cancel(assignment_id): disarm it when the offer resolves early
- run_due(now): fire every armed timer whose deadline has passed
- sweep(now): backstop that expires overdue pending offers even if their timer was lost
- start()/stop(): background thread that calls run_due + sweep on an interval

The scheduler has no authority over the outcome. Firing only attempts the
same equality-guarded PENDING -> EXPIRED transition every other path uses;
if the offer was already resolved the firing is a silent no-op.
"""

from __future__ import annotations

import heapq
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .clock import Clock, utcnow

logger = logging.getLogger(__name__)

# returns True if the assignment was moved to EXPIRED by this call
ExpireFn = Callable[[str], bool]


class ExpiryScheduler:
    def __init__(
        self,
        on_fire: Optional[ExpireFn] = None,
        *,
        clock: Clock = utcnow,
        store=None,
        poll_interval_seconds: float = 1.0,
    ):
        self.on_fire = on_fire
        self.clock = clock
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds

        self._lock = threading.Lock()
        self._deadlines: Dict[str, datetime] = {}
        # lazily cleaned: cancelled or re-armed entries stay until popped
        self._heap: List[Tuple[datetime, str]] = []

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --- timers ---

    def schedule(self, assignment_id: str, expires_at: datetime) -> None:
        with self._lock:
            self._deadlines[assignment_id] = expires_at
            heapq.heappush(self._heap, (expires_at, assignment_id))

    def cancel(self, assignment_id: str) -> bool:
        """
        Disarm a timer. Returns False if it was not armed (already fired or never scheduled).
        """
        with self._lock:
            return self._deadlines.pop(assignment_id, None) is not None

    def is_armed(self, assignment_id: str) -> bool:
        with self._lock:
            return assignment_id in self._deadlines

    def armed_count(self) -> int:
        with self._lock:
            return len(self._deadlines)

    def fire(self, assignment_id: str) -> bool:
        """
        Fire one timer now. Safe to call for a timer that was cancelled or already fired.
        """
        with self._lock:
            self._deadlines.pop(assignment_id, None)

        if self.on_fire is None:
            raise RuntimeError("ExpiryScheduler has no on_fire callback")

        expired = self.on_fire(assignment_id)
        if expired:
            logger.info("Offer %s expired", assignment_id)
        else:
            logger.debug("Expiry for %s was a no-op (already resolved)", assignment_id)
        return expired

    def _pop_due(self, now: datetime) -> List[str]:
        due: List[str] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                expires_at, assignment_id = heapq.heappop(self._heap)
                # skip entries that were cancelled or re-armed with another deadline
                if self._deadlines.get(assignment_id) != expires_at:
                    continue
                del self._deadlines[assignment_id]
                due.append(assignment_id)
        return due

    def run_due(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        expired = 0
        for assignment_id in self._pop_due(now):
            if self.fire(assignment_id):
                expired += 1
        return expired

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Expire every pending offer whose deadline has passed, armed or not.
        """
        if self.store is None:
            return 0
        now = now or self.clock()
        expired = 0
        overdue = [a for a in self.store.pending_assignments() if a.is_overdue(now)]
        for assignment in sorted(overdue, key=lambda a: a.expires_at):
            if self.fire(assignment.id):
                expired += 1
        if expired:
            logger.warning("Expiry sweep caught %s overdue offer(s) without a live timer", expired)
        return expired

    # --- background loop ---

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="offer-expiry", daemon=True)
        logger.info("Starting offer expiry scheduler (interval=%ss)", self.poll_interval_seconds)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.poll_interval_seconds):
            try:
                self.run_due()
                self.sweep()
            except Exception:  # pragma: no cover - keep the loop alive
                logger.exception("Offer expiry scheduler encountered an error")
