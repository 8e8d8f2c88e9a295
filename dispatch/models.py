"""
Purpose: Directed-offer records.
What it does:
- Assignment: one time-limited offer of one order to one driver
- AssignmentState = PENDING | ACCEPTED | DECLINED | EXPIRED | SUPERSEDED
- Decision = ACCEPT | DECLINE (a driver's answer to an offer)
- CancellationReason: why an order left its current dispatch cycle

Rule: An Assignment leaves PENDING exactly once, through an equality-guarded
transition (see state_machines/assignment_state.py), and never changes again.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class AssignmentState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"

    @property
    def is_terminal(self) -> bool:
        return self is not AssignmentState.PENDING


class Decision(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class CancellationReason(str, Enum):
    """
    customer_cancelled ends the order. The other reasons release the driver
    and send the order back into dispatch.
    """
    CUSTOMER_CANCELLED = "customer_cancelled"
    DRIVER_ABANDONED = "driver_abandoned"
    STORE_REJECTED = "store_rejected"
    SYSTEM_CANCELLED = "system_cancelled"

    @property
    def redispatches(self) -> bool:
        return self is not CancellationReason.CUSTOMER_CANCELLED

    @property
    def excludes_released_driver(self) -> bool:
        return self in (CancellationReason.DRIVER_ABANDONED, CancellationReason.STORE_REJECTED)


@dataclass
class Assignment:
    id: str
    order_id: str
    driver_id: str
    offered_at: datetime
    expires_at: datetime
    state: AssignmentState = AssignmentState.PENDING
    # set only when the driver answered (accept/decline)
    responded_at: Optional[datetime] = None
    # set by whichever path moved the offer out of PENDING
    resolved_at: Optional[datetime] = None

    # how many times the order had been requeued when this offer was made
    attempt: int = 0

    @property
    def is_pending(self) -> bool:
        return self.state is AssignmentState.PENDING

    def is_overdue(self, now: datetime) -> bool:
        return self.state is AssignmentState.PENDING and now >= self.expires_at

    @staticmethod
    def new(order_id: str, driver_id: str, *, offered_at: datetime, ttl_seconds: float, attempt: int = 0) -> Assignment:
        return Assignment(
            id=str(uuid.uuid4()),
            order_id=order_id,
            driver_id=driver_id,
            offered_at=offered_at,
            expires_at=offered_at + timedelta(seconds=ttl_seconds),
            attempt=attempt,
        )
