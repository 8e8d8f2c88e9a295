"""
Purpose: Time source for the dispatch engine.
What it does:
- utcnow(): the default wall clock (timezone-aware UTC)
- ManualClock: a clock you move by hand, used by the simulation script and tests
  so offer deadlines can be crossed without sleeping.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from orders.models import utcnow

Clock = Callable[[], datetime]


class ManualClock:
    def __init__(self, start: Optional[datetime] = None):
        self._now = start or utcnow()
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)
            return self._now

    def set(self, when: datetime) -> None:
        with self._lock:
            self._now = when


__all__ = ["Clock", "ManualClock", "utcnow"]
