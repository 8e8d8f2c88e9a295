"""
Purpose: Core data models for the drivers domain.
What it does:
Defines per-driver availability (online flag, last known location, bound order)
without relying on Django ORM constraints.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

LatLng = Tuple[float, float]


@dataclass(frozen=True)
class DriverAvailability:
    """
    Capacity and position of a driver at a specific point in time.

    A driver holds at most one bound order. While `bound_order_id` is set the
    driver is not a candidate for offers or marketplace claims.
    """
    driver_id: str
    is_online: bool = False
    location: Optional[LatLng] = None
    location_at: Optional[datetime] = None
    bound_order_id: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.is_online and self.bound_order_id is None

    @classmethod
    def new(
        cls,
        driver_id: str,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        is_online: bool = True,
        location_at: Optional[datetime] = None,
    ) -> DriverAvailability:
        location = (float(lat), float(lng)) if lat is not None and lng is not None else None
        return cls(
            driver_id=driver_id,
            is_online=is_online,
            location=location,
            location_at=location_at if location is not None else None,
        )
