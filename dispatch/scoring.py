#Purpose: Ranking/selection model (the "who is best" layer).
#Two rankings live here:
#- directed offers: rule-qualified drivers ranked by great-circle distance to pickup
#- marketplace: open orders ranked by how long they have waited for a driver
#Output: ranked drivers for the offer sequence / ranked listings for the feed.

from datetime import datetime
from typing import List, Sequence

from drivers.models import DriverAvailability
from drivers.policy import DriverPolicy
from orders.models import Order
from routing.geofence import GeofenceCandidate, geofence_candidates


def rank_candidates(
    pickup,
    drivers: Sequence[DriverAvailability],
    policy: DriverPolicy,
) -> List[GeofenceCandidate]:
    """
    Closest first, within the offer radius, capped to `max_offer_candidates`.
    """
    candidates = geofence_candidates(
        pickup,
        [(driver.driver_id, driver.location) for driver in drivers],
        max_pickup_distance_miles=policy.offer_radius_miles,
    )
    return candidates[: policy.max_offer_candidates]


def unassigned_age_seconds(order: Order, now: datetime) -> float:
    since = order.unassigned_since or order.created_at
    return max(0.0, (now - since).total_seconds())


def priority_score(order: Order, now: datetime, priority_age_threshold_seconds: int) -> float:
    """
    Older unassigned orders rank higher. A score above 1.0 means the order has waited
    past the priority threshold.
    """
    age = unassigned_age_seconds(order, now)
    if priority_age_threshold_seconds <= 0:
        # every waiting order is priority; rank purely by age
        return 1.0 + age
    return age / priority_age_threshold_seconds


def is_high_priority(order: Order, now: datetime, priority_age_threshold_seconds: int) -> bool:
    return unassigned_age_seconds(order, now) > priority_age_threshold_seconds
