#Purpose: Radius geofencing logic.
#Builds "eligible by proximity" sets using great-circle distance.
#Typical responsibilities:
#Given pickup point + driver positions -> compute distance to pickup
#Apply thresholds like pickup_distance <= X miles
#Sorting candidates by closest first
#Output: a list of "geo-qualified candidates" with distance metrics.

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .geo import LatLng, haversine_miles, within_bounding_box


@dataclass(frozen=True)
class GeofenceCandidate:
    """
    Represents a geofence qualified driver with its distance to the pickup.
    This is what the ranking layer consumes as input.
    """

    driver_id: str
    location: LatLng
    pickup_distance_miles: float


def geofence_candidates(
        pickup: LatLng,
        drivers: Iterable[Tuple[str, Optional[LatLng]]],
        *,
        max_pickup_distance_miles: float,
) -> List[GeofenceCandidate]:
    """
    Keep drivers whose last known location is within `max_pickup_distance_miles`
    of the pickup.

    Args:
        pickup: (lat, lng) pickup coordinate
        drivers: (driver_id, location) pairs; location may be None (never reported)
        max_pickup_distance_miles: distance threshold

    Returns:
        List[GeofenceCandidate], sorted by pickup distance ascending, then driver id.
    """
    candidates: List[GeofenceCandidate] = []

    for driver_id, location in drivers:
        #fail closed: a driver without a known location is not reachable
        if location is None:
            continue
        if not within_bounding_box(pickup, location, max_pickup_distance_miles):
            continue

        distance = haversine_miles(pickup, location)
        if distance > max_pickup_distance_miles:
            continue

        candidates.append(
            GeofenceCandidate(
                driver_id=driver_id,
                location=location,
                pickup_distance_miles=distance,
            )
        )

    #closest first, driver id as deterministic tie-break
    candidates.sort(key=lambda candidate: (candidate.pickup_distance_miles, candidate.driver_id))
    return candidates
