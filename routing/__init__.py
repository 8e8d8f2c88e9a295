#Marks routing as a package.
#Re-exports the geometry helpers so other modules import from routing
#without knowing internal file names.
#No business logic.

from .geo import LatLng, haversine_miles, is_within_radius
from .geofence import GeofenceCandidate, geofence_candidates

__all__ = [
    "LatLng",
    "haversine_miles",
    "is_within_radius",
    "GeofenceCandidate",
    "geofence_candidates",
]
