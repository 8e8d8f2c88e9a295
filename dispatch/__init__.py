#Expose the high-level pipeline pieces:
#Candidate filtering (hard rules)
#Scoring / ranking
#Directed offers, expiry timers and the marketplace
#Dispatch coordinator (the "one call" entry point)

from .candidate_filter import build_base_candidates
from .scoring import rank_candidates
from .assignments import AssignmentManager
from .expiry import ExpiryScheduler
from .marketplace import MarketplaceFeed, MarketplaceListing
from .dispatcher import DispatchCoordinator, NearbyOrders
from .store import DispatchStore, run_guarded

__all__ = [
    "build_base_candidates",
    "rank_candidates",
    "AssignmentManager",
    "ExpiryScheduler",
    "MarketplaceFeed",
    "MarketplaceListing",
    "DispatchCoordinator",
    "NearbyOrders",
    "DispatchStore",
    "run_guarded",
]
