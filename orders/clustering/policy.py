"""
Purpose: Central configuration for nearby-order clustering (single source of truth).
What it does:

Stores the distance thresholds:

CLUSTER_RADIUS_MILES = 0.5   (order-to-order grouping)
CLOSEBY_RADIUS_MILES = 0.25  (order-to-driver "close by" badge)

Values can be overridden from the environment (.env supported):

CLUSTER_CLUSTER_RADIUS_MILES=0.75

Rule: No logic here, just parameters so you can tune without rewriting code.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from dispatch.policy import overrides_from_env


@dataclass(frozen=True)
class ClusterPolicy:
    """
    Central configuration for proximity grouping of unassigned orders.

    Notes:
    - clusters are advisory only; they never bind anything
    - the "close by" check is against the driver, and must be tighter than
      the order-to-order radius
    """

    # Orders within this great-circle distance of a cluster's seed join it.
    cluster_radius_miles: float = 0.5

    # Orders within this distance of the driver are flagged close by.
    closeby_radius_miles: float = 0.25

    def validate(self) -> None:
        """
        Basic sanity checks. Call once at startup if you want.
        """
        if self.cluster_radius_miles <= 0:
            raise ValueError("cluster_radius_miles must be > 0")

        if self.closeby_radius_miles <= 0:
            raise ValueError("closeby_radius_miles must be > 0")

        if self.closeby_radius_miles >= self.cluster_radius_miles:
            raise ValueError("closeby_radius_miles must be < cluster_radius_miles")


def default_cluster_policy() -> ClusterPolicy:
    """
    Convenience factory for the default policy.
    """
    p = ClusterPolicy()
    p.validate()
    return p


def cluster_policy_from_env(environ: Optional[dict] = None) -> ClusterPolicy:
    if environ is None:
        load_dotenv()
    p = ClusterPolicy(**overrides_from_env(ClusterPolicy, "CLUSTER_", environ))
    p.validate()
    return p
