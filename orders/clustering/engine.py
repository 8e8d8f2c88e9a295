"""
Purpose: Group nearby unassigned orders so a driver can do several in one trip.
What it does:

Single-pass greedy grouping:
  - walk the orders oldest first
  - the first order not yet placed seeds a new cluster
  - every later unplaced order within `cluster_radius_miles` of the seed joins it

Then, per result:
  - aggregate earnings per cluster, highest flagged as the best opportunity
  - per-order "close by" flags against the driver's own position (tighter radius)
  - a one-line human readable summary

Rule: Pure function over a snapshot. Clusters are advisory and never persisted.
Scale note: O(n^2) in the number of orders, fine for the tens of orders a
driver sees at once. A spatial index is the upgrade path if that changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import FrozenSet, List, Optional, Sequence

from routing.geo import LatLng, haversine_miles, is_within_radius

from ..models import Order
from .policy import ClusterPolicy, default_cluster_policy


@dataclass(frozen=True)
class Cluster:
    key: str
    centroid: LatLng
    order_ids: List[str]
    total_earnings: Decimal
    # centroid to the reference location, when one was given
    distance_miles: Optional[float] = None
    is_best_opportunity: bool = False

    @property
    def member_count(self) -> int:
        return len(self.order_ids)

    @property
    def is_multi_stop(self) -> bool:
        return self.member_count > 1


@dataclass(frozen=True)
class ClusterResult:
    clusters: List[Cluster]
    closeby_order_ids: FrozenSet[str]
    summary: str

    @property
    def best(self) -> Optional[Cluster]:
        for cluster in self.clusters:
            if cluster.is_best_opportunity:
                return cluster
        return None

    def cluster_for(self, order_id: str) -> Optional[Cluster]:
        for cluster in self.clusters:
            if order_id in cluster.order_ids:
                return cluster
        return None


def build_clusters(
    orders: Sequence[Order],
    policy: Optional[ClusterPolicy] = None,
    *,
    reference: Optional[LatLng] = None,
) -> ClusterResult:
    """
    Partition `orders` into proximity clusters.

    Inputs:
      - orders: the current unassigned pool (typically a driver's marketplace listing)
      - policy: cluster and close-by radii
      - reference: the requesting driver's position; enables distances and close-by flags

    Output:
      - ClusterResult; every order appears in exactly one cluster
    """
    policy = policy or default_cluster_policy()

    # oldest first so the seeds are stable between refreshes
    ordered = sorted(orders, key=lambda o: (o.created_at, o.id))

    groups: List[List[Order]] = []
    placed = set()
    for index, seed in enumerate(ordered):
        if seed.id in placed:
            continue
        placed.add(seed.id)
        members = [seed]
        seed_location = seed.pickup.coordinates

        for other in ordered[index + 1:]:
            if other.id in placed:
                continue
            if is_within_radius(seed_location, other.pickup.coordinates, policy.cluster_radius_miles):
                members.append(other)
                placed.add(other.id)

        groups.append(members)

    totals = [sum((o.estimated_earnings for o in members), Decimal("0")) for members in groups]

    # strict comparison: on a tie the earlier (older) cluster keeps the flag
    best_index = None
    for index, total in enumerate(totals):
        if best_index is None or total > totals[best_index]:
            best_index = index

    clusters: List[Cluster] = []
    for index, members in enumerate(groups):
        centroid = _centroid(members)
        clusters.append(Cluster(
            key=f"cluster:{members[0].id}",
            centroid=centroid,
            order_ids=[o.id for o in members],
            total_earnings=totals[index],
            distance_miles=haversine_miles(reference, centroid) if reference is not None else None,
            is_best_opportunity=index == best_index,
        ))

    closeby: FrozenSet[str] = frozenset()
    if reference is not None:
        closeby = frozenset(
            o.id for o in ordered
            if is_within_radius(reference, o.pickup.coordinates, policy.closeby_radius_miles)
        )

    return ClusterResult(
        clusters=clusters,
        closeby_order_ids=closeby,
        summary=summarize(clusters, len(ordered), len(closeby), policy, has_reference=reference is not None),
    )


def summarize(
    clusters: Sequence[Cluster],
    order_count: int,
    closeby_count: int,
    policy: ClusterPolicy,
    *,
    has_reference: bool = False,
) -> str:
    if order_count == 0:
        return "No orders available nearby."

    parts = [f"{_plural(order_count, 'order')} in {_plural(len(clusters), 'cluster')}."]

    if has_reference and closeby_count:
        parts.append(f"{closeby_count} within {policy.closeby_radius_miles:g} mi of you.")

    best = next((c for c in clusters if c.is_best_opportunity), None)
    if best is not None:
        text = f"Best opportunity: {_plural(best.member_count, 'order')} for ${best.total_earnings:.2f}"
        if best.distance_miles is not None:
            text += f", {best.distance_miles:.1f} mi away"
        if best.is_multi_stop:
            text += " (multi-stop route)"
        parts.append(text + ".")

    return " ".join(parts)


# -------------------------
# Internal helpers
# -------------------------

def _centroid(members: Sequence[Order]) -> LatLng:
    lat = sum(o.pickup.lat for o in members) / len(members)
    lng = sum(o.pickup.lng for o in members) / len(members)
    return (lat, lng)


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"
