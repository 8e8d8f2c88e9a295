import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from orders.clustering import ClusterPolicy, build_clusters, cluster_policy_from_env
from orders.models import DropoffTarget, Location, Order

from conftest import offset

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make_order(order_id, north_miles=0.0, east_miles=0.0, earnings="10.00", minute=0):
    lat, lng = offset(north_miles, east_miles)
    return Order.new(
        order_id,
        Location(lat, lng),
        DropoffTarget("Target"),
        earnings,
        created_at=T0 + timedelta(minutes=minute),
    )


@pytest.fixture
def scenario_orders():
    """
    Three orders within 0.4 miles of each other and a fourth two miles away.
    """
    return [
        make_order("O-1", 0.0, 0.0, "10.00", minute=0),
        make_order("O-2", 0.2, 0.1, "10.00", minute=1),
        make_order("O-3", -0.1, 0.25, "10.00", minute=2),
        make_order("O-4", 2.0, 0.0, "15.00", minute=3),
    ]


def test_three_close_orders_form_the_best_cluster(scenario_orders):
    result = build_clusters(scenario_orders, ClusterPolicy(cluster_radius_miles=0.5))

    assert len(result.clusters) == 2
    trio, single = result.clusters
    assert sorted(trio.order_ids) == ["O-1", "O-2", "O-3"]
    assert trio.member_count == 3
    assert trio.total_earnings == Decimal("30.00")
    assert trio.is_best_opportunity and trio.is_multi_stop
    assert single.order_ids == ["O-4"]
    assert not single.is_best_opportunity
    assert result.best is trio


def test_best_follows_earnings_not_size(scenario_orders):
    scenario_orders[3] = make_order("O-4", 2.0, 0.0, "45.00", minute=3)
    result = build_clusters(scenario_orders)
    assert result.best.order_ids == ["O-4"]


def test_tie_keeps_the_older_cluster():
    orders = [
        make_order("O-a", 0.0, 0.0, "20.00", minute=0),
        make_order("O-b", 3.0, 0.0, "20.00", minute=1),
    ]
    result = build_clusters(orders)
    assert result.best.order_ids == ["O-a"]


def test_seed_is_oldest_order_regardless_of_input_order(scenario_orders):
    result = build_clusters(list(reversed(scenario_orders)))
    assert result.clusters[0].key == "cluster:O-1"
    assert result.cluster_for("O-3").key == "cluster:O-1"
    assert result.cluster_for("missing") is None


def test_centroid_is_member_average():
    orders = [make_order("O-a", 0.0, 0.0), make_order("O-b", 0.2, 0.0, minute=1)]
    cluster = build_clusters(orders).clusters[0]
    assert cluster.centroid[0] == pytest.approx((orders[0].pickup.lat + orders[1].pickup.lat) / 2)
    assert cluster.centroid[1] == pytest.approx(orders[0].pickup.lng)


def test_closeby_uses_the_tighter_driver_radius(scenario_orders):
    result = build_clusters(scenario_orders, reference=offset())
    # O-1 is under the driver, O-2 ~0.22 mi, O-3 ~0.27 mi
    assert result.closeby_order_ids == frozenset({"O-1", "O-2"})
    assert result.clusters[0].distance_miles is not None


def test_no_reference_means_no_distances(scenario_orders):
    result = build_clusters(scenario_orders)
    assert result.closeby_order_ids == frozenset()
    assert all(c.distance_miles is None for c in result.clusters)


def test_summary_text(scenario_orders):
    result = build_clusters(scenario_orders, reference=offset())
    assert result.summary.startswith("4 orders in 2 clusters. 2 within 0.25 mi of you.")
    assert "Best opportunity: 3 orders for $30.00" in result.summary
    assert result.summary.endswith("(multi-stop route).")


def test_empty_pool():
    result = build_clusters([])
    assert result.clusters == []
    assert result.best is None
    assert result.summary == "No orders available nearby."


def random_pool(seed, count=40):
    rng = random.Random(seed)
    return [
        make_order(f"O-{i:02d}", rng.uniform(-1.5, 1.5), rng.uniform(-1.5, 1.5), minute=rng.randint(0, 30))
        for i in range(count)
    ]


@pytest.mark.parametrize("seed", [1, 2, 3])
@pytest.mark.parametrize("radius", [0.1, 0.5, 1.0, 3.0])
def test_every_order_lands_in_exactly_one_cluster(seed, radius):
    orders = random_pool(seed)
    result = build_clusters(orders, ClusterPolicy(cluster_radius_miles=radius, closeby_radius_miles=radius / 2))

    placed = [order_id for cluster in result.clusters for order_id in cluster.order_ids]
    assert sorted(placed) == sorted(o.id for o in orders)
    assert sum(1 for c in result.clusters if c.is_best_opportunity) == 1


@pytest.mark.parametrize("seed", [4, 5, 6])
def test_growing_the_radius_never_shrinks_the_seed_cluster(seed):
    """
    The oldest order always seeds the first cluster, so its membership is
    everything within the radius and can only grow with it.
    Later clusters are seeded from what is left over and can regroup as the
    radius grows, so only the first cluster is held to this.
    """
    orders = random_pool(seed)
    previous = 0
    previous_members = set()
    for radius in (0.1, 0.25, 0.5, 0.75, 1.0, 2.0, 5.0):
        first = build_clusters(orders, ClusterPolicy(radius, radius / 2)).clusters[0]
        assert first.member_count >= previous
        assert previous_members <= set(first.order_ids)
        previous, previous_members = first.member_count, set(first.order_ids)


def test_policy_validation():
    with pytest.raises(ValueError):
        ClusterPolicy(cluster_radius_miles=0.5, closeby_radius_miles=0.5).validate()
    with pytest.raises(ValueError):
        ClusterPolicy(cluster_radius_miles=0).validate()


def test_policy_from_env():
    policy = cluster_policy_from_env({"CLUSTER_CLUSTER_RADIUS_MILES": "0.75"})
    assert policy.cluster_radius_miles == 0.75
    assert policy.closeby_radius_miles == 0.25
