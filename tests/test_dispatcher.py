import logging
import random
from datetime import timedelta, timezone

import pytest

from dispatch.dispatcher import DispatchCoordinator, order_created_from_payload
from dispatch.exceptions import (
    Conflict,
    DispatchError,
    DriverMismatch,
    DriverUnavailable,
    InvalidTransition,
)
from dispatch.models import AssignmentState, CancellationReason, Decision
from dispatch.notifications import NotificationKind, NotificationPublisher
from orders.models import DropoffTarget, Location, OrderStatus

from conftest import add_driver, add_order, offset, pending_for

DRIVER_STEPS = [
    OrderStatus.ACCEPTED,
    OrderStatus.PICKED_UP,
    OrderStatus.EN_ROUTE_TO_STORE,
    OrderStatus.DROPPED_OFF,
    OrderStatus.COMPLETED,
]


# --- the five reference scenarios ---

def test_decline_requeues_to_next_driver(coordinator, clock, publisher, check_invariants):
    add_driver(coordinator, "D1", north_miles=0.5)
    add_driver(coordinator, "D2", north_miles=1.0)
    add_order(coordinator, "O")
    first = pending_for(coordinator, "O")
    assert first.driver_id == "D1"
    assert (first.expires_at - first.offered_at).total_seconds() == 90

    clock.advance(10)
    coordinator.respond(first.id, "D1", Decision.DECLINE)

    assert coordinator.store.get_assignment(first.id).state is AssignmentState.DECLINED
    order = coordinator.store.get_order("O")
    assert order.excluded_driver_ids == {"D1"}
    assert order.reassignment_count == 1
    second = pending_for(coordinator, "O")
    assert second.driver_id == "D2"
    assert second.attempt == 1
    assert publisher.kinds("O") == [
        NotificationKind.ASSIGNMENT_OFFERED,
        NotificationKind.ORDER_REASSIGNED,
        NotificationKind.ASSIGNMENT_OFFERED,
    ]
    check_invariants(coordinator.store)


def test_unanswered_offer_expires_and_requeues(coordinator, clock, check_invariants):
    add_driver(coordinator, "D1", north_miles=0.5)
    add_driver(coordinator, "D2", north_miles=1.0)
    add_order(coordinator, "O")
    first = pending_for(coordinator, "O")

    clock.advance(89)
    assert coordinator.expire_overdue() == 0
    clock.advance(1)
    assert coordinator.expire_overdue() == 1

    assert coordinator.store.get_assignment(first.id).state is AssignmentState.EXPIRED
    assert "D1" in coordinator.store.get_order("O").excluded_driver_ids
    assert pending_for(coordinator, "O").driver_id == "D2"
    check_invariants(coordinator.store)


def test_marketplace_claim_beats_pending_offer(coordinator, check_invariants):
    add_driver(coordinator, "D3", north_miles=0.5)
    add_order(coordinator, "O")
    offer = pending_for(coordinator, "O")
    assert offer.driver_id == "D3"
    add_driver(coordinator, "D2", north_miles=4.0)

    coordinator.claim("O", "D2")

    assert coordinator.store.get_assignment(offer.id).state is AssignmentState.SUPERSEDED
    assert coordinator.store.get_order("O").bound_driver_id == "D2"
    with pytest.raises(Conflict):
        coordinator.respond(offer.id, "D3", Decision.ACCEPT)
    assert coordinator.store.get_driver("D3").is_free
    check_invariants(coordinator.store)


def test_nearby_orders_groups_the_pool(coordinator):
    add_order(coordinator, "O-1", 0.0, 0.0, earnings="10.00")
    add_order(coordinator, "O-2", 0.2, 0.1, earnings="10.00")
    add_order(coordinator, "O-3", -0.1, 0.25, earnings="10.00")
    add_order(coordinator, "O-4", 2.0, 0.0, earnings="15.00")
    coordinator.handle_driver_location("D-1", *offset())

    nearby = coordinator.nearby_orders("D-1", radius_miles=5)

    assert len(nearby.listings) == 4
    assert len(nearby.clustering.clusters) == 2
    assert sorted(nearby.clustering.best.order_ids) == ["O-1", "O-2", "O-3"]
    assert nearby.summary.startswith("4 orders in 2 clusters.")


def test_customer_cancel_with_pending_offer(coordinator, clock, publisher, check_invariants):
    add_driver(coordinator, "D1")
    add_order(coordinator, "O")
    offer = pending_for(coordinator, "O")

    order = coordinator.cancel("O", CancellationReason.CUSTOMER_CANCELLED)

    assert order.status == OrderStatus.CANCELLED
    assert order.cancellation_reason == "customer_cancelled"
    assert not order.marketplace_visible
    assert coordinator.store.get_assignment(offer.id).state is AssignmentState.SUPERSEDED
    assert not coordinator.scheduler.is_armed(offer.id)
    assert publisher.kinds("O")[-1] == NotificationKind.ORDER_CANCELLED

    # nothing dispatches O again
    clock.advance(600)
    coordinator.expire_overdue()
    add_driver(coordinator, "D2", north_miles=0.2)
    assert pending_for(coordinator, "O") is None
    assert coordinator.marketplace.list_available(offset(), 5) == []
    check_invariants(coordinator.store)


# --- ingestion ---

def test_duplicate_order_created_is_ignored(coordinator, publisher):
    add_driver(coordinator, "D1")
    add_order(coordinator, "O", earnings="10.00")
    add_order(coordinator, "O", earnings="99.00")

    assert len(coordinator.store.assignments_for_order("O")) == 1
    assert str(coordinator.store.get_order("O").estimated_earnings) == "10.00"
    assert publisher.kinds("O").count(NotificationKind.ASSIGNMENT_OFFERED) == 1


def test_driver_coming_online_gets_oldest_waiting_order(coordinator, clock):
    add_order(coordinator, "O-old", north_miles=1.0)
    clock.advance(30)
    add_order(coordinator, "O-new", north_miles=0.2)

    add_driver(coordinator, "D1")

    assert pending_for(coordinator, "O-old").driver_id == "D1"
    assert pending_for(coordinator, "O-new") is None


def test_going_offline_does_not_cancel_offers(coordinator):
    add_driver(coordinator, "D1")
    add_order(coordinator, "O")
    offer = pending_for(coordinator, "O")

    coordinator.handle_driver_availability("D1", False)

    assert coordinator.store.get_assignment(offer.id).is_pending
    with pytest.raises(DriverUnavailable):
        coordinator.respond(offer.id, "D1", Decision.ACCEPT)
    # a failed accept writes nothing
    assert coordinator.store.get_assignment(offer.id).is_pending


def test_nearby_orders_requires_a_location(coordinator):
    coordinator.handle_driver_availability("D1", True)
    with pytest.raises(DriverUnavailable):
        coordinator.nearby_orders("D1")


def test_first_location_gets_waiting_order(coordinator, check_invariants):
    """
    Apps usually go online before the first GPS fix arrives.
    """
    add_order(coordinator, "O", north_miles=0.2)
    coordinator.handle_driver_availability("D1", True)
    assert pending_for(coordinator, "O") is None

    coordinator.handle_driver_location("D1", *offset())

    assert pending_for(coordinator, "O").driver_id == "D1"
    check_invariants(coordinator.store)


def test_later_locations_do_not_reoffer(coordinator):
    add_driver(coordinator, "D1")
    add_order(coordinator, "O", north_miles=0.2)
    offer = pending_for(coordinator, "O")
    coordinator.respond(offer.id, "D1", Decision.DECLINE)
    add_order(coordinator, "O-2", north_miles=20.0)

    coordinator.handle_driver_location("D1", *offset(north_miles=19.9))

    # only the first fix triggers an offer; O-2 waits for the marketplace
    assert pending_for(coordinator, "O-2") is None


def test_naive_location_timestamp_is_utc(coordinator, clock):
    add_driver(coordinator, "D1")
    naive = clock().replace(tzinfo=None) + timedelta(seconds=5)

    driver = coordinator.handle_driver_location("D1", *offset(north_miles=1.0), at=naive)

    assert driver.location_at == naive.replace(tzinfo=timezone.utc)
    # an older naive ping is compared, not rejected with a TypeError
    stale = coordinator.handle_driver_location("D1", *offset(), at=naive - timedelta(seconds=30))
    assert stale.location == offset(north_miles=1.0)


def test_order_created_payload_normalisation():
    kwargs = order_created_from_payload({
        "order_id": 42,
        "pickup": {"lat": "39.7", "lng": "-104.9", "address": "1 Main St"},
        "dropoff": {"retailer": "REI", "store_id": "S-9", "lat": 39.8, "lng": -105.0},
        "estimated_earnings": 12.5,
    })
    assert kwargs["order_id"] == "42"
    assert kwargs["pickup"] == Location(39.7, -104.9, "1 Main St")
    assert kwargs["dropoff"] == DropoffTarget("REI", "S-9", Location(39.8, -105.0, ""))
    assert str(kwargs["estimated_earnings"]) == "12.5"


# --- requeue policy ---

def test_escalates_when_nobody_is_left(coordinator, publisher, check_invariants):
    for i, distance in enumerate((0.2, 0.4, 0.6)):
        add_driver(coordinator, f"D{i}", north_miles=distance)
    add_order(coordinator, "O")

    for _ in range(3):
        offer = pending_for(coordinator, "O")
        coordinator.respond(offer.id, offer.driver_id, Decision.DECLINE)

    order = coordinator.store.get_order("O")
    assert order.escalated
    assert order.reassignment_count == 3
    assert order.marketplace_visible
    assert publisher.kinds("O").count(NotificationKind.ORDER_ESCALATED) == 1
    check_invariants(coordinator.store)


def test_no_escalation_below_threshold(make_coordinator):
    coordinator = make_coordinator(escalation_attempt_threshold=5)
    add_driver(coordinator, "D1")
    add_order(coordinator, "O")
    coordinator.respond(pending_for(coordinator, "O").id, "D1", Decision.DECLINE)
    assert not coordinator.store.get_order("O").escalated


# --- status machine ---

@pytest.fixture
def bound(coordinator):
    add_driver(coordinator, "D1")
    add_order(coordinator, "O")
    coordinator.respond(pending_for(coordinator, "O").id, "D1", Decision.ACCEPT)
    return coordinator


def test_full_status_flow_frees_the_driver(bound, publisher, check_invariants):
    for status in DRIVER_STEPS:
        order = bound.update_status("O", status, actor_driver_id="D1")
        assert order.status == status
        check_invariants(bound.store)

    assert order.bound_driver_id == "D1"
    assert bound.store.get_driver("D1").is_free
    assert publisher.kinds("O").count(NotificationKind.ORDER_STATUS_CHANGED) == len(DRIVER_STEPS)


def test_freed_driver_is_offered_next_waiting_order(bound):
    add_order(bound, "O-2", north_miles=0.3)
    assert pending_for(bound, "O-2") is None

    for status in DRIVER_STEPS:
        bound.update_status("O", status, actor_driver_id="D1")

    assert pending_for(bound, "O-2").driver_id == "D1"


def test_status_changes_need_the_bound_driver(bound):
    add_driver(bound, "D2", north_miles=1.0)
    with pytest.raises(DriverMismatch):
        bound.update_status("O", OrderStatus.ACCEPTED, actor_driver_id="D2")
    with pytest.raises(DriverMismatch):
        bound.update_status("O", OrderStatus.ACCEPTED)


def test_status_cannot_skip_or_be_forced_to_assigned(bound):
    with pytest.raises(InvalidTransition):
        bound.update_status("O", OrderStatus.PICKED_UP, actor_driver_id="D1")
    with pytest.raises(InvalidTransition):
        bound.update_status("O", OrderStatus.ASSIGNED, actor_driver_id="D1")
    with pytest.raises(ValueError):
        bound.update_status("O", "teleported", actor_driver_id="D1")
    assert bound.store.get_order("O").status == OrderStatus.ASSIGNED


def test_cancelled_status_runs_cancellation(bound):
    order = bound.update_status("O", OrderStatus.CANCELLED, reason="changed my mind")
    assert order.status == OrderStatus.CANCELLED
    assert order.bound_driver_id is None
    assert order.status_history[-1].reason == "changed my mind"
    assert bound.store.get_driver("D1").is_free


@pytest.mark.parametrize("next_status", [OrderStatus.REFUSED, OrderStatus.CANCELLED])
def test_another_driver_cannot_end_the_order(bound, publisher, next_status, check_invariants):
    bound.update_status("O", OrderStatus.ACCEPTED, actor_driver_id="D1")
    sent = len(publisher.sent)

    with pytest.raises(DriverMismatch):
        bound.update_status("O", next_status, actor_driver_id="D9")

    order = bound.store.get_order("O")
    assert order.status == OrderStatus.ACCEPTED
    assert order.bound_driver_id == "D1"
    assert bound.store.get_driver("D1").bound_order_id == "O"
    assert len(publisher.sent) == sent
    check_invariants(bound.store)


def test_another_driver_cannot_send_the_order_back(bound):
    with pytest.raises(DriverMismatch):
        bound.cancel("O", CancellationReason.DRIVER_ABANDONED, actor="D9")
    assert bound.store.get_order("O").bound_driver_id == "D1"
    assert "D9" not in bound.store.get_order("O").excluded_driver_ids


def test_refuse_is_terminal_and_repeatable(bound, check_invariants):
    order = bound.update_status("O", OrderStatus.REFUSED, actor_driver_id="D1", reason="store closed")
    assert order.status == OrderStatus.REFUSED
    assert bound.store.get_driver("D1").is_free
    assert bound.refuse("O").status == OrderStatus.REFUSED
    with pytest.raises(InvalidTransition):
        bound.cancel("O")
    check_invariants(bound.store)


# --- cancellation ---

def test_cancel_twice_is_a_no_op(bound, publisher):
    bound.cancel("O")
    sent = len(publisher.sent)
    assert bound.cancel("O").status == OrderStatus.CANCELLED
    assert len(publisher.sent) == sent


def test_cannot_cancel_a_completed_order(bound):
    for status in DRIVER_STEPS:
        bound.update_status("O", status, actor_driver_id="D1")
    with pytest.raises(InvalidTransition):
        bound.cancel("O")


def test_driver_abandon_redispatches_without_that_driver(bound, publisher, check_invariants):
    bound.update_status("O", OrderStatus.ACCEPTED, actor_driver_id="D1")
    add_driver(bound, "D2", north_miles=1.0)

    order = bound.cancel("O", CancellationReason.DRIVER_ABANDONED, actor="D1")

    assert order.status == OrderStatus.CREATED
    assert order.bound_driver_id is None
    assert order.excluded_driver_ids == {"D1"}
    assert order.reassignment_count == 1
    assert order.marketplace_visible
    assert pending_for(bound, "O").driver_id == "D2"
    assert NotificationKind.ORDER_REASSIGNED in publisher.kinds("O")
    # D1 is free but does not get O back
    assert bound.store.get_driver("D1").is_free
    check_invariants(bound.store)


def test_system_cancel_keeps_released_driver_eligible(bound):
    order = bound.cancel("O", CancellationReason.SYSTEM_CANCELLED)
    assert "D1" not in order.excluded_driver_ids
    # D1 is the only driver, and is offered the order again
    assert pending_for(bound, "O").driver_id == "D1"


@pytest.mark.parametrize("preserve, expected", [(True, {"D0", "D1"}), (False, {"D1"})])
def test_exclusions_on_redispatch_follow_policy(make_coordinator, preserve, expected):
    coordinator = make_coordinator(preserve_exclusions_on_redispatch=preserve)
    add_driver(coordinator, "D0", north_miles=0.1)
    add_driver(coordinator, "D1", north_miles=0.5)
    add_order(coordinator, "O")
    coordinator.respond(pending_for(coordinator, "O").id, "D0", Decision.DECLINE)
    coordinator.respond(pending_for(coordinator, "O").id, "D1", Decision.ACCEPT)

    order = coordinator.cancel("O", CancellationReason.STORE_REJECTED)

    assert order.excluded_driver_ids == expected


# --- ambient ---

class BrokenPublisher(NotificationPublisher):
    def publish(self, notification):
        raise ConnectionError("collaborator down")


def test_failed_notifications_do_not_affect_state(clock, caplog):
    coordinator = DispatchCoordinator(publisher=BrokenPublisher(), clock=clock)
    add_driver(coordinator, "D1")

    with caplog.at_level(logging.ERROR, logger="dispatch.notifications"):
        add_order(coordinator, "O")
        coordinator.respond(pending_for(coordinator, "O").id, "D1", Decision.ACCEPT)

    assert coordinator.store.get_order("O").bound_driver_id == "D1"
    assert "Failed to publish AssignmentOffered" in caplog.text


@pytest.mark.parametrize("seed", range(5))
def test_random_operations_keep_invariants(make_coordinator, clock, check_invariants, seed):
    """
    Interleave every driver and customer action at random; the cross-record
    rules must hold after each step.
    """
    rng = random.Random(seed)
    coordinator = make_coordinator(offer_ttl_seconds=60)
    drivers = [f"D{i}" for i in range(6)]
    for driver_id in drivers:
        add_driver(coordinator, driver_id, rng.uniform(-2, 2), rng.uniform(-2, 2))
    orders = []

    for step in range(120):
        roll = rng.random()
        try:
            if roll < 0.15:
                order_id = f"O{step}"
                add_order(coordinator, order_id, rng.uniform(-2, 2), rng.uniform(-2, 2))
                orders.append(order_id)
            elif roll < 0.40 and coordinator.store.pending_assignments():
                offer = rng.choice(coordinator.store.pending_assignments())
                coordinator.respond(offer.id, offer.driver_id, rng.choice(list(Decision)))
            elif roll < 0.55 and orders:
                coordinator.claim(rng.choice(orders), rng.choice(drivers))
            elif roll < 0.65 and orders:
                coordinator.cancel(rng.choice(orders), rng.choice(list(CancellationReason)))
            elif roll < 0.80 and orders:
                order = coordinator.store.get_order(rng.choice(orders))
                if order.bound_driver_id and not order.status.is_terminal:
                    next_status = DRIVER_STEPS[min(DRIVER_STEPS.index(order.status) + 1, len(DRIVER_STEPS) - 1)] \
                        if order.status in DRIVER_STEPS else OrderStatus.ACCEPTED
                    coordinator.update_status(order.id, next_status, actor_driver_id=order.bound_driver_id)
            elif roll < 0.90:
                coordinator.handle_driver_availability(rng.choice(drivers), rng.random() < 0.8)
            else:
                clock.advance(rng.choice([10, 30, 61]))
                coordinator.expire_overdue()
        except DispatchError:
            # typed rejections are part of normal operation
            pass
        check_invariants(coordinator.store)
