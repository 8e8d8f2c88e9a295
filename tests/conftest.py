import math
from datetime import datetime, timezone

import pytest

from dispatch.clock import ManualClock
from dispatch.dispatcher import DispatchCoordinator
from dispatch.notifications import InMemoryPublisher
from dispatch.policy import DispatchPolicy
from drivers.policy import DriverPolicy
from orders.models import DropoffTarget, Location

# Downtown Denver; every test position is an offset from here in miles
BASE_LAT = 39.7392
BASE_LNG = -104.9903
MILES_PER_DEG_LAT = 69.0


def offset(north_miles: float = 0.0, east_miles: float = 0.0):
    lat = BASE_LAT + north_miles / MILES_PER_DEG_LAT
    lng = BASE_LNG + east_miles / (MILES_PER_DEG_LAT * math.cos(math.radians(BASE_LAT)))
    return (lat, lng)


@pytest.fixture
def clock():
    return ManualClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest.fixture
def make_coordinator(clock, publisher):
    """
    Factory so a test can tune the policies: make_coordinator(offer_ttl_seconds=30).
    Keyword arguments that match a DriverPolicy field go to the driver policy.
    """
    driver_fields = set(DriverPolicy.__dataclass_fields__)

    def _make(**overrides):
        driver_overrides = {k: v for k, v in overrides.items() if k in driver_fields}
        dispatch_overrides = {k: v for k, v in overrides.items() if k not in driver_fields}
        return DispatchCoordinator(
            policy=DispatchPolicy(**dispatch_overrides),
            driver_policy=DriverPolicy(**driver_overrides),
            publisher=publisher,
            clock=clock,
        )

    return _make


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


def add_driver(coordinator, driver_id, north_miles=0.0, east_miles=0.0, online=True):
    lat, lng = offset(north_miles, east_miles)
    coordinator.handle_driver_location(driver_id, lat, lng)
    return coordinator.handle_driver_availability(driver_id, online)


def add_order(coordinator, order_id, north_miles=0.0, east_miles=0.0, earnings="12.50", retailer="Target"):
    lat, lng = offset(north_miles, east_miles)
    return coordinator.handle_order_created(
        order_id,
        pickup=Location(lat, lng, f"{order_id} pickup"),
        dropoff=DropoffTarget(retailer=retailer),
        estimated_earnings=earnings,
    )


def pending_for(coordinator, order_id):
    pending = [a for a in coordinator.store.assignments_for_order(order_id) if a.is_pending]
    assert len(pending) <= 1
    return pending[0] if pending else None


def assert_invariants(store):
    """
    Cross-record rules that must hold after every committed operation.
    """
    orders = {o.id: o for o in store.list_orders()}
    drivers = {d.driver_id: d for d in store.list_drivers()}
    pending = store.pending_assignments()

    # at most one pending offer per order and per driver
    pending_orders = [a.order_id for a in pending]
    assert len(pending_orders) == len(set(pending_orders))
    pending_drivers = [a.driver_id for a in pending]
    assert len(pending_drivers) == len(set(pending_drivers))

    for assignment in pending:
        order = orders[assignment.order_id]
        # a bound (or finished) order has no pending offer
        assert order.is_open_for_dispatch
        assert order.active_assignment_id == assignment.id
        assert assignment.driver_id not in order.excluded_driver_ids
        assert drivers[assignment.driver_id].bound_order_id is None

    for order in orders.values():
        if order.is_open_for_dispatch:
            continue
        if order.status.is_terminal:
            assert not order.marketplace_visible
            continue
        # bound and in flight: the driver holds exactly this order
        assert order.bound_driver_id is not None
        assert drivers[order.bound_driver_id].bound_order_id == order.id
        assert not order.marketplace_visible

    for driver in drivers.values():
        if driver.bound_order_id is None:
            continue
        order = orders[driver.bound_order_id]
        assert order.bound_driver_id == driver.driver_id
        assert not order.status.is_terminal


@pytest.fixture
def check_invariants():
    return assert_invariants
