#Purpose: Non-routing hard eligibility filtering (rule gates).
#Builds the base candidate set before distance ranking.
#Typical responsibilities:
#online/available
#current workload (a driver holds one order at a time)
#exclusions accumulated by declines/expiries on this order
#one outstanding directed offer per driver
#location freshness

#Output: "rule-qualified drivers" (still not ranked).

from datetime import datetime, timedelta
from typing import Collection, Iterable, List, Optional

from drivers.models import DriverAvailability
from drivers.policy import DriverPolicy
from orders.models import Order


def is_rule_qualified(
    driver: DriverAvailability,
    order: Order,
    *,
    now: datetime,
    policy: DriverPolicy,
    busy_driver_ids: Collection[str] = (),
) -> bool:
    if not driver.is_free:
        return False

    if driver.driver_id in order.excluded_driver_ids:
        return False

    if driver.driver_id in busy_driver_ids:
        return False

    #fail closed: no known position means we cannot tell if they are nearby
    if driver.location is None:
        return False

    if policy.location_stale_after_seconds is not None:
        if driver.location_at is None:
            return False
        if now - driver.location_at > timedelta(seconds=policy.location_stale_after_seconds):
            return False

    return True


def build_base_candidates(
    order: Order,
    drivers: Iterable[DriverAvailability],
    *,
    now: datetime,
    policy: DriverPolicy,
    busy_driver_ids: Optional[Collection[str]] = None,
) -> List[DriverAvailability]:
    """
    Drivers who pass every hard rule for a directed offer of `order`.

    busy_driver_ids: drivers that already hold a pending offer for another order.
    """
    busy = set(busy_driver_ids or ())
    return [
        driver for driver in drivers
        if is_rule_qualified(driver, order, now=now, policy=policy, busy_driver_ids=busy)
    ]
