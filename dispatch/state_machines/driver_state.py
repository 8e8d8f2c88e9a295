from dataclasses import replace
from datetime import datetime
from typing import Optional

from dispatch.exceptions import DriverUnavailable
from drivers.models import DriverAvailability, LatLng


def handle_driver_binding(driver: DriverAvailability, order_id: str) -> DriverAvailability:
    """
    Called only by a winning bind (accepted offer or marketplace claim).
    A driver holds at most one order, so a bound or offline driver is rejected.
    """
    if not driver.is_online:
        raise DriverUnavailable(f"Driver {driver.driver_id} is offline")

    if driver.bound_order_id is not None and driver.bound_order_id != order_id:
        raise DriverUnavailable(
            f"Driver {driver.driver_id} is already bound to order {driver.bound_order_id}"
        )

    # Because DriverAvailability is a frozen dataclass, we return a new instance via replace
    return replace(driver, bound_order_id=order_id)


def handle_driver_release(driver: DriverAvailability, order_id: str) -> DriverAvailability:
    """
    Frees the driver from `order_id`. Releasing an order the driver no longer holds is a no-op.
    """
    if driver.bound_order_id != order_id:
        return driver
    return replace(driver, bound_order_id=None)


def handle_location_update(driver: DriverAvailability, location: LatLng, at: datetime) -> DriverAvailability:
    # out-of-order pings must not move the driver back in time
    if driver.location_at is not None and at < driver.location_at:
        return driver
    return replace(driver, location=location, location_at=at)


def handle_availability_change(driver: DriverAvailability, is_online: bool) -> DriverAvailability:
    return replace(driver, is_online=is_online)


def blank_driver(driver_id: str, *, is_online: bool = False, location: Optional[LatLng] = None) -> DriverAvailability:
    return DriverAvailability(driver_id=driver_id, is_online=is_online, location=location)
