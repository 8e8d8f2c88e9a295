"""
Process-wide dispatch engine for the API.

Built lazily from the DISPATCH_* / DRIVER_* / CLUSTER_* environment so every
request in this process shares one store, one scheduler and one marketplace.
"""

import logging
import threading
from typing import Optional

from django.conf import settings

from dispatch.dispatcher import DispatchCoordinator
from dispatch.notifications import publisher_from_env
from dispatch.policy import dispatch_policy_from_env
from drivers.policy import driver_policy_from_env
from orders.clustering import cluster_policy_from_env

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_coordinator: Optional[DispatchCoordinator] = None


def build_coordinator() -> DispatchCoordinator:
    return DispatchCoordinator(
        policy=dispatch_policy_from_env(),
        driver_policy=driver_policy_from_env(),
        cluster_policy=cluster_policy_from_env(),
        publisher=publisher_from_env(),
    )


def get_coordinator() -> DispatchCoordinator:
    global _coordinator

    with _lock:
        if _coordinator is None:
            _coordinator = build_coordinator()
            if getattr(settings, "DISPATCH_START_EXPIRY_THREAD", True):
                _coordinator.start()
            logger.info("Dispatch engine initialised")
        return _coordinator


def reset_coordinator(coordinator: Optional[DispatchCoordinator] = None) -> None:
    """
    Drop (and stop) the current engine. Tests pass their own coordinator in.
    """
    global _coordinator

    with _lock:
        if _coordinator is not None:
            _coordinator.stop()
        _coordinator = coordinator
