"""
Purpose: Central configuration for driver candidate selection.
What it does:

Stores all tunable thresholds/caps for finding drivers to offer an order to:

OFFER_RADIUS_MILES = 10
MAX_OFFER_CANDIDATES = 3

Rule: No logic here, just parameters so you can tune without rewriting code.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from dispatch.policy import overrides_from_env


@dataclass(frozen=True)
class DriverPolicy:
    """
    Central configuration for directed-offer candidate selection.
    """

    # --- Geofencing ---
    # Only drivers within this great-circle distance of the pickup get a directed offer.
    offer_radius_miles: float = 10.0

    # --- Ranking ---
    # How many ranked candidates to keep; the closest one receives the offer.
    max_offer_candidates: int = 3

    # --- Freshness ---
    # Ignore drivers whose last location ping is older than this (None = never stale).
    location_stale_after_seconds: Optional[int] = None

    def validate(self) -> None:
        """
        Basic sanity checks.
        """
        if self.offer_radius_miles <= 0:
            raise ValueError("offer_radius_miles must be > 0")

        if self.max_offer_candidates <= 0:
            raise ValueError("max_offer_candidates must be > 0")

        if self.location_stale_after_seconds is not None and self.location_stale_after_seconds <= 0:
            raise ValueError("location_stale_after_seconds must be > 0 when set")


def default_driver_policy() -> DriverPolicy:
    """
    Convenience factory for the default policy.
    """
    p = DriverPolicy()
    p.validate()
    return p


def driver_policy_from_env(environ: Optional[dict] = None) -> DriverPolicy:
    if environ is None:
        load_dotenv()
    overrides = overrides_from_env(DriverPolicy, "DRIVER_", environ)
    # the stale threshold defaults to None, so it arrives as a raw string
    if "location_stale_after_seconds" in overrides:
        overrides["location_stale_after_seconds"] = int(overrides["location_stale_after_seconds"])
    p = DriverPolicy(**overrides)
    p.validate()
    return p
