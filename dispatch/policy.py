"""
Purpose: Central configuration for directed offers, requeue and marketplace behavior.
What it does:

Stores all tunable thresholds/caps:

OFFER_TTL_SECONDS = 90
PRIORITY_AGE_THRESHOLD_SECONDS = 600
ESCALATION_ATTEMPT_THRESHOLD = 3
PRESERVE_EXCLUSIONS_ON_REDISPATCH = True

Values can be overridden from the environment (.env supported):

DISPATCH_OFFER_TTL_SECONDS=120

Rule: No logic here, just parameters so you can tune without rewriting code.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class DispatchPolicy:
    """
    Central configuration for the dispatch engine.
    """

    # --- Directed offers ---
    # How long a single driver has to accept or decline an offer.
    offer_ttl_seconds: int = 90

    # Each requeue lengthens the next offer window by this much (0 = fixed TTL).
    reassignment_ttl_step_seconds: int = 0

    # Upper bound for the stretched window.
    max_offer_ttl_seconds: int = 1800

    # --- Marketplace ---
    # Orders unassigned for longer than this are flagged high priority.
    priority_age_threshold_seconds: int = 600

    marketplace_default_radius_miles: float = 15.0
    marketplace_default_limit: int = 20

    # --- Requeue / escalation ---
    # After this many requeues with nobody left to offer to, flag for manual attention.
    escalation_attempt_threshold: int = 3

    # Keep declined/expired drivers excluded when a cancellation re-dispatches the order.
    preserve_exclusions_on_redispatch: bool = True

    # --- Persistence ---
    # Attempts for one guarded write when the store reports a retryable failure.
    max_write_attempts: int = 3

    # --- Expiry scheduler ---
    expiry_poll_interval_seconds: float = 1.0

    def offer_ttl_for_attempt(self, attempt: int) -> int:
        ttl = self.offer_ttl_seconds + max(0, attempt) * self.reassignment_ttl_step_seconds
        return min(ttl, max(self.max_offer_ttl_seconds, self.offer_ttl_seconds))

    def validate(self) -> None:
        """
        Basic sanity checks.
        """
        if self.offer_ttl_seconds <= 0:
            raise ValueError("offer_ttl_seconds must be > 0")

        if self.reassignment_ttl_step_seconds < 0:
            raise ValueError("reassignment_ttl_step_seconds must be >= 0")

        if self.max_offer_ttl_seconds < self.offer_ttl_seconds:
            raise ValueError("max_offer_ttl_seconds must be >= offer_ttl_seconds")

        if self.priority_age_threshold_seconds < 0:
            raise ValueError("priority_age_threshold_seconds must be >= 0")

        if self.marketplace_default_radius_miles <= 0:
            raise ValueError("marketplace_default_radius_miles must be > 0")

        if self.marketplace_default_limit <= 0:
            raise ValueError("marketplace_default_limit must be > 0")

        if self.escalation_attempt_threshold < 0:
            raise ValueError("escalation_attempt_threshold must be >= 0")

        if self.max_write_attempts < 1:
            raise ValueError("max_write_attempts must be >= 1")

        if self.expiry_poll_interval_seconds <= 0:
            raise ValueError("expiry_poll_interval_seconds must be > 0")


def default_dispatch_policy() -> DispatchPolicy:
    """
    Convenience factory for the default policy.
    """
    p = DispatchPolicy()
    p.validate()
    return p


def _coerce(raw: str, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def overrides_from_env(policy_cls, prefix: str, environ: Optional[dict] = None) -> dict:
    """
    Collect `<PREFIX><FIELD_NAME>` environment values for a frozen policy dataclass.
    """
    environ = os.environ if environ is None else environ
    overrides = {}
    for f in fields(policy_cls):
        raw = environ.get(f"{prefix}{f.name.upper()}")
        if raw is None or raw == "":
            continue
        overrides[f.name] = _coerce(raw, f.default)
    return overrides


def dispatch_policy_from_env(environ: Optional[dict] = None) -> DispatchPolicy:
    """
    Build the policy from DISPATCH_* environment variables (a .env file is read first).
    """
    if environ is None:
        load_dotenv()
    p = DispatchPolicy(**overrides_from_env(DispatchPolicy, "DISPATCH_", environ))
    p.validate()
    return p
