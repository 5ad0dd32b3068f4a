"""Billing gate: subscription status → allow/block."""

from __future__ import annotations

from dataclasses import dataclass

ALLOWED_STATUSES: frozenset[str] = frozenset({"trial", "trialing", "active"})
BLOCKED_STATUSES: frozenset[str] = frozenset({"trial_ended", "past_due", "canceled", "unpaid"})


@dataclass(frozen=True)
class BillingDecision:
    allowed: bool
    reason:  str | None = None


def evaluate_billing_status(status: str | None) -> BillingDecision:
    """
    Unknown and empty statuses are allowed: an unresolved or legacy value
    must not silently stop service.
    """
    s = (status or "").strip().lower()
    if s in BLOCKED_STATUSES:
        return BillingDecision(allowed=False, reason=s)
    return BillingDecision(allowed=True)
