#!/usr/bin/env python3
"""Central policy status constants and transition rules."""

from __future__ import annotations

from typing import Optional, Set


POLICY_STATUS_ACTIVE = "active"
POLICY_STATUS_EXPIRED = "expired"
POLICY_STATUS_CLAIMED = "claimed"

VALID_POLICY_STATUSES: Set[str] = {
    POLICY_STATUS_ACTIVE,
    POLICY_STATUS_EXPIRED,
    POLICY_STATUS_CLAIMED,
}

# A claimed or expired policy never goes back to active.
_ALLOWED_TRANSITIONS = {
    POLICY_STATUS_ACTIVE: {POLICY_STATUS_CLAIMED, POLICY_STATUS_EXPIRED},
    POLICY_STATUS_EXPIRED: set(),
    POLICY_STATUS_CLAIMED: set(),
}


def normalize_policy_status(value: object, default: Optional[str] = None) -> Optional[str]:
    if value is None:
        return default
    status = str(value).strip().lower()
    if status not in VALID_POLICY_STATUSES:
        return default
    return status


def can_transition_policy_status(current_status: object, new_status: object) -> bool:
    """Return True when current -> new is a real (non-idempotent) transition.

    The storage layer enforces this with conditional UPDATEs; this helper is
    the single place the allowed edges are written down.
    """
    nxt = normalize_policy_status(new_status)
    cur = normalize_policy_status(current_status)
    if nxt is None or cur is None:
        return False
    return nxt in _ALLOWED_TRANSITIONS.get(cur, set())
