"""
Terminal Login Throttling Service

WHY: A 4-6 digit PIN is guessable. Failed PIN attempts are counted per
terminal; after too many failures the terminal is locked out for a while.

SECURITY FEATURES:
- Tracks failed attempts per terminal (identifier "tpv:<device_id>")
- Lockout after MAX_FAILED_ATTEMPTS failures within LOCKOUT_WINDOW
- Lockout lasts LOCKOUT_DURATION after the most recent failure
- Uses security_events table for tracking
"""

from __future__ import annotations

from datetime import datetime, timedelta

from ..extensions import db
from ..models import SecurityEvent
from tpvcore.time_utils import resolve_now
from .audit_service import log_security_event


# Configuration constants
MAX_FAILED_ATTEMPTS = 10  # Lock after 10 failed attempts
LOCKOUT_WINDOW = timedelta(minutes=15)  # Within 15 minutes
LOCKOUT_DURATION = timedelta(minutes=15)  # Lockout for 15 minutes

LOGIN_RESOURCE = "/tpv/login"


def device_identifier(device_id: str) -> str:
    return f"tpv:{device_id}"


def get_recent_failed_attempts(identifier: str, now: datetime | None = None) -> int:
    """Count LOGIN_FAILED events for the identifier within LOCKOUT_WINDOW."""
    cutoff = resolve_now(now) - LOCKOUT_WINDOW

    # The identifier is stored in the 'action' field of security events
    return db.session.query(SecurityEvent).filter(
        SecurityEvent.event_type == "LOGIN_FAILED",
        SecurityEvent.action == identifier,
        SecurityEvent.occurred_at >= cutoff,
    ).count()


def is_locked(identifier: str, now: datetime | None = None) -> tuple[bool, int | None]:
    """
    Check if a terminal is currently locked due to too many failed attempts.

    Returns:
    - (True, seconds_remaining) if locked
    - (False, None) if not locked
    """
    now = resolve_now(now)
    if get_recent_failed_attempts(identifier, now) < MAX_FAILED_ATTEMPTS:
        return False, None

    most_recent = db.session.query(SecurityEvent.occurred_at).filter(
        SecurityEvent.event_type == "LOGIN_FAILED",
        SecurityEvent.action == identifier,
    ).order_by(SecurityEvent.occurred_at.desc()).limit(1).scalar()

    if most_recent is not None:
        lockout_end = most_recent.replace(tzinfo=None) + LOCKOUT_DURATION
        if now < lockout_end:
            return True, int((lockout_end - now).total_seconds())

    return False, None


def record_failed_attempt(
    org_id: int | None,
    device_id: str,
    ip_address: str | None = None,
    reason: str = "Invalid PIN",
    now: datetime | None = None,
) -> int:
    """
    Record a failed PIN attempt and commit it.

    Committed immediately so the attempt counts even though the login fails.
    Returns the number of recent failed attempts.
    """
    identifier = device_identifier(device_id)
    log_security_event(
        event_type="LOGIN_FAILED",
        success=False,
        org_id=org_id,
        device_id=device_id,
        resource=LOGIN_RESOURCE,
        action=identifier,
        reason=reason,
        ip_address=ip_address,
        occurred_at=now,
    )
    return get_recent_failed_attempts(identifier, now)


def record_successful_login(
    org_id: int,
    device_id: str,
    operator_id: int,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> None:
    """
    Record a successful login in the caller's transaction.

    Old failures are not cleared; they age out of the window.
    """
    log_security_event(
        event_type="LOGIN_SUCCESS",
        success=True,
        org_id=org_id,
        device_id=device_id,
        operator_id=operator_id,
        resource=LOGIN_RESOURCE,
        action=device_identifier(device_id),
        ip_address=ip_address,
        occurred_at=now,
        commit=False,
    )


def get_lockout_status(device_id: str, now: datetime | None = None) -> dict:
    identifier = device_identifier(device_id)
    locked, seconds_remaining = is_locked(identifier, now)
    return {
        "locked": locked,
        "failed_attempts": get_recent_failed_attempts(identifier, now),
        "max_attempts": MAX_FAILED_ATTEMPTS,
        "seconds_until_unlock": seconds_remaining,
        "lockout_window_minutes": int(LOCKOUT_WINDOW.total_seconds() / 60),
        "lockout_duration_minutes": int(LOCKOUT_DURATION.total_seconds() / 60),
    }
