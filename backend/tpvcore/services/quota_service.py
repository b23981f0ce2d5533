# Overview: Effective device/session limits and admission checks per tenant.

"""
Quota Enforcer

WHY: Plans cap registered terminals and concurrent operators. Purchased
add-ons raise both caps: a device add-on unit grants one terminal AND one
concurrent-session slot, because every terminal implies at least one operator.

LIMITS (recomputed on every call, never cached):
- device limit  = plan.max_devices + device add-on units
- session limit = plan.max_concurrent_sessions + session add-on units
                  + device add-on units
- plan value NULL = UNLIMITED, which short-circuits every comparison

RACE TOLERANCE: check_session_admission counts live sessions and the caller
then inserts. Two concurrent logins of different operators can both pass the
check, so a tenant may briefly exceed its session limit by the number of
admissions in flight. This is accepted: over-admission is a billing
reconciliation event, not data corruption, and serializing every login of a
tenant behind a lock would let one tenant's login storm hold up the database
for everyone. Do not tighten this with locks or loosen it by skipping the check.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from ..extensions import db
from ..errors import QuotaExceeded, ConcurrencyLimitReached, SubscriptionInactive
from ..models import Device, DeviceSession, SubscriptionAddOn
from tpvcore.time_utils import resolve_now
from .tenant_store import tenant_store

LIVENESS_WINDOW = timedelta(seconds=60)
ADMITTING_STATUSES = ("active", "trial")
ADDON_KIND_DEVICE = "device"
ADDON_KIND_SESSION = "session"
SESSION_SLOTS_PER_DEVICE_ADDON = 1


@dataclass(frozen=True)
class EffectiveLimit:
    """A computed limit; value None means unlimited."""
    value: int | None

    @property
    def unlimited(self) -> bool:
        return self.value is None

    def admits(self, count: int) -> bool:
        if self.unlimited:
            return True
        return count < self.value

    def remaining(self, count: int) -> int | None:
        if self.unlimited:
            return None
        return max(self.value - count, 0)

    def to_json(self) -> int | None:
        return self.value


UNLIMITED = EffectiveLimit(None)


def _active_subscription(org_id: int):
    tenant_store.organization(org_id)
    subscription = tenant_store.subscription(org_id)
    if subscription is None or subscription.plan is None:
        raise SubscriptionInactive("Organization has no subscription")
    if subscription.status not in ADMITTING_STATUSES:
        raise SubscriptionInactive(
            f"Subscription is {subscription.status}",
            details={"status": subscription.status},
        )
    return subscription


def _addon_units(subscription_id: int, kind: str) -> int:
    total = (
        db.session.query(db.func.coalesce(db.func.sum(SubscriptionAddOn.quantity), 0))
        .filter(
            SubscriptionAddOn.subscription_id == subscription_id,
            SubscriptionAddOn.kind == kind,
            SubscriptionAddOn.is_active.is_(True),
        )
        .scalar()
    )
    return int(total or 0)


def effective_device_limit(org_id: int) -> EffectiveLimit:
    subscription = _active_subscription(org_id)
    plan_limit = subscription.plan.max_devices
    if plan_limit is None:
        return UNLIMITED
    return EffectiveLimit(plan_limit + _addon_units(subscription.id, ADDON_KIND_DEVICE))


def effective_session_limit(org_id: int) -> EffectiveLimit:
    subscription = _active_subscription(org_id)
    plan_limit = subscription.plan.max_concurrent_sessions
    if plan_limit is None:
        return UNLIMITED
    device_units = _addon_units(subscription.id, ADDON_KIND_DEVICE)
    session_units = _addon_units(subscription.id, ADDON_KIND_SESSION)
    return EffectiveLimit(plan_limit + session_units + device_units * SESSION_SLOTS_PER_DEVICE_ADDON)


def count_registered_devices(org_id: int) -> int:
    """Devices holding a quota slot (suspended devices keep theirs)."""
    return tenant_store.devices(org_id).filter(Device.status != "deactivated").count()


def live_sessions_query(org_id: int, now: datetime | None = None):
    """OPEN flag AND a heartbeat inside the liveness window."""
    now = resolve_now(now)
    return tenant_store.sessions(org_id).filter(
        DeviceSession.status == "OPEN",
        DeviceSession.last_heartbeat_at > now - LIVENESS_WINDOW,
    )


def count_live_sessions(org_id: int, excluding_operator_id: int | None = None, now: datetime | None = None) -> int:
    query = live_sessions_query(org_id, now)
    if excluding_operator_id is not None:
        query = query.filter(DeviceSession.operator_id != excluding_operator_id)
    return query.count()


def check_device_admission(org_id: int) -> EffectiveLimit:
    """
    Raise QuotaExceeded when no device slot remains.

    Counts devices directly; the subscription's devices_in_use counter is
    bookkeeping for billing and is not trusted here.
    """
    limit = effective_device_limit(org_id)
    if limit.unlimited:
        return limit
    count = count_registered_devices(org_id)
    if not limit.admits(count):
        raise QuotaExceeded(
            f"Device limit reached ({count}/{limit.value})",
            details={"limit": limit.value, "in_use": count},
        )
    return limit


def check_session_admission(
    org_id: int,
    excluding_operator_id: int | None = None,
    now: datetime | None = None,
) -> EffectiveLimit:
    """
    Raise ConcurrencyLimitReached when live sessions already fill the limit.

    The operator being (re)admitted is excluded: their prior session on any
    device does not count against their own new login. See the module
    docstring for the accepted race window.
    """
    limit = effective_session_limit(org_id)
    if limit.unlimited:
        return limit
    count = count_live_sessions(org_id, excluding_operator_id=excluding_operator_id, now=now)
    if not limit.admits(count):
        raise ConcurrencyLimitReached(
            f"Concurrent session limit reached ({count}/{limit.value})",
            details={"limit": limit.value, "live": count},
        )
    return limit


def quota_summary(org_id: int, now: datetime | None = None) -> dict:
    """Limits and current usage for the back-office."""
    subscription = _active_subscription(org_id)
    device_limit = effective_device_limit(org_id)
    session_limit = effective_session_limit(org_id)
    devices = count_registered_devices(org_id)
    sessions = count_live_sessions(org_id, now=now)
    return {
        "plan": subscription.plan.code,
        "status": subscription.status,
        "devices": {
            "limit": device_limit.to_json(),
            "in_use": devices,
            "remaining": device_limit.remaining(devices),
            "billing_counter": subscription.devices_in_use,
        },
        "sessions": {
            "limit": session_limit.to_json(),
            "live": sessions,
            "remaining": session_limit.remaining(sessions),
        },
    }
