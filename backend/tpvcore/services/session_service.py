# Overview: Operator sessions on terminals: login, heartbeat, close and zombie sweep.

"""
Terminal Session Management

WHY: Operators share terminals. Each login opens a session bound to one
(device, operator) pair. Sessions end explicitly (logout, forced close) or
implicitly when the terminal stops heartbeating (crash, network loss).

LIVENESS:
- status OPEN is authoritative for explicit termination
- last_heartbeat_at inside LIVENESS_WINDOW is authoritative for implicit
  termination
- a session is live only when BOTH hold; every consumer uses is_live() or
  live_sessions_query(), never the flag alone

ZOMBIES: OPEN sessions whose heartbeat is older than ZOMBIE_THRESHOLD are
closed by sweep_zombies with reason "timeout". Each close is a conditional
UPDATE that re-checks staleness, so a heartbeat landing between the sweep's
read and its write keeps the session open.

CREDENTIAL VERSION: checked at login only. Revocation closes open sessions
itself; heartbeats do not re-validate the device credential.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import LoginLocked, InvalidCredential, SessionNotFound, ValidationError
from ..models import Device, DeviceSession, Operator
from ..models.devices import SESSION_END_REASONS
from tpvcore.time_utils import resolve_now
from .audit_service import log_security_event
from .concurrency import run_with_retry
from .device_auth_service import verify_device_credentials
from .login_throttle_service import (
    device_identifier,
    is_locked,
    record_failed_attempt,
    record_successful_login,
)
from .operator_service import find_operator_by_pin
from .quota_service import LIVENESS_WINDOW, check_session_admission, live_sessions_query
from .tenant_store import tenant_store

ZOMBIE_THRESHOLD = 2 * LIVENESS_WINDOW

STATUS_OPEN = "OPEN"
STATUS_CLOSED = "CLOSED"


@dataclass
class LoginResult:
    session: DeviceSession
    operator: Operator
    device: Device

    def to_dict(self) -> dict:
        return {
            "session_id": self.session.id,
            "operator": self.operator.to_profile(),
            "device": {
                "id": self.device.id,
                "code": self.device.code,
                "name": self.device.name,
                **self.device.config(),
            },
            "heartbeat_interval_seconds": int(LIVENESS_WINDOW.total_seconds() // 2),
        }


def is_live(session: DeviceSession, now: datetime | None = None) -> bool:
    """OPEN and heartbeated within the liveness window."""
    now = resolve_now(now)
    if session.status != STATUS_OPEN or session.last_heartbeat_at is None:
        return False
    return now - session.last_heartbeat_at.replace(tzinfo=None) < LIVENESS_WINDOW


def _close_values(reason: str, now: datetime) -> dict:
    return {"status": STATUS_CLOSED, "ended_at": now, "end_reason": reason}


def close_device_sessions(org_id: int, device_id: str, reason: str, now: datetime | None = None) -> int:
    """
    Close every OPEN session of a device in the caller's transaction.

    Used by revocation, suspension and deactivation. Returns rows closed.
    """
    now = resolve_now(now)
    result = db.session.execute(
        update(DeviceSession)
        .where(
            DeviceSession.org_id == org_id,
            DeviceSession.device_id == device_id,
            DeviceSession.status == STATUS_OPEN,
        )
        .values(**_close_values(reason, now))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def login(
    device_id: str,
    device_secret: str,
    pin: str,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> LoginResult:
    """
    Open a session for the operator owning `pin` on an authenticated device.

    ORDER:
    1. Device credentials (DeviceNotFound / DeviceInactive / InvalidCredential /
       StaleCredential)
    2. Terminal PIN lockout (LoginLocked)
    3. Operator by PIN, tenant-scoped, active only (InvalidCredential, counted
       toward lockout)
    4. Session admission, excluding this operator (ConcurrencyLimitReached,
       no side effects)
    5. Force-close the pair's prior OPEN session, open the new one

    Step 5 races with a concurrent login of the same pair are decided by the
    partial unique index on OPEN pairs; the loser retries from step 4.
    """
    now = resolve_now(now)
    device = verify_device_credentials(device_id, device_secret)
    org_id = device.org_id
    device_id = device.id
    tenant_store.organization(org_id)

    locked, seconds_remaining = is_locked(device_identifier(device_id), now)
    if locked:
        raise LoginLocked(
            "Too many failed PIN attempts on this terminal",
            details={"seconds_until_unlock": seconds_remaining},
        )

    operator = find_operator_by_pin(org_id, pin)
    if operator is None:
        record_failed_attempt(org_id, device_id, ip_address=ip_address, now=now)
        raise InvalidCredential("Invalid PIN")
    operator_id = operator.id

    def _op() -> DeviceSession:
        check_session_admission(org_id, excluding_operator_id=operator_id, now=now)

        db.session.execute(
            update(DeviceSession)
            .where(
                DeviceSession.device_id == device_id,
                DeviceSession.operator_id == operator_id,
                DeviceSession.status == STATUS_OPEN,
            )
            .values(**_close_values("forced", now))
            .execution_options(synchronize_session=False)
        )

        session = DeviceSession(
            id=uuid.uuid4().hex,
            org_id=org_id,
            device_id=device_id,
            operator_id=operator_id,
            status=STATUS_OPEN,
            started_at=now,
            last_activity_at=now,
            last_heartbeat_at=now,
            ip_address=ip_address,
        )
        db.session.add(session)
        db.session.flush()

        db.session.execute(
            update(Device)
            .where(Device.id == device_id)
            .values(last_seen_at=now, last_ip=ip_address)
            .execution_options(synchronize_session=False)
        )
        db.session.execute(
            update(Operator)
            .where(Operator.id == operator_id)
            .values(last_login_at=now)
            .execution_options(synchronize_session=False)
        )
        record_successful_login(org_id, device_id, operator_id, ip_address=ip_address, now=now)
        db.session.commit()
        return session

    session = run_with_retry(_op, retry_on=(IntegrityError,))
    return LoginResult(
        session=session,
        operator=db.session.get(Operator, operator_id),
        device=db.session.get(Device, device_id),
    )


def heartbeat(
    device_id: str,
    session_id: str,
    shift_ref: str | None = None,
    now: datetime | None = None,
) -> DeviceSession:
    """
    Refresh liveness of an OPEN session.

    Idempotent and last-write-wins on the timestamp. Raises SessionNotFound
    when the session is unknown, belongs to another device, or is CLOSED;
    terminals treat that as "already closed" and log in again.
    """
    now = resolve_now(now)
    values = {"last_heartbeat_at": now, "last_activity_at": now}
    if shift_ref:
        values["shift_ref"] = shift_ref

    result = db.session.execute(
        update(DeviceSession)
        .where(
            DeviceSession.id == session_id,
            DeviceSession.device_id == device_id,
            DeviceSession.status == STATUS_OPEN,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.session.rollback()
        raise SessionNotFound("Session is closed or does not exist")

    db.session.execute(
        update(Device)
        .where(Device.id == device_id)
        .values(last_seen_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return db.session.get(DeviceSession, session_id)


def logout(session_id: str, device_id: str | None = None, now: datetime | None = None) -> bool:
    """
    Close a session with reason "logout".

    Idempotent: an unknown or already-closed session is a no-op.
    Returns True only when this call closed the session.
    """
    now = resolve_now(now)
    stmt = update(DeviceSession).where(
        DeviceSession.id == session_id,
        DeviceSession.status == STATUS_OPEN,
    )
    if device_id is not None:
        stmt = stmt.where(DeviceSession.device_id == device_id)
    result = db.session.execute(
        stmt.values(**_close_values("logout", now)).execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def force_close(
    org_id: int,
    session_id: str,
    reason: str = "forced",
    closed_by_user_id: int | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Administrative close ("kick session").

    Raises SessionNotFound for sessions outside the tenant. Closing an
    already-closed session returns False.
    """
    if reason not in SESSION_END_REASONS or reason == "logout":
        raise ValidationError(f"Invalid close reason: {reason}")
    now = resolve_now(now)
    session = tenant_store.get_session(org_id, session_id)

    result = db.session.execute(
        update(DeviceSession)
        .where(
            DeviceSession.id == session.id,
            DeviceSession.org_id == org_id,
            DeviceSession.status == STATUS_OPEN,
        )
        .values(**_close_values(reason, now))
        .execution_options(synchronize_session=False)
    )
    closed = result.rowcount == 1
    if closed:
        log_security_event(
            event_type="SESSION_FORCE_CLOSED",
            success=True,
            org_id=org_id,
            device_id=session.device_id,
            operator_id=session.operator_id,
            user_id=closed_by_user_id,
            reason=reason,
            occurred_at=now,
            commit=False,
        )
    db.session.commit()
    return closed


def _find_zombie_candidates(org_id: int, cutoff: datetime) -> list[str]:
    rows = (
        tenant_store.sessions(org_id)
        .with_entities(DeviceSession.id)
        .filter(
            DeviceSession.status == STATUS_OPEN,
            DeviceSession.last_heartbeat_at < cutoff,
        )
        .all()
    )
    return [row[0] for row in rows]


def sweep_zombies(org_id: int, now: datetime | None = None) -> int:
    """
    Close OPEN sessions whose heartbeat is older than ZOMBIE_THRESHOLD.

    Safe to run concurrently with itself and with heartbeats: each candidate
    is closed by an UPDATE that repeats the staleness predicate, so a session
    heartbeated after the candidate read is left alone.
    """
    now = resolve_now(now)
    cutoff = now - ZOMBIE_THRESHOLD

    closed = 0
    for session_id in _find_zombie_candidates(org_id, cutoff):
        result = db.session.execute(
            update(DeviceSession)
            .where(
                DeviceSession.id == session_id,
                DeviceSession.org_id == org_id,
                DeviceSession.status == STATUS_OPEN,
                DeviceSession.last_heartbeat_at < cutoff,
            )
            .values(**_close_values("timeout", now))
            .execution_options(synchronize_session=False)
        )
        closed += result.rowcount

    if closed:
        log_security_event(
            event_type="ZOMBIE_SWEEP",
            success=True,
            org_id=org_id,
            reason=f"{closed} stale session(s) closed",
            occurred_at=now,
            commit=False,
        )
    db.session.commit()
    return closed


def sweep_all_tenants(now: datetime | None = None) -> dict[int, int]:
    """Run the zombie sweep for every active tenant (scheduler entry point)."""
    now = resolve_now(now)
    return {org_id: sweep_zombies(org_id, now) for org_id in tenant_store.active_org_ids()}


def list_live_sessions(org_id: int, now: datetime | None = None) -> list[DeviceSession]:
    return live_sessions_query(org_id, now).order_by(DeviceSession.started_at).all()


def list_sessions(
    org_id: int,
    status: str | None = None,
    device_id: str | None = None,
    limit: int = 100,
) -> list[DeviceSession]:
    query = tenant_store.sessions(org_id)
    if status:
        query = query.filter(DeviceSession.status == status.upper())
    if device_id:
        query = query.filter(DeviceSession.device_id == device_id)
    return query.order_by(DeviceSession.started_at.desc()).limit(limit).all()
