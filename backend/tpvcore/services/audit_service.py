# Overview: Append-only security/audit trail for the TPV subsystem.

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..models import SecurityEvent
from tpvcore.time_utils import resolve_now


def log_security_event(
    event_type: str,
    success: bool,
    org_id: int | None = None,
    device_id: str | None = None,
    operator_id: int | None = None,
    user_id: int | None = None,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    occurred_at: datetime | None = None,
    commit: bool = True,
) -> SecurityEvent:
    """
    Log security event to audit trail with tenant context.

    WHY: Immutable audit log for compliance and security monitoring.
    Credential changes, lifecycle transitions and login attempts are logged.

    commit=False adds the event to the caller's transaction so it is written
    (or rolled back) together with the change it describes.

    event_type examples:
    - ACTIVATION_TOKEN_ISSUED
    - DEVICE_ACTIVATED
    - DEVICE_CREDENTIAL_REVOKED
    - DEVICE_DEACTIVATED
    - LOGIN_SUCCESS / LOGIN_FAILED
    - SESSION_FORCE_CLOSED
    - ZOMBIE_SWEEP
    - FISCAL_CHAIN_BROKEN
    """
    event = SecurityEvent(
        org_id=org_id,
        device_id=device_id,
        operator_id=operator_id,
        user_id=user_id,
        event_type=event_type,
        resource=resource,
        action=action,
        success=success,
        reason=reason,
        ip_address=ip_address,
        occurred_at=resolve_now(occurred_at),
    )

    db.session.add(event)
    if commit:
        db.session.commit()

    return event


def list_security_events(org_id: int, event_type: str | None = None, limit: int = 100) -> list[SecurityEvent]:
    query = db.session.query(SecurityEvent).filter(SecurityEvent.org_id == org_id)
    if event_type:
        query = query.filter(SecurityEvent.event_type == event_type)
    return query.order_by(SecurityEvent.occurred_at.desc(), SecurityEvent.id.desc()).limit(limit).all()
