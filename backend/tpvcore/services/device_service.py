# Overview: Terminal registry: activation tokens, activation and device lifecycle.

"""
Device Registry and Activation

WHY: A terminal joins a tenant by typing a short code an administrator read
off the back-office. The code is single-use and expires; activation turns it
into a Device with its own secret, shown once and never retrievable again.

ACTIVATION CODES:
- 8 characters from ABCDEFGHJKLMNPQRSTUVWXYZ23456789 (no I, O, 0, 1)
- case-insensitive on input, spaces and dashes ignored
- only the SHA-256 of the uppercase code is stored
- valid for ACTIVATION_TOKEN_TTL; rows purged after ACTIVATION_TOKEN_RETENTION

CONCURRENCY: Consumption is one conditional UPDATE (consumed = false AND
not expired). Of N concurrent activations with the same code exactly one
updates a row; the others get InvalidToken.

LIFECYCLE:
- active <-> suspended: suspended terminals cannot log in or issue receipts
  but keep their quota slot
- active/suspended -> deactivated: irreversible, releases the quota slot,
  the row stays for historical receipts
- delete: only for terminals that never ran a shift or issued a receipt
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    AlreadyDeactivated,
    DeviceInactive,
    HasHistory,
    InvalidToken,
    TpvError,
    ValidationError,
)
from ..models import (
    ActivationToken,
    Device,
    DeviceSession,
    FiscalRecord,
    Organization,
    Subscription,
)
from tpvcore.time_utils import resolve_now
from .audit_service import log_security_event
from .concurrency import run_with_retry
from .device_auth_service import hash_secret
from .fiscal_ledger_service import validate_series
from .quota_service import check_device_admission
from .session_service import close_device_sessions
from .tenant_store import tenant_store

ACTIVATION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ACTIVATION_CODE_LENGTH = 8
ACTIVATION_TOKEN_TTL = timedelta(hours=24)
ACTIVATION_TOKEN_RETENTION = timedelta(days=7)
MAX_CODE_GENERATION_ATTEMPTS = 10

DEVICE_CODE_PREFIX = "TPV-"

DEFAULT_CAPABILITIES = {
    "allow_discounts": True,
    "max_discount_pct": 100,
    "allow_manual_price": False,
    "offline_mode_allowed": True,
    "product_cache_days": 7,
    "printer_profile": None,
    "peripherals": {},
}

UPDATABLE_FIELDS = {"name", "warehouse_id", "series_code", "capabilities"}


@dataclass
class ActivationResult:
    device: Device
    secret: str
    organization: Organization

    def to_dict(self) -> dict:
        return {
            "device_id": self.device.id,
            "device_code": self.device.code,
            "device_secret": self.secret,
            "fingerprint": self.device.fingerprint,
            "config": self.device.config(),
            "organization": {
                "id": self.organization.id,
                "name": self.organization.name,
                "tax_id": self.organization.tax_id,
            },
        }


# =============================================================================
# ACTIVATION TOKENS
# =============================================================================

def generate_activation_code() -> str:
    return "".join(secrets.choice(ACTIVATION_CODE_ALPHABET) for _ in range(ACTIVATION_CODE_LENGTH))


def normalize_activation_code(code: str | None) -> str:
    if not code or not isinstance(code, str):
        return ""
    return code.strip().upper().replace(" ", "").replace("-", "")


def _is_well_formed(code: str) -> bool:
    return len(code) == ACTIVATION_CODE_LENGTH and all(c in ACTIVATION_CODE_ALPHABET for c in code)


def issue_activation_token(
    org_id: int,
    issued_by_user_id: int | None = None,
    now: datetime | None = None,
) -> tuple[ActivationToken, str]:
    """
    Issue a single-use activation code for a new terminal.

    Raises QuotaExceeded when the tenant has no device slot left.
    Returns (token, plaintext_code); the plaintext is never stored.
    """
    now = resolve_now(now)
    tenant_store.organization(org_id)
    check_device_admission(org_id)

    for _ in range(MAX_CODE_GENERATION_ATTEMPTS):
        code = generate_activation_code()
        code_hash = hash_secret(code)
        collision = (
            db.session.query(ActivationToken.id)
            .filter(
                ActivationToken.code_hash == code_hash,
                ActivationToken.consumed.is_(False),
                ActivationToken.expires_at > now,
            )
            .first()
        )
        if collision is None:
            break
    else:
        raise TpvError("Could not generate a unique activation code")

    token = ActivationToken(
        org_id=org_id,
        code_hash=code_hash,
        expires_at=now + ACTIVATION_TOKEN_TTL,
        consumed=False,
        issued_by_user_id=issued_by_user_id,
        created_at=now,
    )
    db.session.add(token)
    db.session.flush()
    log_security_event(
        event_type="ACTIVATION_TOKEN_ISSUED",
        success=True,
        org_id=org_id,
        user_id=issued_by_user_id,
        reason=f"token {token.id} expires {token.expires_at.isoformat()}",
        occurred_at=now,
        commit=False,
    )
    db.session.commit()
    return token, code


def _next_device_code(org_id: int) -> str:
    """TPV-NNN, one past the highest suffix ever used in the tenant."""
    codes = tenant_store.devices(org_id).with_entities(Device.code).all()
    highest = 0
    for (code,) in codes:
        if code and code.startswith(DEVICE_CODE_PREFIX):
            suffix = code[len(DEVICE_CODE_PREFIX):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
    return f"{DEVICE_CODE_PREFIX}{highest + 1:03d}"


def activate_device(
    code: str,
    device_name: str,
    warehouse_id: int | None = None,
    origin_ip: str | None = None,
    app_version: str | None = None,
    now: datetime | None = None,
) -> ActivationResult:
    """
    Consume an activation code and register the terminal.

    Raises InvalidToken for unknown, consumed or expired codes (including
    losing a concurrent activation race), QuotaExceeded when device slots
    filled up since the token was issued.
    """
    now = resolve_now(now)
    normalized = normalize_activation_code(code)
    if not _is_well_formed(normalized):
        raise InvalidToken("Invalid or expired activation code")
    if not isinstance(device_name, str) or not device_name.strip():
        raise ValidationError("Device name is required")
    if app_version is not None and not isinstance(app_version, str):
        raise ValidationError("app_version must be a string")
    device_name = device_name.strip()
    series_code = validate_series(current_app.config.get("DEFAULT_RECEIPT_SERIES", "FS"))
    code_hash = hash_secret(normalized)

    def _op() -> ActivationResult:
        token = tenant_store.find_token_by_hash(code_hash)
        if token is None or token.consumed or token.expires_at.replace(tzinfo=None) <= now:
            raise InvalidToken("Invalid or expired activation code")
        token_id = token.id
        org = tenant_store.organization(token.org_id)
        org_id = org.id

        check_device_admission(org_id)

        if warehouse_id is not None:
            warehouse = tenant_store.get_warehouse(org_id, warehouse_id)
            if warehouse is None or not warehouse.is_active:
                raise ValidationError(f"Warehouse {warehouse_id} not found")

        claimed = db.session.execute(
            update(ActivationToken)
            .where(
                ActivationToken.id == token_id,
                ActivationToken.consumed.is_(False),
                ActivationToken.expires_at > now,
            )
            .values(consumed=True, consumed_at=now, consumed_from_ip=origin_ip)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.session.rollback()
            raise InvalidToken("Invalid or expired activation code")

        secret = secrets.token_hex(32)
        device = Device(
            id=uuid.uuid4().hex,
            org_id=org_id,
            code=_next_device_code(org_id),
            name=device_name,
            fingerprint=uuid.uuid4().hex,
            secret_hash=hash_secret(secret),
            credential_version=1,
            secret_version=1,
            warehouse_id=warehouse_id,
            series_code=series_code,
            capabilities=dict(DEFAULT_CAPABILITIES),
            status="active",
            last_seen_at=now,
            last_ip=origin_ip,
            app_version=app_version,
        )
        db.session.add(device)
        db.session.flush()

        db.session.execute(
            update(ActivationToken)
            .where(ActivationToken.id == token_id)
            .values(device_id=device.id)
            .execution_options(synchronize_session=False)
        )
        db.session.execute(
            update(Subscription)
            .where(Subscription.org_id == org_id)
            .values(devices_in_use=Subscription.devices_in_use + 1)
            .execution_options(synchronize_session=False)
        )
        log_security_event(
            event_type="DEVICE_ACTIVATED",
            success=True,
            org_id=org_id,
            device_id=device.id,
            reason=f"{device.code} via token {token_id}",
            ip_address=origin_ip,
            occurred_at=now,
            commit=False,
        )
        db.session.commit()
        return ActivationResult(device=device, secret=secret, organization=org)

    # IntegrityError: two activations in one tenant picked the same TPV-NNN
    return run_with_retry(_op, attempts=5, retry_on=(IntegrityError,))


def purge_activation_tokens(now: datetime | None = None, org_id: int | None = None) -> int:
    """Delete tokens past the retention window, consumed or not."""
    now = resolve_now(now)
    stmt = delete(ActivationToken).where(ActivationToken.created_at < now - ACTIVATION_TOKEN_RETENTION)
    if org_id is not None:
        stmt = stmt.where(ActivationToken.org_id == org_id)
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    db.session.commit()
    return result.rowcount


def list_activation_tokens(org_id: int, include_consumed: bool = False) -> list[ActivationToken]:
    query = tenant_store.activation_tokens(org_id)
    if not include_consumed:
        query = query.filter(ActivationToken.consumed.is_(False))
    return query.order_by(ActivationToken.created_at.desc()).all()


# =============================================================================
# DEVICE LIFECYCLE
# =============================================================================

def get_device(org_id: int, device_id: str) -> Device:
    return tenant_store.get_device(org_id, device_id)


def list_devices(org_id: int, status: str | None = None) -> list[Device]:
    query = tenant_store.devices(org_id)
    if status:
        query = query.filter(Device.status == status)
    return query.order_by(Device.code).all()


def revoke_credential(
    org_id: int,
    device_id: str,
    revoked_by_user_id: int | None = None,
    now: datetime | None = None,
) -> Device:
    """
    Invalidate every credential issued to the device.

    Bumps credential_version (the current secret becomes stale) and
    force-closes all OPEN sessions. The terminal must be re-provisioned
    with rotate_credential before it can log in again.
    """
    now = resolve_now(now)
    device = tenant_store.get_device(org_id, device_id)
    if device.status == "deactivated":
        raise DeviceInactive("Device is deactivated", details={"status": device.status})

    db.session.execute(
        update(Device)
        .where(Device.id == device.id, Device.org_id == org_id)
        .values(credential_version=Device.credential_version + 1)
        .execution_options(synchronize_session=False)
    )
    closed = close_device_sessions(org_id, device.id, "forced", now)
    log_security_event(
        event_type="DEVICE_CREDENTIAL_REVOKED",
        success=True,
        org_id=org_id,
        device_id=device.id,
        user_id=revoked_by_user_id,
        reason=f"{closed} session(s) force-closed",
        occurred_at=now,
        commit=False,
    )
    db.session.commit()
    return device


def rotate_credential(
    org_id: int,
    device_id: str,
    rotated_by_user_id: int | None = None,
    now: datetime | None = None,
) -> tuple[Device, str]:
    """
    Issue a new secret bound to the current credential_version.

    Returns (device, plaintext_secret); the secret is shown once.
    """
    now = resolve_now(now)
    device = tenant_store.get_device(org_id, device_id)
    if device.status == "deactivated":
        raise DeviceInactive("Device is deactivated", details={"status": device.status})

    secret = secrets.token_hex(32)
    db.session.execute(
        update(Device)
        .where(Device.id == device.id, Device.org_id == org_id)
        .values(secret_hash=hash_secret(secret), secret_version=Device.credential_version)
        .execution_options(synchronize_session=False)
    )
    log_security_event(
        event_type="DEVICE_CREDENTIAL_ROTATED",
        success=True,
        org_id=org_id,
        device_id=device.id,
        user_id=rotated_by_user_id,
        occurred_at=now,
        commit=False,
    )
    db.session.commit()
    return device, secret


def _set_status(
    org_id: int,
    device_id: str,
    from_status: str,
    to_status: str,
    event_type: str,
    user_id: int | None,
    now: datetime,
) -> Device:
    device = tenant_store.get_device(org_id, device_id)
    if device.status == "deactivated":
        raise DeviceInactive("Device is deactivated", details={"status": device.status})
    if device.status == to_status:
        return device

    result = db.session.execute(
        update(Device)
        .where(Device.id == device.id, Device.org_id == org_id, Device.status == from_status)
        .values(status=to_status)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise DeviceInactive(f"Device is not {from_status}")
    if to_status == "suspended":
        close_device_sessions(org_id, device.id, "forced", now)
    log_security_event(
        event_type=event_type,
        success=True,
        org_id=org_id,
        device_id=device.id,
        user_id=user_id,
        occurred_at=now,
        commit=False,
    )
    db.session.commit()
    return device


def suspend_device(org_id: int, device_id: str, user_id: int | None = None, now: datetime | None = None) -> Device:
    return _set_status(org_id, device_id, "active", "suspended", "DEVICE_SUSPENDED", user_id, resolve_now(now))


def resume_device(org_id: int, device_id: str, user_id: int | None = None, now: datetime | None = None) -> Device:
    return _set_status(org_id, device_id, "suspended", "active", "DEVICE_RESUMED", user_id, resolve_now(now))


def _release_device_slot(org_id: int) -> None:
    db.session.execute(
        update(Subscription)
        .where(Subscription.org_id == org_id)
        .values(
            devices_in_use=db.case(
                (Subscription.devices_in_use > 0, Subscription.devices_in_use - 1),
                else_=0,
            )
        )
        .execution_options(synchronize_session=False)
    )


def deactivate_device(
    org_id: int,
    device_id: str,
    reason: str,
    deactivated_by_user_id: int | None = None,
    now: datetime | None = None,
) -> Device:
    """
    Irreversibly retire a terminal.

    Force-closes its sessions and releases its quota slot. Raises
    AlreadyDeactivated on repeat calls.
    """
    now = resolve_now(now)
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("Deactivation reason is required")
    device = tenant_store.get_device(org_id, device_id)
    if device.status == "deactivated":
        raise AlreadyDeactivated("Device is already deactivated")

    result = db.session.execute(
        update(Device)
        .where(Device.id == device.id, Device.org_id == org_id, Device.status != "deactivated")
        .values(
            status="deactivated",
            deactivated_at=now,
            deactivated_by_user_id=deactivated_by_user_id,
            deactivation_reason=reason.strip(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise AlreadyDeactivated("Device is already deactivated")

    close_device_sessions(org_id, device.id, "forced", now)
    _release_device_slot(org_id)
    log_security_event(
        event_type="DEVICE_DEACTIVATED",
        success=True,
        org_id=org_id,
        device_id=device.id,
        user_id=deactivated_by_user_id,
        reason=reason.strip(),
        occurred_at=now,
        commit=False,
    )
    db.session.commit()
    return device


def device_has_history(org_id: int, device_id: str) -> dict:
    shifts = (
        tenant_store.sessions(org_id)
        .filter(DeviceSession.device_id == device_id, DeviceSession.shift_ref.isnot(None))
        .count()
    )
    records = tenant_store.fiscal_records(org_id).filter(FiscalRecord.device_id == device_id).count()
    return {"sessions_with_shift": shifts, "fiscal_records": records}


def delete_device(org_id: int, device_id: str, deleted_by_user_id: int | None = None) -> None:
    """
    Hard-delete a terminal that never ran a shift or issued a receipt.

    Raises HasHistory otherwise; deactivation is the only option then.
    """
    device = tenant_store.get_device(org_id, device_id)
    history = device_has_history(org_id, device.id)
    if history["sessions_with_shift"] or history["fiscal_records"]:
        raise HasHistory(
            "Device has sales history; deactivate it instead",
            details=history,
        )

    held_slot = device.status != "deactivated"
    device_pk = device.id
    device_code = device.code

    db.session.execute(
        update(ActivationToken)
        .where(ActivationToken.device_id == device_pk)
        .values(device_id=None)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        delete(DeviceSession)
        .where(DeviceSession.device_id == device_pk)
        .execution_options(synchronize_session=False)
    )
    db.session.expunge(device)
    db.session.execute(
        delete(Device)
        .where(Device.id == device_pk, Device.org_id == org_id)
        .execution_options(synchronize_session=False)
    )
    if held_slot:
        _release_device_slot(org_id)
    log_security_event(
        event_type="DEVICE_DELETED",
        success=True,
        org_id=org_id,
        device_id=device_pk,
        user_id=deleted_by_user_id,
        reason=device_code,
        commit=False,
    )
    db.session.commit()


def update_device(org_id: int, device_id: str, changes: dict) -> Device:
    """
    Update name, warehouse, receipt series or capability keys.

    Capability updates are merged into the current configuration; unknown
    keys are rejected.
    """
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields not updatable: {', '.join(sorted(unknown))}")

    device = tenant_store.get_device(org_id, device_id)
    if device.status == "deactivated":
        raise DeviceInactive("Device is deactivated", details={"status": device.status})

    if "name" in changes:
        name = changes["name"].strip() if isinstance(changes["name"], str) else ""
        if not name:
            raise ValidationError("Device name is required")
        device.name = name

    if "warehouse_id" in changes:
        warehouse_id = changes["warehouse_id"]
        if warehouse_id is not None and (not isinstance(warehouse_id, int) or isinstance(warehouse_id, bool)):
            raise ValidationError("warehouse_id must be an integer")
        if warehouse_id is not None:
            warehouse = tenant_store.get_warehouse(org_id, warehouse_id)
            if warehouse is None or not warehouse.is_active:
                raise ValidationError(f"Warehouse {warehouse_id} not found")
        device.warehouse_id = warehouse_id

    if "series_code" in changes:
        device.series_code = validate_series(changes["series_code"])

    if "capabilities" in changes:
        device.capabilities = _merge_capabilities(device.capabilities or {}, changes["capabilities"] or {})

    db.session.commit()
    return device


def _merge_capabilities(current: dict, updates: dict) -> dict:
    if not isinstance(updates, dict):
        raise ValidationError("capabilities must be an object")
    unknown = set(updates) - set(DEFAULT_CAPABILITIES)
    if unknown:
        raise ValidationError(f"Unknown capabilities: {', '.join(sorted(unknown))}")
    if "max_discount_pct" in updates:
        pct = updates["max_discount_pct"]
        if not isinstance(pct, (int, float)) or isinstance(pct, bool) or not 0 <= pct <= 100:
            raise ValidationError("max_discount_pct must be between 0 and 100")
    if "product_cache_days" in updates:
        days = updates["product_cache_days"]
        if not isinstance(days, int) or isinstance(days, bool) or days < 0:
            raise ValidationError("product_cache_days must be a non-negative integer")
    merged = dict(DEFAULT_CAPABILITIES)
    merged.update(current)
    merged.update(updates)
    return merged
