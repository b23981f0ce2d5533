# Overview: Operator records and bcrypt PIN verification for terminal logins.

"""
Operator Service

WHY: Operators share terminals and identify themselves by PIN only. The PIN
is therefore unique within a tenant and is the lookup key at login.

SECURITY NOTES:
- PINs hashed with bcrypt (cost from BCRYPT_ROUNDS, 12 by default)
- PINs must be 4 to 6 digits
- Lookup is tenant-scoped and only considers active operators
- bcrypt.checkpw is timing-safe; every candidate hash is checked
"""

from __future__ import annotations

import bcrypt
from flask import current_app

from ..extensions import db
from ..errors import ValidationError
from ..models import Operator
from .tenant_store import tenant_store

PIN_MIN_LENGTH = 4
PIN_MAX_LENGTH = 6


def validate_pin(pin: str) -> None:
    if not isinstance(pin, str) or not pin.isdigit():
        raise ValidationError("PIN must contain digits only")
    if not PIN_MIN_LENGTH <= len(pin) <= PIN_MAX_LENGTH:
        raise ValidationError(f"PIN must be {PIN_MIN_LENGTH} to {PIN_MAX_LENGTH} digits")


def hash_pin(pin: str) -> str:
    """Hash PIN using bcrypt. PIN format is validated before hashing."""
    validate_pin(pin)
    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    hashed = bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_pin(pin: str, pin_hash: str | None) -> bool:
    if not pin or not pin_hash:
        return False
    try:
        return bcrypt.checkpw(pin.encode("utf-8"), pin_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def find_operator_by_pin(org_id: int, pin: str) -> Operator | None:
    """Resolve the active operator of a tenant owning this PIN."""
    if not pin:
        return None
    candidates = (
        tenant_store.operators(org_id)
        .filter(Operator.is_active.is_(True), Operator.pin_hash.isnot(None))
        .order_by(Operator.id)
        .all()
    )
    for operator in candidates:
        if verify_pin(pin, operator.pin_hash):
            return operator
    return None


def create_operator(org_id: int, name: str, pin: str, permissions: dict | None = None) -> Operator:
    """
    Create an operator with a tenant-unique PIN.

    Raises ValidationError for a malformed or already-used PIN.
    """
    tenant_store.organization(org_id)
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Operator name is required")
    validate_pin(pin)
    if find_operator_by_pin(org_id, pin) is not None:
        raise ValidationError("PIN already in use in this organization")

    operator = Operator(
        org_id=org_id,
        name=name.strip(),
        pin_hash=hash_pin(pin),
        permissions=permissions or {},
        is_active=True,
    )
    db.session.add(operator)
    db.session.commit()
    return operator


def set_operator_active(org_id: int, operator_id: int, is_active: bool) -> Operator:
    operator = tenant_store.operators(org_id).filter(Operator.id == operator_id).first()
    if operator is None:
        raise ValidationError(f"Operator {operator_id} not found")
    operator.is_active = is_active
    db.session.commit()
    return operator
