# Overview: Closed set of tagged error kinds raised by the TPV services.

"""
TPV Error Taxonomy

WHY: Callers branch on the error kind, never on message text. Every error
carries a stable `code` (the kind name sent to clients), a `category`
used for logging policy, and the HTTP status the API layer answers with.

CATEGORIES:
- admission: expected, user-facing, recoverable by the tenant (plan upgrade,
  closing a session). Never logged as a system fault.
- credential: user-facing; each kind is distinct so a terminal can tell
  "wrong secret" from "device was revoked, re-provision needed".
- conflict: internal write races. Retried inside the fiscal ledger; only
  LedgerUnavailable ever reaches a caller.
- integrity: hard stops with no override path.
"""

from __future__ import annotations


class TpvError(Exception):
    """Base class for every error kind of the TPV subsystem."""

    code = "TpvError"
    category = "internal"
    status_code = 500

    def __init__(self, message: str | None = None, details: dict | None = None):
        super().__init__(message or self.code)
        self.details = details or {}

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict:
        payload = {"ok": False, "error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# =============================================================================
# ADMISSION
# =============================================================================

class AdmissionError(TpvError):
    category = "admission"
    status_code = 403


class QuotaExceeded(AdmissionError):
    code = "QuotaExceeded"


class ConcurrencyLimitReached(AdmissionError):
    code = "ConcurrencyLimitReached"
    status_code = 409


class SubscriptionInactive(AdmissionError):
    code = "SubscriptionInactive"


# =============================================================================
# CREDENTIALS
# =============================================================================

class CredentialError(TpvError):
    category = "credential"
    status_code = 401


class InvalidToken(CredentialError):
    code = "InvalidToken"


class InvalidCredential(CredentialError):
    code = "InvalidCredential"


class StaleCredential(CredentialError):
    code = "StaleCredential"


class LoginLocked(CredentialError):
    code = "LoginLocked"
    status_code = 429


# =============================================================================
# CONFLICTS
# =============================================================================

class ConflictError(TpvError):
    category = "conflict"
    status_code = 409


class LedgerWriteConflict(ConflictError):
    """Lost a sequence or chain-head race. Never surfaced to end users."""
    code = "LedgerWriteConflict"


class LedgerUnavailable(ConflictError):
    """Ledger attach retries exhausted; transient, the client may retry."""
    code = "LedgerUnavailable"
    status_code = 503


# =============================================================================
# INTEGRITY
# =============================================================================

class IntegrityViolation(TpvError):
    category = "integrity"
    status_code = 409


class HasHistory(IntegrityViolation):
    code = "HasHistory"


class ImmutableRecordError(IntegrityViolation):
    code = "ImmutableRecordError"


# =============================================================================
# STATE / LOOKUP / VALIDATION
# =============================================================================

class DeviceInactive(TpvError):
    code = "DeviceInactive"
    category = "state"
    status_code = 409


class AlreadyDeactivated(TpvError):
    code = "AlreadyDeactivated"
    category = "state"
    status_code = 409


class NotFoundError(TpvError):
    category = "not_found"
    status_code = 404


class DeviceNotFound(NotFoundError):
    code = "DeviceNotFound"


class SessionNotFound(NotFoundError):
    """Soft: terminals treat it as 'session already closed'."""
    code = "SessionNotFound"


class TenantNotFound(NotFoundError):
    code = "TenantNotFound"


class RecordNotFound(NotFoundError):
    code = "RecordNotFound"


class ValidationError(TpvError):
    code = "ValidationError"
    category = "validation"
    status_code = 400


USER_FACING_CATEGORIES = {"admission", "credential", "state", "not_found", "validation"}
