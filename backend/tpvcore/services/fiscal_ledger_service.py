# Overview: Numbered, hash-chained fiscal receipts with compare-and-swap attachment.

"""
Fiscal Ledger

WHY: Receipts are legal records. Each one is numbered per (series, year)
without gaps or reuse, and hash-linked to the previous receipt of the tenant
so any later alteration, deletion or reordering is detectable.

HASH (compatibility contract with the fiscal authority, order fixed, no
separator, SHA-256, uppercase hex):
    issuer tax id + record code + issue date YYYYMMDD + record type
    + tax total "0.00" + grand total "0.00" + previous hash or "GENESIS"

CHAIN: The predecessor is the tenant's ledger head, across all series. A
record attaches by swapping ledger_heads.head_hash from the hash it was
computed against to its own. Losing that swap (or the unique constraints on
chain position / previous hash / number) raises LedgerWriteConflict; the
whole attempt rolls back, sequence reservation included, and is retried
with the new head. After MAX_ATTACH_ATTEMPTS the caller gets
LedgerUnavailable, a transient error.

IMMUTABILITY: enforced by mapper/session hooks on the models. Corrections
are rectifying records (type R5) in the same chain.

VERIFICATION: verify_chain never repairs anything. A break is logged at
ERROR and recorded as a FISCAL_CHAIN_BROKEN security event.
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    LedgerUnavailable,
    LedgerWriteConflict,
    SessionNotFound,
    ValidationError,
)
from ..models import (
    DeviceSession,
    FiscalRecord,
    FiscalSequence,
    FiscalTaxLine,
    LedgerHead,
    VoidedSequence,
)
from ..models.fiscal import GENESIS_MARKER, RECORD_TYPE_RECTIFYING, RECORD_TYPE_SIMPLIFIED
from tpvcore.time_utils import resolve_now
from .audit_service import log_security_event
from .concurrency import run_with_retry
from .tax_service import ReceiptAmounts, cents_to_str, compute_receipt_amounts
from .tenant_store import tenant_store

MAX_ATTACH_ATTEMPTS = 5
ATTACH_BACKOFF_SECONDS = 0.02
RECTIFYING_SERIES_SUFFIX = "R"
# Issuing series leave room for the rectifying suffix in the 16-char column
SERIES_MAX_LENGTH = 15
RECTIFYING_SERIES_MAX_LENGTH = SERIES_MAX_LENGTH + len(RECTIFYING_SERIES_SUFFIX)


@dataclass(frozen=True)
class LedgerHeadSnapshot:
    head_hash: str | None
    record_count: int

    @property
    def previous_hash(self) -> str:
        return self.head_hash or GENESIS_MARKER


@dataclass(frozen=True)
class ChainVerification:
    valid: bool
    checked: int
    first_break_at: int | None = None  # chain position of the first divergence
    record_id: int | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "checked": self.checked,
            "first_break_at": self.first_break_at,
            "record_id": self.record_id,
            "reason": self.reason,
        }


# =============================================================================
# HASHING
# =============================================================================

def format_record_code(series: str, year: int, number: int) -> str:
    return f"{series}-{year}-{number:06d}"


def canonical_string(
    issuer_tax_id: str,
    record_code: str,
    issue_date: str,
    record_type: str,
    tax_total_cents: int,
    grand_total_cents: int,
    previous_hash: str | None,
) -> str:
    return "".join([
        issuer_tax_id,
        record_code,
        issue_date,
        record_type,
        cents_to_str(tax_total_cents),
        cents_to_str(grand_total_cents),
        previous_hash or GENESIS_MARKER,
    ])


def compute_record_hash(*args, **kwargs) -> str:
    """SHA-256 of canonical_string(...), uppercase hex."""
    return hashlib.sha256(canonical_string(*args, **kwargs).encode("utf-8")).hexdigest().upper()


def recompute_hash(record: FiscalRecord) -> str:
    return compute_record_hash(
        record.issuer_tax_id,
        record.code,
        record.issue_date,
        record.record_type,
        record.tax_total_cents,
        record.grand_total_cents,
        record.previous_hash,
    )


# =============================================================================
# SEQUENCES
# =============================================================================

def validate_series(series: str | None, max_length: int = SERIES_MAX_LENGTH) -> str:
    series = series.strip().upper() if isinstance(series, str) else ""
    if not series or len(series) > max_length or not series.isalnum():
        raise ValidationError(f"Series must be 1-{max_length} alphanumeric characters")
    return series


def rectifying_series(series: str) -> str:
    return f"{series}{RECTIFYING_SERIES_SUFFIX}"


def _reserve_number(org_id: int, series: str, year: int) -> int:
    """
    Atomically take the next number inside the caller's transaction.

    In-place increment then read back. On first use the row is created with
    next_number=2; a concurrent first use fails on the unique constraint and
    the caller retries, finding the row.
    """
    stmt = (
        update(FiscalSequence)
        .where(
            FiscalSequence.org_id == org_id,
            FiscalSequence.series == series,
            FiscalSequence.year == year,
        )
        .values(next_number=FiscalSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(FiscalSequence.next_number)
            .filter_by(org_id=org_id, series=series, year=year)
            .scalar()
        )
        return current - 1

    db.session.add(FiscalSequence(org_id=org_id, series=series, year=year, next_number=2))
    db.session.flush()
    return 1


def next_sequence(org_id: int, series: str, year: int) -> int:
    """
    Reserve and commit the next number for (series, year).

    A number reserved here is never handed out again; if it will not carry
    a receipt it must be voided with void_sequence.
    """
    tenant_store.organization(org_id)
    series = validate_series(series, RECTIFYING_SERIES_MAX_LENGTH)

    def _op() -> int:
        number = _reserve_number(org_id, series, year)
        db.session.commit()
        return number

    return run_with_retry(_op, attempts=MAX_ATTACH_ATTEMPTS, retry_on=(IntegrityError,))


def void_sequence(
    org_id: int,
    series: str,
    year: int,
    number: int,
    reason: str,
    now: datetime | None = None,
) -> VoidedSequence:
    """Record that a reserved number will never carry a receipt."""
    now = resolve_now(now)
    series = validate_series(series, RECTIFYING_SERIES_MAX_LENGTH)
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("Void reason is required")

    next_number = (
        tenant_store.sequences(org_id)
        .with_entities(FiscalSequence.next_number)
        .filter(FiscalSequence.series == series, FiscalSequence.year == year)
        .scalar()
    )
    if next_number is None or not 1 <= number < next_number:
        raise ValidationError(f"Number {number} was never reserved in {series}/{year}")

    used = tenant_store.fiscal_records(org_id).filter(
        FiscalRecord.series == series,
        FiscalRecord.year == year,
        FiscalRecord.number == number,
    ).first()
    if used is not None:
        raise ValidationError(f"Number {number} already carries receipt {used.code}")

    voided = VoidedSequence(
        org_id=org_id,
        series=series,
        year=year,
        number=number,
        reason=reason.strip(),
        voided_at=now,
    )
    db.session.add(voided)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError(f"Number {number} is already voided")
    return voided


def list_voided(org_id: int) -> list[VoidedSequence]:
    return (
        db.session.query(VoidedSequence)
        .filter(VoidedSequence.org_id == org_id)
        .order_by(VoidedSequence.series, VoidedSequence.year, VoidedSequence.number)
        .all()
    )


# =============================================================================
# ISSUANCE
# =============================================================================

def _read_ledger_head(org_id: int) -> LedgerHeadSnapshot:
    """Fresh column read of the tenant ledger head (never the identity map)."""
    row = (
        db.session.query(LedgerHead.head_hash, LedgerHead.record_count)
        .filter(LedgerHead.org_id == org_id)
        .first()
    )
    if row is None:
        return LedgerHeadSnapshot(head_hash=None, record_count=0)
    return LedgerHeadSnapshot(head_hash=row[0], record_count=row[1])


def _swap_ledger_head(org_id: int, expected: LedgerHeadSnapshot, record: FiscalRecord) -> None:
    if expected.head_hash is None and expected.record_count == 0:
        exists = db.session.query(LedgerHead.org_id).filter(LedgerHead.org_id == org_id).first()
        if exists is None:
            # First record of the tenant; a concurrent genesis fails on the primary key
            db.session.add(LedgerHead(
                org_id=org_id,
                head_hash=record.record_hash,
                head_record_id=record.id,
                record_count=1,
            ))
            db.session.flush()
            return

    head_match = (
        LedgerHead.head_hash.is_(None)
        if expected.head_hash is None
        else LedgerHead.head_hash == expected.head_hash
    )
    result = db.session.execute(
        update(LedgerHead)
        .where(
            LedgerHead.org_id == org_id,
            head_match,
            LedgerHead.record_count == expected.record_count,
        )
        .values(
            head_hash=record.record_hash,
            head_record_id=record.id,
            record_count=expected.record_count + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise LedgerWriteConflict(f"Ledger head moved from {expected.previous_hash[:12]}")


def _attach(
    org_id: int,
    issuer_tax_id: str,
    series: str,
    record_type: str,
    amounts: ReceiptAmounts,
    issued_at: datetime,
    origin: dict,
) -> FiscalRecord:
    head = _read_ledger_head(org_id)
    try:
        number = _reserve_number(org_id, series, issued_at.year)
        code = format_record_code(series, issued_at.year, number)
        previous_hash = head.previous_hash
        record_hash = compute_record_hash(
            issuer_tax_id,
            code,
            issued_at.strftime("%Y%m%d"),
            record_type,
            amounts.tax_total_cents,
            amounts.grand_total_cents,
            previous_hash,
        )
        record = FiscalRecord(
            org_id=org_id,
            series=series,
            year=issued_at.year,
            number=number,
            code=code,
            record_type=record_type,
            issuer_tax_id=issuer_tax_id,
            issued_at=issued_at,
            tax_total_cents=amounts.tax_total_cents,
            grand_total_cents=amounts.grand_total_cents,
            chain_position=head.record_count + 1,
            previous_hash=previous_hash,
            record_hash=record_hash,
            lines=amounts.lines,
            **origin,
        )
        db.session.add(record)
        db.session.flush()

        for tax_line in amounts.tax_lines:
            db.session.add(FiscalTaxLine(
                record_id=record.id,
                rate_bps=tax_line.rate_bps,
                base_cents=tax_line.base_cents,
                quota_cents=tax_line.quota_cents,
                total_cents=tax_line.total_cents,
            ))
        db.session.flush()

        _swap_ledger_head(org_id, head, record)
    except IntegrityError as exc:
        raise LedgerWriteConflict(f"Ledger constraint race: {exc.orig}") from exc
    return record


def _issue(
    org_id: int,
    series: str,
    record_type: str,
    amounts: ReceiptAmounts,
    origin: dict,
    now: datetime | None,
) -> FiscalRecord:
    issued_at = resolve_now(now)
    issuer_tax_id = tenant_store.organization(org_id).tax_id

    for attempt in range(1, MAX_ATTACH_ATTEMPTS + 1):
        try:
            record = _attach(org_id, issuer_tax_id, series, record_type, amounts, issued_at, origin)
            db.session.commit()
            return record
        except LedgerWriteConflict as exc:
            db.session.rollback()
            current_app.logger.warning(
                "Fiscal ledger conflict for org %s (attempt %d/%d): %s",
                org_id, attempt, MAX_ATTACH_ATTEMPTS, exc,
            )
            if attempt < MAX_ATTACH_ATTEMPTS:
                time.sleep(ATTACH_BACKOFF_SECONDS * attempt)

    raise LedgerUnavailable("Fiscal ledger is busy; retry the receipt")


def _payment_method(payload: dict) -> str | None:
    method = payload.get("payment_method")
    if method is not None and not isinstance(method, str):
        raise ValidationError("payment_method must be a string")
    return method


def _origin(org_id: int, device_id: str | None, session_id: str | None) -> dict:
    origin = {"device_id": device_id, "session_id": None, "operator_id": None}
    if session_id:
        session = tenant_store.sessions(org_id).filter(DeviceSession.id == session_id).first()
        if session is None or (device_id and session.device_id != device_id):
            raise SessionNotFound(f"Session {session_id} not found")
        origin["session_id"] = session.id
        origin["operator_id"] = session.operator_id
    return origin


def issue_record(
    org_id: int,
    series: str,
    payload: dict,
    device_id: str | None = None,
    session_id: str | None = None,
    now: datetime | None = None,
) -> FiscalRecord:
    """
    Issue a simplified receipt (F2) in `series`.

    payload: {"lines": [{"description", "quantity", "unit_price" | "total",
    "tax_rate"}], "payment_method"?}
    """
    series = validate_series(series)
    payload = payload or {}
    amounts = compute_receipt_amounts(payload.get("lines"))
    origin = _origin(org_id, device_id, session_id)
    origin["payment_method"] = _payment_method(payload)
    return _issue(org_id, series, RECORD_TYPE_SIMPLIFIED, amounts, origin, now)


def issue_rectifying_record(
    org_id: int,
    original_record_id: int,
    payload: dict,
    reason: str,
    device_id: str | None = None,
    session_id: str | None = None,
    now: datetime | None = None,
) -> FiscalRecord:
    """
    Issue a rectifying receipt (R5) referencing an issued record.

    Lines express the correction by differences (negative amounts allowed).
    Numbered in the original series plus "R"; chained like any other record.
    """
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("Rectification reason is required")
    original = tenant_store.get_record(org_id, original_record_id)
    series = validate_series(rectifying_series(original.series), RECTIFYING_SERIES_MAX_LENGTH)
    payload = payload or {}
    amounts = compute_receipt_amounts(payload.get("lines"), allow_negative=True)
    origin = _origin(org_id, device_id, session_id)
    origin.update({
        "payment_method": _payment_method(payload),
        "rectifies_record_id": original.id,
        "rectification_reason": reason.strip(),
    })
    return _issue(org_id, series, RECORD_TYPE_RECTIFYING, amounts, origin, now)


# =============================================================================
# READ / VERIFY
# =============================================================================

def get_record(org_id: int, record_id: int) -> FiscalRecord:
    return tenant_store.get_record(org_id, record_id)


def list_records(
    org_id: int,
    series: str | None = None,
    device_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[FiscalRecord]:
    query = tenant_store.fiscal_records(org_id)
    if series:
        query = query.filter(FiscalRecord.series == series.upper())
    if device_id:
        query = query.filter(FiscalRecord.device_id == device_id)
    return query.order_by(FiscalRecord.chain_position.desc()).offset(offset).limit(limit).all()


def _tax_lines_match(record: FiscalRecord) -> bool:
    lines = record.tax_lines
    if not lines:
        return False
    for line in lines:
        if line.base_cents + line.quota_cents != line.total_cents:
            return False
    return (
        sum(line.total_cents for line in lines) == record.grand_total_cents
        and sum(line.quota_cents for line in lines) == record.tax_total_cents
    )


def _find_break(records: list[FiscalRecord]) -> tuple[int, FiscalRecord, str] | None:
    expected_previous = GENESIS_MARKER
    for position, record in enumerate(records, start=1):
        if record.chain_position != position:
            return position, record, "chain position gap"
        if record.previous_hash != expected_previous:
            return position, record, "previous hash does not match predecessor"
        if record.code != format_record_code(record.series, record.year, record.number):
            return position, record, "record code does not match its numbering"
        if recompute_hash(record) != record.record_hash:
            return position, record, "stored hash does not match recomputed hash"
        if not _tax_lines_match(record):
            return position, record, "tax breakdown does not add up to totals"
        expected_previous = record.record_hash
    return None


def verify_chain(org_id: int) -> ChainVerification:
    """
    Recompute every record in chain order and check linkage to its predecessor.

    Returns the first divergence. Never repairs.
    """
    tenant_store.organization(org_id)
    records = tenant_store.fiscal_records(org_id).order_by(FiscalRecord.chain_position).all()
    head = _read_ledger_head(org_id)

    verification = None
    found = _find_break(records)
    if found is not None:
        position, record, reason = found
        verification = ChainVerification(False, position - 1, position, record.id, reason)
    elif head.record_count != len(records) or head.head_hash != (records[-1].record_hash if records else None):
        verification = ChainVerification(
            False, len(records), len(records) + 1, None, "ledger head does not match last record",
        )

    if verification is None:
        return ChainVerification(True, len(records))

    current_app.logger.error(
        "Fiscal chain broken for org %s at position %s: %s",
        org_id, verification.first_break_at, verification.reason,
    )
    log_security_event(
        event_type="FISCAL_CHAIN_BROKEN",
        success=False,
        org_id=org_id,
        resource="fiscal_records",
        action="VERIFY_CHAIN",
        reason=f"position {verification.first_break_at}: {verification.reason}",
    )
    return verification
