from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.orm import Session, object_session

from ..extensions import db
from ..errors import ImmutableRecordError
from tpvcore.time_utils import to_utc_z

RECORD_TYPE_SIMPLIFIED = "F2"
RECORD_TYPE_RECTIFYING = "R5"
GENESIS_MARKER = "GENESIS"


def _cents_to_str(cents: int | None) -> str | None:
    if cents is None:
        return None
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d}"


class FiscalSequence(db.Model):
    """
    Atomic per-tenant receipt numbering for (series, year).

    WHY: Numbers must be strictly increasing with no reuse. Reservation is an
    in-place UPDATE next_number = next_number + 1, never read-then-write.
    """
    __tablename__ = "fiscal_sequences"
    __table_args__ = (
        db.UniqueConstraint("org_id", "series", "year", name="uq_fiscal_sequences_org_series_year"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    series = db.Column(db.String(16), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "series": self.series,
            "year": self.year,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }


class VoidedSequence(db.Model):
    """
    Reserved number that will never carry a receipt.

    WHY: A number reserved outside a successful issuance is either used or
    voided explicitly. Gaps in a series must be explainable to an auditor.
    """
    __tablename__ = "voided_sequences"
    __table_args__ = (
        db.UniqueConstraint("org_id", "series", "year", "number", name="uq_voided_sequences_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    series = db.Column(db.String(16), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    number = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "series": self.series,
            "year": self.year,
            "number": self.number,
            "reason": self.reason,
            "voided_at": to_utc_z(self.voided_at),
        }


class LedgerHead(db.Model):
    """
    Compare-and-swap anchor of a tenant's fiscal chain.

    WHY: "Latest record" is not resolved by sorting on timestamps. Each
    attachment swaps head_hash from the predecessor it was computed against
    to its own hash; a writer that finds a different head lost the race.

    head_hash NULL means the chain is empty (next record links to GENESIS).
    """
    __tablename__ = "ledger_heads"

    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), primary_key=True)
    head_hash = db.Column(db.String(64), nullable=True)
    head_record_id = db.Column(db.Integer, nullable=True)
    record_count = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "org_id": self.org_id,
            "head_hash": self.head_hash,
            "head_record_id": self.head_record_id,
            "record_count": self.record_count,
        }


class FiscalRecord(db.Model):
    """
    Issued point-of-sale receipt: immutable, numbered, hash-chained.

    FISCAL CONTRACT (hashed, in this order, no separator):
    issuer_tax_id + code + issue date (YYYYMMDD) + record_type
    + tax total ("0.00") + grand total ("0.00") + previous_hash

    IMMUTABLE: Never update or delete. Corrections are new rectifying records
    (record_type R5) that reference the original and take their own place
    in the same chain. Flushes and ORM bulk statements that would mutate a
    record are rejected below.

    CHAIN: chain_position is continuous per tenant and previous_hash is
    unique per tenant, so two records can never share a predecessor.
    """
    __tablename__ = "fiscal_records"
    __table_args__ = (
        db.UniqueConstraint("org_id", "series", "year", "number", name="uq_fiscal_records_number"),
        db.UniqueConstraint("org_id", "chain_position", name="uq_fiscal_records_chain_position"),
        db.UniqueConstraint("org_id", "previous_hash", name="uq_fiscal_records_previous_hash"),
        db.Index("ix_fiscal_records_org_issued", "org_id", "issued_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    # Numbering
    series = db.Column(db.String(16), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    number = db.Column(db.Integer, nullable=False)
    code = db.Column(db.String(40), nullable=False)  # e.g. "FS-2026-000001"

    record_type = db.Column(db.String(4), nullable=False, default=RECORD_TYPE_SIMPLIFIED)
    issuer_tax_id = db.Column(db.String(32), nullable=False)
    issued_at = db.Column(db.DateTime(timezone=True), nullable=False)

    # Totals in cents
    tax_total_cents = db.Column(db.Integer, nullable=False)
    grand_total_cents = db.Column(db.Integer, nullable=False)

    # Chain
    chain_position = db.Column(db.Integer, nullable=False)
    previous_hash = db.Column(db.String(64), nullable=False)  # GENESIS for the first record
    record_hash = db.Column(db.String(64), nullable=False, index=True)

    # Origin
    device_id = db.Column(db.String(32), db.ForeignKey("devices.id"), nullable=True, index=True)
    session_id = db.Column(db.String(32), nullable=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id"), nullable=True)

    # Rectification
    rectifies_record_id = db.Column(db.Integer, db.ForeignKey("fiscal_records.id"), nullable=True, index=True)
    rectification_reason = db.Column(db.String(255), nullable=True)

    # Non-hashed sale detail kept for reprints
    lines = db.Column(db.JSON, nullable=False, default=list)
    payment_method = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    tax_lines = db.relationship(
        "FiscalTaxLine",
        backref="record",
        lazy=True,
        order_by="FiscalTaxLine.rate_bps",
    )
    rectifies = db.relationship("FiscalRecord", remote_side=[id])

    @property
    def issue_date(self) -> str:
        return self.issued_at.strftime("%Y%m%d")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "series": self.series,
            "year": self.year,
            "number": self.number,
            "code": self.code,
            "record_type": self.record_type,
            "issuer_tax_id": self.issuer_tax_id,
            "issued_at": to_utc_z(self.issued_at),
            "issue_date": self.issue_date,
            "tax_total": _cents_to_str(self.tax_total_cents),
            "grand_total": _cents_to_str(self.grand_total_cents),
            "tax_breakdown": [t.to_dict() for t in self.tax_lines],
            "chain_position": self.chain_position,
            "previous_hash": self.previous_hash,
            "hash": self.record_hash,
            "device_id": self.device_id,
            "session_id": self.session_id,
            "operator_id": self.operator_id,
            "rectifies_record_id": self.rectifies_record_id,
            "rectification_reason": self.rectification_reason,
            "lines": self.lines or [],
            "payment_method": self.payment_method,
        }


class FiscalTaxLine(db.Model):
    """Tax breakdown of a record: one row per VAT rate. Immutable with its record."""
    __tablename__ = "fiscal_tax_lines"
    __table_args__ = (
        db.UniqueConstraint("record_id", "rate_bps", name="uq_fiscal_tax_lines_record_rate"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(db.Integer, db.ForeignKey("fiscal_records.id"), nullable=False, index=True)

    # Rate in basis points (21% = 2100)
    rate_bps = db.Column(db.Integer, nullable=False)
    base_cents = db.Column(db.Integer, nullable=False)
    quota_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "rate": f"{self.rate_bps // 100}.{self.rate_bps % 100:02d}",
            "base": _cents_to_str(self.base_cents),
            "quota": _cents_to_str(self.quota_cents),
            "total": _cents_to_str(self.total_cents),
        }


# =============================================================================
# IMMUTABILITY
# =============================================================================

IMMUTABLE_MODELS = (FiscalRecord, FiscalTaxLine)


def _reject_update(mapper, connection, target):
    # Collection appends (tax lines) mark the parent dirty without touching columns
    if not object_session(target).is_modified(target, include_collections=False):
        return
    _reject_delete(mapper, connection, target)


def _reject_delete(mapper, connection, target):
    raise ImmutableRecordError(
        f"{target.__class__.__name__} {target.id} is immutable; issue a rectifying record instead"
    )


for _model in IMMUTABLE_MODELS:
    event.listen(_model, "before_update", _reject_update)
    event.listen(_model, "before_delete", _reject_delete)


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_mutation(orm_execute_state):
    """Reject ORM-enabled UPDATE/DELETE statements against fiscal tables."""
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    for mapper in orm_execute_state.all_mappers:
        if mapper is not None and mapper.class_ in IMMUTABLE_MODELS:
            raise ImmutableRecordError(
                f"Bulk {'update' if orm_execute_state.is_update else 'delete'} "
                f"on {mapper.class_.__tablename__} is not allowed"
            )
