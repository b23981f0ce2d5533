# Overview: Pytest coverage for receipt numbering, hash chaining and ledger verification.

"""
Fiscal Ledger Tests

COVERAGE:
- hash input format and digest (uppercase SHA-256, fixed field order)
- gapless numbering per (series, year), voided numbers
- one chain per tenant across series, genesis marker
- compare-and-swap attach: a stale head is detected and retried
- immutability: ORM updates, deletes and bulk statements are refused
- verify_chain reports (never repairs) out-of-band tampering
"""

import hashlib
import logging
from datetime import datetime, timedelta

import pytest
from conftest import T0
from sqlalchemy import text, update
from tpvcore.errors import (
    ImmutableRecordError, LedgerUnavailable, RecordNotFound, SessionNotFound, ValidationError,
)
from tpvcore.extensions import db
from tpvcore.models import FiscalRecord, FiscalTaxLine, LedgerHead, SecurityEvent
from tpvcore.services import fiscal_ledger_service, session_service
from tpvcore.services.fiscal_ledger_service import LedgerHeadSnapshot

SALE = {"lines": [{"description": "Menu", "total": "12.10", "tax_rate": 21}], "payment_method": "cash"}


def _issue(org_id, payload=SALE, series="FS", now=T0, **kwargs):
    return fiscal_ledger_service.issue_record(org_id, series, payload, now=now, **kwargs)


class TestHashing:

    def test_canonical_string_layout(self):
        canonical = fiscal_ledger_service.canonical_string(
            "B12345678", "FS-2026-000001", "20260302", "F2", 210, 1210, None,
        )
        assert canonical == "B12345678FS-2026-00000120260302F22.1012.10GENESIS"

    def test_previous_hash_is_appended(self):
        canonical = fiscal_ledger_service.canonical_string(
            "B12345678", "FS-2026-000002", "20260302", "F2", 0, 550, "AB" * 32,
        )
        assert canonical.endswith("0.005.50" + "AB" * 32)

    def test_digest_is_uppercase_sha256(self):
        args = ("B12345678", "FS-2026-000001", "20260302", "F2", 210, 1210, None)
        expected = hashlib.sha256(fiscal_ledger_service.canonical_string(*args).encode("utf-8")).hexdigest().upper()

        digest = fiscal_ledger_service.compute_record_hash(*args)
        assert digest == expected
        assert len(digest) == 64
        assert digest == digest.upper()

    def test_negative_totals_format(self):
        canonical = fiscal_ledger_service.canonical_string("X", "FSR-2026-000001", "20260302", "R5", -21, -121, None)
        assert "-0.21-1.21" in canonical

    def test_record_code_format(self):
        assert fiscal_ledger_service.format_record_code("FS", 2026, 42) == "FS-2026-000042"


class TestIssuance:

    def test_first_record_is_genesis(self, db_session, org_a):
        record = _issue(org_a.id)

        assert record.code == "FS-2026-000001"
        assert record.record_type == "F2"
        assert record.chain_position == 1
        assert record.previous_hash == "GENESIS"
        assert record.issuer_tax_id == "B12345678"
        assert record.tax_total_cents == 210
        assert record.grand_total_cents == 1210
        assert record.record_hash == fiscal_ledger_service.compute_record_hash(
            "B12345678", "FS-2026-000001", "20260302", "F2", 210, 1210, None,
        )

    def test_records_chain_and_number_gaplessly(self, db_session, org_a):
        records = [_issue(org_a.id, now=T0 + timedelta(minutes=i)) for i in range(3)]

        assert [r.number for r in records] == [1, 2, 3]
        assert records[1].previous_hash == records[0].record_hash
        assert records[2].previous_hash == records[1].record_hash

        head = db_session.get(LedgerHead, org_a.id)
        assert head.head_hash == records[2].record_hash
        assert head.record_count == 3

    def test_chain_spans_series(self, db_session, org_a):
        first = _issue(org_a.id, series="FS")
        second = _issue(org_a.id, series="FB")

        assert second.code == "FB-2026-000001"
        assert second.chain_position == 2
        assert second.previous_hash == first.record_hash

    def test_numbering_restarts_per_year(self, db_session, org_a):
        _issue(org_a.id, now=datetime(2026, 12, 31, 23, 59))
        record = _issue(org_a.id, now=datetime(2027, 1, 1, 0, 1))

        assert record.code == "FS-2027-000001"
        assert record.chain_position == 2

    def test_tax_breakdown_persisted(self, db_session, org_a):
        payload = {"lines": [
            {"total": "12.10", "tax_rate": 21},
            {"quantity": 2, "unit_price": "1.10", "tax_rate": 10},
        ]}
        record = _issue(org_a.id, payload)

        lines = db_session.query(FiscalTaxLine).filter_by(record_id=record.id).order_by(FiscalTaxLine.rate_bps).all()
        assert [(l.rate_bps, l.base_cents, l.quota_cents, l.total_cents) for l in lines] == [
            (1000, 200, 20, 220),
            (2100, 1000, 210, 1210),
        ]
        assert record.grand_total_cents == 1430
        assert record.tax_total_cents == 230

    def test_record_to_dict(self, db_session, org_a):
        data = _issue(org_a.id).to_dict()
        assert data["grand_total"] == "12.10"
        assert data["tax_total"] == "2.10"
        assert data["issue_date"] == "20260302"
        assert data["tax_breakdown"] == [{"rate": "21.00", "base": "10.00", "quota": "2.10", "total": "12.10"}]

    def test_session_ties_operator(self, db_session, device_a, operator_a, org_a):
        login = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)
        record = _issue(org_a.id, device_id=device_a.device.id, session_id=login.session.id)

        assert record.operator_id == operator_a.id
        assert record.session_id == login.session.id

    def test_session_of_other_device_rejected(self, db_session, org_a, device_a, operator_a):
        login = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)
        with pytest.raises(SessionNotFound):
            _issue(org_a.id, device_id="other-device", session_id=login.session.id)

    @pytest.mark.parametrize("payload", [
        {},
        {"lines": []},
        {"lines": [{"total": "1.00"}]},
        {"lines": [{"total": "-1.00", "tax_rate": 21}]},
        {"lines": [{"total": "abc", "tax_rate": 21}]},
    ])
    def test_invalid_payload_rejected(self, db_session, org_a, payload):
        with pytest.raises(ValidationError):
            _issue(org_a.id, payload)
        assert db_session.query(FiscalRecord).count() == 0

    def test_invalid_series_rejected(self, db_session, org_a):
        with pytest.raises(ValidationError):
            _issue(org_a.id, series="F-S")

    def test_series_longer_than_fifteen_rejected(self, db_session, org_a):
        with pytest.raises(ValidationError):
            _issue(org_a.id, series="A" * 16)
        assert db_session.query(FiscalRecord).count() == 0


class TestRectifying:

    def test_rectifying_record_chains_in_own_series(self, db_session, org_a):
        original = _issue(org_a.id)
        correction = fiscal_ledger_service.issue_rectifying_record(
            org_a.id,
            original.id,
            {"lines": [{"total": "-2.42", "tax_rate": 21}]},
            reason="Wrong menu charged",
            now=T0 + timedelta(minutes=5),
        )

        assert correction.record_type == "R5"
        assert correction.code == "FSR-2026-000001"
        assert correction.rectifies_record_id == original.id
        assert correction.previous_hash == original.record_hash
        assert correction.grand_total_cents == -242
        assert correction.tax_total_cents == -42
        assert fiscal_ledger_service.verify_chain(org_a.id).valid

    def test_longest_series_can_be_rectified(self, db_session, org_a):
        series = "A" * fiscal_ledger_service.SERIES_MAX_LENGTH
        original = _issue(org_a.id, series=series)

        correction = fiscal_ledger_service.issue_rectifying_record(
            org_a.id, original.id, {"lines": [{"total": "-1.21", "tax_rate": 21}]}, reason="fix", now=T0,
        )
        assert correction.series == series + "R"
        assert correction.code == f"{series}R-2026-000001"
        assert fiscal_ledger_service.verify_chain(org_a.id).valid

        # Rectifying series numbers can be reserved and voided like any other
        reserved = fiscal_ledger_service.next_sequence(org_a.id, series + "R", 2026)
        fiscal_ledger_service.void_sequence(org_a.id, series + "R", 2026, reserved, "Printer jam", now=T0)

    def test_reason_required(self, db_session, org_a):
        original = _issue(org_a.id)
        with pytest.raises(ValidationError):
            fiscal_ledger_service.issue_rectifying_record(org_a.id, original.id, SALE, reason="", now=T0)

    def test_unknown_original(self, db_session, org_a):
        with pytest.raises(RecordNotFound):
            fiscal_ledger_service.issue_rectifying_record(org_a.id, 99999, SALE, reason="x", now=T0)


class TestSequences:

    def test_next_sequence_is_gapless(self, db_session, org_a):
        numbers = [fiscal_ledger_service.next_sequence(org_a.id, "FS", 2026) for _ in range(4)]
        assert numbers == [1, 2, 3, 4]
        assert fiscal_ledger_service.next_sequence(org_a.id, "FS", 2027) == 1

    def test_reserved_number_is_never_reused(self, db_session, org_a):
        reserved = fiscal_ledger_service.next_sequence(org_a.id, "FS", 2026)
        fiscal_ledger_service.void_sequence(org_a.id, "FS", 2026, reserved, "Printer jam", now=T0)

        record = _issue(org_a.id)
        assert record.number == 2
        assert [v.number for v in fiscal_ledger_service.list_voided(org_a.id)] == [1]

    def test_void_validation(self, db_session, org_a):
        record = _issue(org_a.id)

        with pytest.raises(ValidationError):
            fiscal_ledger_service.void_sequence(org_a.id, "FS", 2026, 5, "Never reserved", now=T0)
        with pytest.raises(ValidationError):
            fiscal_ledger_service.void_sequence(org_a.id, "FS", 2026, record.number, "In use", now=T0)
        with pytest.raises(ValidationError):
            fiscal_ledger_service.void_sequence(org_a.id, "FS", 2026, 1, " ", now=T0)

    def test_double_void_rejected(self, db_session, org_a):
        number = fiscal_ledger_service.next_sequence(org_a.id, "FS", 2026)
        fiscal_ledger_service.void_sequence(org_a.id, "FS", 2026, number, "Jam", now=T0)
        with pytest.raises(ValidationError):
            fiscal_ledger_service.void_sequence(org_a.id, "FS", 2026, number, "Jam", now=T0)


class TestConcurrentAttach:
    """A writer computing against a stale head must not fork the chain."""

    def test_stale_head_is_retried_against_new_head(self, db_session, app, org_a, monkeypatch, caplog):
        first = _issue(org_a.id)
        real_read = fiscal_ledger_service._read_ledger_head
        calls = []

        def stale_then_real(org_id):
            calls.append(org_id)
            if len(calls) == 1:
                # Head as it was before `first` was attached
                return LedgerHeadSnapshot(head_hash=None, record_count=0)
            return real_read(org_id)

        monkeypatch.setattr(fiscal_ledger_service, "_read_ledger_head", stale_then_real)
        monkeypatch.setattr(fiscal_ledger_service, "ATTACH_BACKOFF_SECONDS", 0)

        with caplog.at_level(logging.WARNING, logger=app.logger.name):
            second = _issue(org_a.id, now=T0 + timedelta(minutes=1))

        assert len(calls) == 2
        assert second.previous_hash == first.record_hash
        assert second.chain_position == 2
        # The losing attempt's reservation was rolled back with it
        assert second.number == 2
        assert "Fiscal ledger conflict" in caplog.text
        assert fiscal_ledger_service.verify_chain(org_a.id).valid

    def test_stale_head_after_several_records(self, db_session, org_a, monkeypatch):
        records = [_issue(org_a.id, now=T0 + timedelta(minutes=i)) for i in range(3)]
        real_read = fiscal_ledger_service._read_ledger_head
        stale = LedgerHeadSnapshot(head_hash=records[0].record_hash, record_count=1)
        calls = []

        def stale_then_real(org_id):
            calls.append(org_id)
            return stale if len(calls) == 1 else real_read(org_id)

        monkeypatch.setattr(fiscal_ledger_service, "_read_ledger_head", stale_then_real)
        monkeypatch.setattr(fiscal_ledger_service, "ATTACH_BACKOFF_SECONDS", 0)

        record = _issue(org_a.id, now=T0 + timedelta(minutes=10))
        assert record.previous_hash == records[2].record_hash
        assert record.chain_position == 4

    def test_exhausted_retries_raise_unavailable(self, db_session, org_a, monkeypatch):
        _issue(org_a.id)
        monkeypatch.setattr(
            fiscal_ledger_service, "_read_ledger_head",
            lambda org_id: LedgerHeadSnapshot(head_hash=None, record_count=0),
        )
        monkeypatch.setattr(fiscal_ledger_service, "ATTACH_BACKOFF_SECONDS", 0)

        with pytest.raises(LedgerUnavailable):
            _issue(org_a.id, now=T0 + timedelta(minutes=1))

        monkeypatch.undo()
        assert db_session.query(FiscalRecord).count() == 1
        assert _issue(org_a.id, now=T0 + timedelta(minutes=2)).number == 2


class TestImmutability:

    def test_orm_update_refused(self, db_session, org_a):
        record = _issue(org_a.id)
        record.grand_total_cents = 1

        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()

    def test_orm_delete_refused(self, db_session, org_a):
        record = _issue(org_a.id)
        db_session.delete(record)

        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()

    def test_tax_line_update_refused(self, db_session, org_a):
        record = _issue(org_a.id)
        record.tax_lines[0].quota_cents = 0

        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()

    def test_bulk_statements_refused(self, db_session, org_a):
        _issue(org_a.id)

        with pytest.raises(ImmutableRecordError):
            db_session.query(FiscalRecord).filter_by(org_id=org_a.id).update({"grand_total_cents": 1})
        db_session.rollback()
        with pytest.raises(ImmutableRecordError):
            db_session.execute(update(FiscalRecord).values(previous_hash="X"))
        db_session.rollback()
        with pytest.raises(ImmutableRecordError):
            db_session.query(FiscalTaxLine).delete()
        db_session.rollback()

        assert db_session.query(FiscalRecord).count() == 1


class TestVerifyChain:

    def test_empty_and_valid_chain(self, db_session, org_a):
        assert fiscal_ledger_service.verify_chain(org_a.id).to_dict() == {
            "valid": True, "checked": 0, "first_break_at": None, "record_id": None, "reason": None,
        }
        for i in range(3):
            _issue(org_a.id, now=T0 + timedelta(minutes=i))
        result = fiscal_ledger_service.verify_chain(org_a.id)
        assert result.valid
        assert result.checked == 3

    def test_tampered_amount_detected(self, db_session, org_a, caplog):
        records = [_issue(org_a.id, now=T0 + timedelta(minutes=i)) for i in range(3)]
        db_session.execute(
            text("UPDATE fiscal_records SET grand_total_cents = 99 WHERE id = :id"),
            {"id": records[1].id},
        )
        db_session.commit()

        with caplog.at_level(logging.ERROR):
            result = fiscal_ledger_service.verify_chain(org_a.id)

        assert not result.valid
        assert result.first_break_at == 2
        assert result.record_id == records[1].id
        assert result.checked == 1
        assert "Fiscal chain broken" in caplog.text

        event = db_session.query(SecurityEvent).filter_by(event_type="FISCAL_CHAIN_BROKEN").one()
        assert event.success is False
        assert event.org_id == org_a.id

    def test_deleted_record_detected(self, db_session, org_a):
        records = [_issue(org_a.id, now=T0 + timedelta(minutes=i)) for i in range(3)]
        db_session.execute(text("DELETE FROM fiscal_tax_lines WHERE record_id = :id"), {"id": records[1].id})
        db_session.execute(text("DELETE FROM fiscal_records WHERE id = :id"), {"id": records[1].id})
        db_session.commit()

        result = fiscal_ledger_service.verify_chain(org_a.id)
        assert not result.valid
        assert result.first_break_at == 2
        assert result.record_id == records[2].id

    def test_rewritten_hash_detected(self, db_session, org_a):
        records = [_issue(org_a.id, now=T0 + timedelta(minutes=i)) for i in range(2)]
        db_session.execute(
            text("UPDATE fiscal_records SET record_hash = :h WHERE id = :id"),
            {"h": "0" * 64, "id": records[0].id},
        )
        db_session.commit()

        result = fiscal_ledger_service.verify_chain(org_a.id)
        assert not result.valid
        assert result.first_break_at == 1

    def test_verification_never_repairs(self, db_session, org_a):
        record = _issue(org_a.id)
        db_session.execute(
            text("UPDATE fiscal_records SET tax_total_cents = 0 WHERE id = :id"), {"id": record.id},
        )
        db_session.commit()

        fiscal_ledger_service.verify_chain(org_a.id)
        db.session.expire_all()
        assert db_session.get(FiscalRecord, record.id).tax_total_cents == 0
        assert not fiscal_ledger_service.verify_chain(org_a.id).valid
