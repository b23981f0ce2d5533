# Overview: Money parsing and tax-inclusive VAT breakdown in integer cents.

"""
Tax Breakdown

WHY: Receipt totals are tax-inclusive. The fiscal authority derives the base
from the total (base = total / (1 + rate/100)) and the tax quota as the
difference, never the other way round. Doing it in that direction, per rate
group, guarantees base + quota == total to the cent.

MONEY: Amounts arrive as JSON numbers or strings, are parsed through Decimal
(never float arithmetic), rounded half-up to cents and handled as integer
cents from then on. Hash input and stored values therefore never depend on
floating-point representation.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from ..errors import ValidationError

CENT = Decimal("0.01")
ONE = Decimal("1")
MAX_RATE_BPS = 10000


@dataclass(frozen=True)
class TaxLine:
    rate_bps: int
    base_cents: int
    quota_cents: int
    total_cents: int


@dataclass(frozen=True)
class ReceiptAmounts:
    tax_lines: list[TaxLine]
    lines: list[dict]
    grand_total_cents: int

    @property
    def tax_total_cents(self) -> int:
        return sum(t.quota_cents for t in self.tax_lines)


def parse_decimal(value, field: str = "amount") -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not parsed.is_finite():
        raise ValidationError(f"{field} must be a number")
    return parsed


def to_cents(value, field: str = "amount") -> int:
    """Parse an amount in currency units into integer cents (half-up)."""
    return int((parse_decimal(value, field) / CENT).quantize(ONE, rounding=ROUND_HALF_UP))


def cents_to_str(cents: int) -> str:
    """Fixed two-decimal rendering used in hash input ("12.30", "-0.50")."""
    return str((Decimal(cents) * CENT).quantize(CENT))


def rate_to_bps(rate, field: str = "tax_rate") -> int:
    """VAT rate in percent (21, "10.5") to basis points."""
    bps = int((parse_decimal(rate, field) * 100).quantize(ONE, rounding=ROUND_HALF_UP))
    if not 0 <= bps <= MAX_RATE_BPS:
        raise ValidationError(f"{field} must be between 0 and 100")
    return bps


def split_tax_inclusive(total_cents: int, rate_bps: int) -> tuple[int, int]:
    """Return (base_cents, quota_cents) for a tax-inclusive total."""
    base = (Decimal(total_cents) * MAX_RATE_BPS / (MAX_RATE_BPS + rate_bps)).quantize(ONE, rounding=ROUND_HALF_UP)
    base_cents = int(base)
    return base_cents, total_cents - base_cents


def _line_total_cents(line: dict, index: int) -> int:
    if line.get("total") is not None:
        return to_cents(line["total"], f"lines[{index}].total")
    if line.get("unit_price") is None:
        raise ValidationError(f"lines[{index}] needs total or unit_price")
    quantity = parse_decimal(line.get("quantity", 1), f"lines[{index}].quantity")
    unit_price = parse_decimal(line["unit_price"], f"lines[{index}].unit_price")
    return int((quantity * unit_price / CENT).quantize(ONE, rounding=ROUND_HALF_UP))


def compute_receipt_amounts(lines, allow_negative: bool = False) -> ReceiptAmounts:
    """
    Normalize sale lines and derive the tax breakdown grouped by rate.

    Each line carries a tax-inclusive `total` (or `quantity` x `unit_price`)
    and a `tax_rate` in percent. Negative amounts are only accepted for
    rectifying receipts.
    """
    if not isinstance(lines, list) or not lines:
        raise ValidationError("At least one line is required")

    totals_by_rate: dict[int, int] = {}
    normalized = []
    for index, line in enumerate(lines):
        if not isinstance(line, dict):
            raise ValidationError(f"lines[{index}] must be an object")
        if line.get("tax_rate") is None:
            raise ValidationError(f"lines[{index}].tax_rate is required")
        rate_bps = rate_to_bps(line["tax_rate"], f"lines[{index}].tax_rate")
        total_cents = _line_total_cents(line, index)
        if total_cents < 0 and not allow_negative:
            raise ValidationError(f"lines[{index}] total cannot be negative")
        totals_by_rate[rate_bps] = totals_by_rate.get(rate_bps, 0) + total_cents
        normalized.append({
            "description": str(line.get("description") or "")[:255],
            "quantity": str(line.get("quantity", 1)),
            "tax_rate_bps": rate_bps,
            "total": cents_to_str(total_cents),
        })

    tax_lines = []
    for rate_bps in sorted(totals_by_rate):
        total_cents = totals_by_rate[rate_bps]
        base_cents, quota_cents = split_tax_inclusive(total_cents, rate_bps)
        tax_lines.append(TaxLine(rate_bps, base_cents, quota_cents, total_cents))

    grand_total_cents = sum(t.total_cents for t in tax_lines)
    return ReceiptAmounts(tax_lines=tax_lines, lines=normalized, grand_total_cents=grand_total_cents)
