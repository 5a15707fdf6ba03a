from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0.00")


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class VatBreakdown:
    base_amount: Decimal
    vat_amount: Decimal
    total_with_vat: Decimal
    vat_rate: Decimal


def calculate_vat(base_amount: Decimal | None, vat_rate: Decimal) -> VatBreakdown:
    """Add VAT on top of a base amount."""
    if not base_amount or base_amount < 0:
        return VatBreakdown(ZERO, ZERO, ZERO, vat_rate)
    vat_amount = _quantize(base_amount * vat_rate)
    return VatBreakdown(
        base_amount=_quantize(base_amount),
        vat_amount=vat_amount,
        total_with_vat=_quantize(base_amount + vat_amount),
        vat_rate=vat_rate,
    )


def reverse_calculate_vat(total_with_vat: Decimal | None, vat_rate: Decimal) -> VatBreakdown:
    """Split a VAT-inclusive total into base and VAT."""
    if not total_with_vat or total_with_vat < 0:
        return VatBreakdown(ZERO, ZERO, ZERO, vat_rate)
    base_amount = _quantize(total_with_vat / (Decimal("1") + vat_rate))
    return VatBreakdown(
        base_amount=base_amount,
        vat_amount=_quantize(total_with_vat - base_amount),
        total_with_vat=_quantize(total_with_vat),
        vat_rate=vat_rate,
    )
