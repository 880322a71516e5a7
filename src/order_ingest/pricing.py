"""
Line subtotals and order totals.

Quoted prices and line amounts are tax-inclusive. Net amounts are derived by dividing by
one plus the sum of the taxes that apply to the product; totals are summed from the
unrounded per-line figures and rounded once, to currency precision.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from .config import settings
from .models import DraftLine, DraftTotals

_CENT = Decimal("0.01")


def round_currency(value: float) -> float:
    """Half-up rounding to 2 decimals (no banker's rounding on .005)."""
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def line_subtotal(quantity: float, unit_price: Optional[float]) -> float:
    return round_currency(quantity * (unit_price or 0.0))


@dataclass(frozen=True)
class TaxBreakdown:
    net: float
    tax: float
    amount: float


def tax_divisor(
    applies_tax_a: bool,
    applies_tax_b: bool,
    rate_a: Optional[float] = None,
    rate_b: Optional[float] = None,
) -> float:
    rate_a = settings.TAX_A_RATE if rate_a is None else rate_a
    rate_b = settings.TAX_B_RATE if rate_b is None else rate_b
    divisor = 1.0
    if applies_tax_a:
        divisor += rate_a
    if applies_tax_b:
        divisor += rate_b
    return divisor


def decompose(
    amount: float,
    applies_tax_a: bool,
    applies_tax_b: bool,
    rate_a: Optional[float] = None,
    rate_b: Optional[float] = None,
) -> TaxBreakdown:
    """Split a tax-inclusive amount into net and tax. Unrounded."""
    net = amount / tax_divisor(applies_tax_a, applies_tax_b, rate_a, rate_b)
    return TaxBreakdown(net=net, tax=amount - net, amount=amount)


def compute_totals(
    lines: Iterable[DraftLine],
    rate_a: Optional[float] = None,
    rate_b: Optional[float] = None,
) -> DraftTotals:
    """Totals from the current line subtotals; never updated incrementally."""
    net = tax = amount = 0.0
    for line in lines:
        b = decompose(line.subtotal, line.applies_tax_a, line.applies_tax_b, rate_a, rate_b)
        net += b.net
        tax += b.tax
        amount += b.amount
    return DraftTotals(
        net_subtotal=round_currency(net),
        tax_total=round_currency(tax),
        grand_total=round_currency(amount),
    )
