# hims_billing/services/billing_math.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict

D0 = Decimal("0.00")
D2 = Decimal("0.01")
D100 = Decimal("100")


def D(x) -> Decimal:
    try:
        return Decimal(str(x if x is not None else 0))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("NaN")


def money2(x) -> Decimal:
    return D(x).quantize(D2, rounding=ROUND_HALF_UP)


def is_finite(x) -> bool:
    return D(x).is_finite()


def compute_line_amounts(qty, unit_price, tax_rate) -> Dict[str, Decimal]:
    """
    base       = qty * unit_price
    tax_amount = base * tax_rate / 100
    line_total = base + tax_amount

    Each figure rounded half-up to paise.
    """
    base = money2(D(qty) * D(unit_price))
    tax_amount = money2(D(qty) * D(unit_price) * D(tax_rate) / D100)
    return {
        "base": base,
        "tax_amount": tax_amount,
        "line_total": money2(base + tax_amount),
    }


def percent_of(amount, percent) -> Decimal:
    return money2(D(amount) * D(percent) / D100)
