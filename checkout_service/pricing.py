"""Checkout totals: subtotal, regional shipping and VAT on (subtotal + shipping)."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional

from .config import DEFAULT_SHIPPING_FEE, SHIPPING_RATES, VAT_RATE

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Any) -> int:
    # pesewas / kobo / cents
    minor = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)


def shipping_fee(region: Optional[str]) -> Decimal:
    return SHIPPING_RATES.get(region or "", DEFAULT_SHIPPING_FEE)


def supported_regions() -> list[str]:
    return list(SHIPPING_RATES)


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    shipping_fee: Decimal
    vat: Decimal
    total: Decimal


def line_subtotal(lines: Iterable[Any]) -> Decimal:
    total = Decimal("0")
    for line in lines:
        if isinstance(line, dict):
            unit_price, quantity = line["unit_price"], line["quantity"]
        else:
            unit_price, quantity = line.unit_price, line.quantity
        total += Decimal(str(unit_price)) * int(quantity)
    return to_money(total)


def compute_totals(
    subtotal: Any,
    *,
    region: Optional[str] = None,
    shipping: Any = None,
) -> Totals:
    """Price a cart. ``shipping`` overrides the regional lookup when given."""
    sub = to_money(subtotal)
    ship = to_money(shipping if shipping is not None else shipping_fee(region))
    vat = to_money((sub + ship) * VAT_RATE)
    return Totals(subtotal=sub, shipping_fee=ship, vat=vat, total=to_money(sub + ship + vat))


def price_lines(lines: Iterable[Any], region: Optional[str] = None) -> Totals:
    return compute_totals(line_subtotal(lines), region=region)
