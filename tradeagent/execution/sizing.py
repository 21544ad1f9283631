from __future__ import annotations

import math
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal

_RATIO_PLACES = Decimal("0.01")
_PERCENT_PLACES = Decimal("0.0001")


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"cannot convert {value!r} to Decimal")
        return Decimal(repr(value))
    return Decimal(value)


def round_to_step(price: Decimal, step: Decimal) -> Decimal:
    if step == 0:
        return price
    if step < 0:
        raise ValueError("step must be > 0")
    return (price / step).quantize(Decimal(1), rounding=ROUND_HALF_UP) * step


def quantize_ratio(numerator: Decimal, denominator: Decimal) -> Decimal:
    return (numerator / denominator).quantize(_RATIO_PLACES, rounding=ROUND_HALF_UP)


def percent_of(numerator: Decimal, denominator: Decimal) -> Decimal:
    if denominator == 0:
        return Decimal("0")
    return (numerator / denominator).quantize(_PERCENT_PLACES, rounding=ROUND_HALF_UP) * 100


def single_lot_size(*, available: Decimal, entry_price: Decimal, lot_size: int) -> int:
    if available <= 0 or entry_price <= 0:
        return 0
    lot_price = entry_price * lot_size
    return 1 if available >= lot_price else 0


def risk_budget_lot_size(
    *,
    available: Decimal,
    risk_per_trade: Decimal,
    entry_price: Decimal,
    stop_price: Decimal,
    lot_size: int,
) -> int:
    if available <= 0 or entry_price <= 0 or lot_size <= 0:
        return 0
    risk_distance = abs(entry_price - stop_price)
    if risk_distance <= 0:
        return 0
    risk_amount = available * risk_per_trade
    lots_for_risk = (risk_amount / (risk_distance * lot_size)).to_integral_value(rounding=ROUND_FLOOR)
    lots_affordable = (available / (entry_price * lot_size)).to_integral_value(rounding=ROUND_FLOOR)
    return max(0, int(min(lots_for_risk, lots_affordable)))


def lots_for(
    mode: str,
    *,
    available: Decimal,
    entry_price: Decimal,
    stop_price: Decimal,
    lot_size: int,
    risk_per_trade: Decimal,
) -> int:
    if mode == "single_lot":
        return single_lot_size(available=available, entry_price=entry_price, lot_size=lot_size)
    if mode == "risk_budget":
        return risk_budget_lot_size(
            available=available,
            risk_per_trade=risk_per_trade,
            entry_price=entry_price,
            stop_price=stop_price,
            lot_size=lot_size,
        )
    raise ValueError(f"Unsupported sizing mode '{mode}'")
