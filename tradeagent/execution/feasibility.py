from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from tradeagent.execution.sizing import quantize_ratio

_UNBOUNDED_RATIO = Decimal("100")


class RejectReason(str, Enum):
    LOTS_ZERO = "LOTS_ZERO"
    EDGE_TOO_SMALL = "EDGE_TOO_SMALL"
    NET_PROFIT_NON_POSITIVE = "NET_PROFIT_NON_POSITIVE"
    SPREAD_TOO_WIDE = "SPREAD_TOO_WIDE"


@dataclass(slots=True)
class FeasibilityResult:
    ok: bool
    reason: RejectReason | None = None
    details: dict[str, Any] = field(default_factory=dict)


def _result(*, ok: bool, reason: RejectReason | None, details: dict[str, Any]) -> FeasibilityResult:
    return FeasibilityResult(ok=ok, reason=reason, details=details)


def check_economics(
    *,
    entry_price: Decimal,
    target_price: Decimal,
    lots: int,
    lot_size: int,
    commission_rate: Decimal,
    min_profit_ratio: Decimal,
) -> FeasibilityResult:
    details: dict[str, Any] = {
        "entry_price": str(entry_price),
        "target_price": str(target_price),
        "lots": int(lots),
        "lot_size": int(lot_size),
    }
    if lots <= 0:
        return _result(ok=False, reason=RejectReason.LOTS_ZERO, details=details)

    quantity = Decimal(lots * lot_size)
    volume = entry_price * quantity
    commission = volume * commission_rate * 2
    potential = abs(target_price - entry_price) * quantity
    net_profit = potential - commission
    ratio = _UNBOUNDED_RATIO if commission == 0 else potential / commission
    details["commission"] = str(commission)
    details["potential_profit"] = str(potential)
    details["net_profit"] = str(net_profit)
    details["ratio"] = str(ratio if commission == 0 else quantize_ratio(potential, commission))
    details["min_profit_ratio"] = str(min_profit_ratio)

    if ratio < min_profit_ratio:
        return _result(ok=False, reason=RejectReason.EDGE_TOO_SMALL, details=details)
    if net_profit <= 0:
        return _result(ok=False, reason=RejectReason.NET_PROFIT_NON_POSITIVE, details=details)
    return _result(ok=True, reason=None, details=details)


def spread_pct(best_bid: Decimal, best_ask: Decimal) -> Decimal:
    if best_bid <= 0:
        raise ValueError("best_bid must be > 0")
    return (best_ask - best_bid) / best_bid * 100


def check_spread(
    *,
    best_bid: Decimal | None,
    best_ask: Decimal | None,
    max_spread_pct: Decimal | None,
) -> FeasibilityResult:
    details: dict[str, Any] = {}
    if max_spread_pct is None or best_bid is None or best_ask is None or best_bid <= 0:
        return _result(ok=True, reason=None, details=details)
    current = spread_pct(best_bid, best_ask)
    details["spread_pct"] = str(current)
    details["max_spread_pct"] = str(max_spread_pct)
    if current > max_spread_pct:
        return _result(ok=False, reason=RejectReason.SPREAD_TOO_WIDE, details=details)
    return _result(ok=True, reason=None, details=details)
