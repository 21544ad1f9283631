from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class SignalAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def from_action(cls, action: SignalAction) -> "Direction":
        if action == SignalAction.BUY:
            return cls.LONG
        if action == SignalAction.SELL:
            return cls.SHORT
        raise ValueError(f"{action.value} has no trade direction")


class ExitReason(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    END_OF_PERIOD = "END_OF_PERIOD"
    MANUAL = "MANUAL"


@dataclass(slots=True, frozen=True)
class IndicatorSnapshot:
    instrument_id: str
    timeframe: str
    timestamp: datetime
    price: float
    atr: float
    adx: float
    ema_long: float
    macd_hist: float
    macd_hist_prev: float
    rsi: float
    rsi_prev: float


@dataclass(slots=True, frozen=True)
class OrderBookImbalance:
    bids_volume: int
    asks_volume: int
    best_bid: Decimal | None = None
    best_ask: Decimal | None = None


@dataclass(slots=True, frozen=True)
class MarketView:
    instrument_id: str
    timestamp: datetime
    price: Decimal
    higher: IndicatorSnapshot
    lower: IndicatorSnapshot
    higher_bars: int
    lower_bars: int
    order_book: OrderBookImbalance | None = None
    sentiment: str | None = None


@dataclass(slots=True, frozen=True)
class Insufficient:
    instrument_id: str
    timestamp: datetime | None
    reason: str
    detail: str = ""


@dataclass(slots=True, frozen=True)
class TradeSignal:
    instrument_id: str
    action: SignalAction
    confidence: float
    rationale: str
    score_buy: float
    score_sell: float

    @property
    def actionable(self) -> bool:
        return self.action in {SignalAction.BUY, SignalAction.SELL}


@dataclass(slots=True)
class OpenPosition:
    instrument_id: str
    entry_time: datetime
    entry_price: Decimal
    lots: int
    lot_size: int
    direction: Direction
    stop_loss: Decimal
    take_profit: Decimal
    locked_amount: Decimal
    entry_commission: Decimal
    order_ref: str = ""
    pending_exit: ExitReason | None = None

    @property
    def quantity(self) -> Decimal:
        return Decimal(self.lots * self.lot_size)

    @property
    def is_long(self) -> bool:
        return self.direction == Direction.LONG

    def unrealized_pnl(self, price: Decimal) -> Decimal:
        entry_value = self.entry_price * self.quantity
        current_value = price * self.quantity
        if self.is_long:
            return current_value - entry_value
        return entry_value - current_value


@dataclass(slots=True, frozen=True)
class TradeRecord:
    instrument_id: str
    direction: Direction
    entry_time: datetime
    exit_time: datetime
    entry_price: Decimal
    exit_price: Decimal
    quantity: Decimal
    net_pnl: Decimal
    pnl_percent: Decimal
    exit_reason: ExitReason
    entry_commission: Decimal = Decimal("0")
    exit_commission: Decimal = Decimal("0")

    @property
    def realized_contribution(self) -> Decimal:
        return self.net_pnl - self.entry_commission

    def to_dict(self) -> dict[str, Any]:
        return {
            "instrument_id": self.instrument_id,
            "direction": self.direction.value,
            "entry_time": self.entry_time.isoformat(),
            "exit_time": self.exit_time.isoformat(),
            "entry_price": str(self.entry_price),
            "exit_price": str(self.exit_price),
            "quantity": str(self.quantity),
            "pnl": float(self.net_pnl),
            "pnl_percent": float(self.pnl_percent),
            "commission_cost": float(self.entry_commission + self.exit_commission),
            "exit_reason": self.exit_reason.value,
        }


@dataclass(slots=True)
class CycleOutcome:
    instrument_id: str
    timestamp: datetime | None
    phase: str
    action: str
    reason_codes: list[str] = field(default_factory=list)
    signal: TradeSignal | None = None
    trade: TradeRecord | None = None
    stop_update: Decimal | None = None


def _finite(value: float) -> bool:
    return isinstance(value, (int, float)) and not math.isnan(value) and not math.isinf(value)


def _invalid_field(snapshot: IndicatorSnapshot) -> str | None:
    for name in ("price", "atr", "adx", "ema_long", "macd_hist", "macd_hist_prev", "rsi", "rsi_prev"):
        if not _finite(getattr(snapshot, name)):
            return name
    if snapshot.price <= 0:
        return "price"
    if snapshot.atr < 0:
        return "atr"
    if not (0 <= snapshot.adx <= 100):
        return "adx"
    if not (0 <= snapshot.rsi <= 100):
        return "rsi"
    if not (0 <= snapshot.rsi_prev <= 100):
        return "rsi_prev"
    return None


def check_market_view(view: MarketView, *, min_history_bars: int) -> MarketView | Insufficient:
    if view.higher_bars < min_history_bars or view.lower_bars < min_history_bars:
        return Insufficient(
            instrument_id=view.instrument_id,
            timestamp=view.timestamp,
            reason="INSUFFICIENT_HISTORY",
            detail=f"higher={view.higher_bars} lower={view.lower_bars} required={min_history_bars}",
        )
    if view.price <= 0:
        return Insufficient(
            instrument_id=view.instrument_id,
            timestamp=view.timestamp,
            reason="INVALID_INDICATOR",
            detail="price",
        )
    for snapshot in (view.higher, view.lower):
        bad = _invalid_field(snapshot)
        if bad is not None:
            return Insufficient(
                instrument_id=view.instrument_id,
                timestamp=view.timestamp,
                reason="INVALID_INDICATOR",
                detail=f"{snapshot.timeframe}.{bad}",
            )
    return view
