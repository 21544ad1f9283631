from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tradeagent.config import InstrumentConfig, StrategyConfig
from tradeagent.execution.ledger import CapitalLedger
from tradeagent.execution.orders import BrokerError, Fill, PaperGateway
from tradeagent.strategy.contracts import (
    Direction,
    ExitReason,
    IndicatorSnapshot,
    Insufficient,
    MarketView,
    OrderBookImbalance,
)
from tradeagent.strategy.state_machine import CooldownCause, InstrumentPhase, TradingStateMachine
from tradeagent.strategy.trader import InstrumentTrader

T0 = datetime(2024, 2, 5, 10, 0, tzinfo=timezone.utc)


def _view(
    minutes: int,
    price: str,
    *,
    instrument_id: str = "SBER",
    trend: str = "up",
    atr: float = 2.0,
    adx: float = 30.0,
    bars: int = 200,
    order_book: OrderBookImbalance | None = None,
) -> MarketView:
    ts = T0 + timedelta(minutes=minutes)
    up = trend == "up"
    higher = IndicatorSnapshot(
        instrument_id=instrument_id,
        timeframe="1h",
        timestamp=ts,
        price=float(price),
        atr=atr,
        adx=adx,
        ema_long=float(price) - 5 if up else float(price) + 5,
        macd_hist=0.4 if up else -0.4,
        macd_hist_prev=0.2 if up else -0.2,
        rsi=55.0,
        rsi_prev=52.0,
    )
    lower = IndicatorSnapshot(
        instrument_id=instrument_id,
        timeframe="15m",
        timestamp=ts,
        price=float(price),
        atr=atr / 2,
        adx=adx,
        ema_long=float(price),
        macd_hist=0.3 if up else -0.3,
        macd_hist_prev=0.1 if up else -0.1,
        rsi=55.0,
        rsi_prev=52.0,
    )
    return MarketView(
        instrument_id=instrument_id,
        timestamp=ts,
        price=Decimal(price),
        higher=higher,
        lower=lower,
        higher_bars=bars,
        lower_bars=bars,
        order_book=order_book,
    )


def _trader(
    *,
    balance: str = "10000",
    gateway=None,
    config: StrategyConfig | None = None,
) -> InstrumentTrader:
    strategy = config or StrategyConfig()
    return InstrumentTrader(
        instrument=InstrumentConfig(ticker="SBER"),
        config=strategy,
        ledger=CapitalLedger(Decimal(balance)),
        state_machine=TradingStateMachine(cooldown_minutes=strategy.cooldown_minutes),
        gateway=gateway or PaperGateway(mode_prefix="BT", deterministic_refs=True),
    )


class _RejectingGateway(PaperGateway):
    def submit_entry(self, **kwargs):
        raise BrokerError("order rejected by exchange")


class _SlippingGateway(PaperGateway):
    def submit_entry(self, **kwargs):
        fill = super().submit_entry(**kwargs)
        return Fill(order_ref=fill.order_ref, price=fill.price + Decimal("0.5"), filled_at=fill.filled_at)


class _StuckExitGateway(PaperGateway):
    def __init__(self) -> None:
        super().__init__(mode_prefix="BT", deterministic_refs=True)
        self.fill_exits = False

    def submit_exit(self, **kwargs):
        if not self.fill_exits:
            return None
        return super().submit_exit(**kwargs)


def test_entry_then_take_profit_with_breakeven_move() -> None:
    trader = _trader()
    entered = trader.on_cycle(_view(0, "100"))
    assert entered.action == "ENTER"
    assert entered.phase == InstrumentPhase.ACTIVE.value
    assert trader.position is not None
    assert trader.position.stop_loss == Decimal("96")
    assert trader.position.take_profit == Decimal("106")
    assert trader.ledger.available == Decimal("9899.95")
    assert trader.ledger.locked == Decimal("100")

    managed = trader.on_cycle(_view(15, "103"))
    assert managed.action == "MANAGE"
    assert managed.stop_update == Decimal("100.05")
    assert trader.gateway.stop_updates == [("SBER", Decimal("100.05"))]
    assert trader.ledger.total == Decimal("10002.95")

    closed = trader.on_cycle(_view(30, "106"))
    assert closed.action == "EXIT"
    assert closed.reason_codes == ["TAKE_PROFIT"]
    trade = closed.trade
    assert trade is not None
    assert trade.net_pnl == Decimal("5.947")
    assert trade.pnl_percent == Decimal("5.94")
    assert trade.exit_reason == ExitReason.TAKE_PROFIT
    assert trader.ledger.available == Decimal("10005.897")
    assert trader.ledger.locked == Decimal("0")
    state = trader.state_machine.get_state("SBER", now=T0 + timedelta(minutes=30))
    assert state.phase == InstrumentPhase.COOLDOWN
    assert state.cooldown_cause == CooldownCause.PROFIT

    waiting = trader.on_cycle(_view(45, "106"))
    assert waiting.action == "HOLD"
    assert waiting.reason_codes == ["COOLDOWN_ACTIVE"]
    reopened = trader.on_cycle(_view(90, "106"))
    assert reopened.action == "ENTER"


def test_stop_loss_exit_sets_loss_cooldown() -> None:
    trader = _trader()
    trader.on_cycle(_view(0, "100"))
    closed = trader.on_cycle(_view(15, "95"))
    assert closed.reason_codes == ["STOP_LOSS"]
    assert closed.trade is not None
    assert closed.trade.net_pnl == Decimal("-5.0475")
    assert trader.state_machine.get_state("SBER", now=T0).cooldown_cause == CooldownCause.LOSS
    assert trader.ledger.total == Decimal("10000") - Decimal("0.05") - Decimal("5.0475")


def test_short_entry_on_downtrend() -> None:
    trader = _trader()
    outcome = trader.on_cycle(_view(0, "100", trend="down"))
    assert outcome.action == "ENTER"
    assert trader.position is not None
    assert trader.position.direction == Direction.SHORT
    assert trader.position.stop_loss == Decimal("104")
    assert trader.position.take_profit == Decimal("94")


def test_force_close_uses_last_observed_price() -> None:
    trader = _trader()
    trader.on_cycle(_view(0, "100"))
    trader.on_cycle(_view(15, "101"))
    trade = trader.force_close()
    assert trade is not None
    assert trade.exit_reason == ExitReason.END_OF_PERIOD
    assert trade.exit_price == Decimal("101")
    assert trade.exit_time == T0 + timedelta(minutes=15)
    assert trade.net_pnl == Decimal("0.9495")
    assert trader.position is None
    assert trader.force_close() is None


def test_insufficient_and_invalid_inputs_are_skipped() -> None:
    trader = _trader()
    skipped = trader.on_cycle(Insufficient(instrument_id="SBER", timestamp=T0, reason="INSUFFICIENT_HISTORY"))
    assert skipped.action == "SKIP"
    short_history = trader.on_cycle(_view(0, "100", bars=50))
    assert short_history.reason_codes == ["INSUFFICIENT_HISTORY"]
    bad_adx = trader.on_cycle(_view(15, "100", adx=math.nan))
    assert bad_adx.reason_codes == ["INVALID_INDICATOR"]
    assert trader.position is None
    assert trader.ledger.available == Decimal("10000")


def test_low_adx_and_zero_atr_block_entries() -> None:
    trader = _trader()
    flat = trader.on_cycle(_view(0, "100", adx=12.0))
    assert flat.action == "HOLD"
    assert flat.reason_codes == ["LOW_ADX"]
    no_atr = trader.on_cycle(_view(15, "100", atr=0.0))
    assert no_atr.action == "REJECT"
    assert no_atr.reason_codes == ["ATR_ZERO"]


def test_capital_and_economics_rejections() -> None:
    broke = _trader(balance="50")
    assert broke.on_cycle(_view(0, "100")).reason_codes == ["LOTS_ZERO"]

    tight = _trader(config=StrategyConfig(take_profit_atr_mult=Decimal("0.01")))
    assert tight.on_cycle(_view(0, "100")).reason_codes == ["EDGE_TOO_SMALL"]

    exact = _trader(balance="100.01")
    assert exact.on_cycle(_view(0, "100")).reason_codes == ["INSUFFICIENT_CAPITAL"]
    assert exact.ledger.available == Decimal("100.01")


def test_wide_spread_rejects_entry() -> None:
    trader = _trader()
    book = OrderBookImbalance(bids_volume=10, asks_volume=5, best_bid=Decimal("99.9"), best_ask=Decimal("100.1"))
    outcome = trader.on_cycle(_view(0, "100", order_book=book))
    assert outcome.reason_codes == ["SPREAD_TOO_WIDE"]


def test_unfilled_entry_releases_capital() -> None:
    trader = _trader(gateway=_RejectingGateway(mode_prefix="BT"))
    outcome = trader.on_cycle(_view(0, "100"))
    assert outcome.action == "REJECT"
    assert outcome.reason_codes == ["ENTRY_NOT_FILLED"]
    assert trader.position is None
    assert trader.ledger.available == Decimal("10000")
    assert trader.ledger.locked == Decimal("0")
    assert trader.state_machine.can_enter("SBER", now=T0)


def test_unfilled_exit_stays_pending_and_retries() -> None:
    gateway = _StuckExitGateway()
    trader = _trader(gateway=gateway)
    trader.on_cycle(_view(0, "100"))
    pending = trader.on_cycle(_view(15, "95"))
    assert pending.action == "EXIT_PENDING"
    assert pending.reason_codes == ["EXIT_NOT_FILLED"]
    assert trader.state_machine.phase("SBER", now=T0) == InstrumentPhase.EXIT_PENDING
    assert trader.position is not None

    gateway.fill_exits = True
    retried = trader.on_cycle(_view(30, "97"))
    assert retried.action == "EXIT"
    assert retried.trade is not None
    assert retried.trade.exit_reason == ExitReason.STOP_LOSS
    assert retried.trade.exit_price == Decimal("97")


def test_position_without_held_phase_is_force_reset() -> None:
    trader = _trader()
    trader.on_cycle(_view(0, "100"))
    trader.state_machine.reset_to_scanning("SBER", now=T0)
    outcome = trader.on_cycle(_view(15, "101"))
    assert outcome.action == "RESET"
    assert outcome.reason_codes == ["STATE_POSITION_MISMATCH"]
    assert trader.position is None
    assert trader.ledger.locked == Decimal("0")
    # entry commission is not refunded
    assert trader.ledger.available == Decimal("9999.95")


def test_held_phase_without_position_is_reset_and_rescanned() -> None:
    trader = _trader()
    trader.state_machine.set_entry_pending("SBER", "GHOST", now=T0)
    trader.state_machine.set_active("SBER", now=T0)
    outcome = trader.on_cycle(_view(0, "100"))
    assert outcome.action == "ENTER"
    assert trader.position is not None


def test_manual_exit_request() -> None:
    trader = _trader()
    assert trader.request_exit(price=Decimal("100"), now=T0).reason_codes == ["NO_POSITION"]
    trader.on_cycle(_view(0, "100"))
    outcome = trader.request_exit(price=Decimal("102"), now=T0 + timedelta(minutes=5))
    assert outcome.action == "EXIT"
    assert outcome.trade is not None
    assert outcome.trade.exit_reason == ExitReason.MANUAL


def test_short_gap_through_stop_leaves_shortfall_not_negative_cash() -> None:
    trader = _trader(balance="100.10")
    assert trader.on_cycle(_view(0, "100", trend="down")).action == "ENTER"
    assert trader.ledger.available == Decimal("0.05")

    closed = trader.on_cycle(_view(15, "210", trend="down"))
    assert closed.reason_codes == ["STOP_LOSS"]
    assert closed.trade is not None
    assert closed.trade.net_pnl == Decimal("-110.105")
    snap = trader.ledger.snapshot()
    assert snap.available == Decimal("0")
    assert snap.locked == Decimal("0")
    assert snap.shortfall == Decimal("10.055")
    assert snap.total == Decimal("-10.055")


def test_entry_reservation_follows_fill_price() -> None:
    trader = _trader(gateway=_SlippingGateway(mode_prefix="BT", deterministic_refs=True))
    entered = trader.on_cycle(_view(0, "100"))
    assert entered.action == "ENTER"
    assert trader.position is not None
    assert trader.position.entry_price == Decimal("100.5")
    assert trader.position.locked_amount == Decimal("100.5")
    assert trader.position.entry_commission == Decimal("0.05025")
    assert trader.ledger.locked == Decimal("100.5")
    assert trader.ledger.available == Decimal("10000") - Decimal("100.5") - Decimal("0.05025")

    outcome = trader.request_exit(price=Decimal("102"), now=T0 + timedelta(minutes=5))
    assert outcome.trade is not None
    assert outcome.trade.net_pnl == Decimal("1.449")
    assert trader.ledger.locked == Decimal("0")
    assert trader.ledger.total == Decimal("10000") - Decimal("0.05025") + Decimal("1.449")
