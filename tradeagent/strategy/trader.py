from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from tradeagent.config import InstrumentConfig, StrategyConfig
from tradeagent.execution.feasibility import check_economics, check_spread
from tradeagent.execution.ledger import CapitalLedger
from tradeagent.execution.orders import BrokerError, ExecutionGateway, Fill
from tradeagent.execution.protective import ProtectiveStops
from tradeagent.execution.sizing import lots_for, percent_of, to_decimal
from tradeagent.strategy.contracts import (
    CycleOutcome,
    Direction,
    ExitReason,
    Insufficient,
    MarketView,
    OpenPosition,
    TradeRecord,
    TradeSignal,
    check_market_view,
)
from tradeagent.strategy.scorer import SignalScorer
from tradeagent.strategy.state_machine import InstrumentPhase, TradingStateMachine

LOGGER = logging.getLogger(__name__)

_UNHELD_PHASES = {InstrumentPhase.SCANNING, InstrumentPhase.ENTRY_PENDING, InstrumentPhase.COOLDOWN}
_PENDING_OR_HELD = {InstrumentPhase.ENTRY_PENDING, InstrumentPhase.ACTIVE, InstrumentPhase.EXIT_PENDING}


class InstrumentTrader:
    """One evaluation pass per market-data cycle for a single instrument.

    The trader owns the instrument's open position; the ledger is the only
    object it shares with other instruments.
    """

    def __init__(
        self,
        *,
        instrument: InstrumentConfig,
        config: StrategyConfig,
        ledger: CapitalLedger,
        state_machine: TradingStateMachine,
        gateway: ExecutionGateway,
        scorer: SignalScorer | None = None,
        stops: ProtectiveStops | None = None,
    ):
        self.instrument = instrument
        self.config = config
        self.ledger = ledger
        self.state_machine = state_machine
        self.gateway = gateway
        self.scorer = scorer or SignalScorer(config)
        self.stops = stops or ProtectiveStops.from_config(config)
        self.position: OpenPosition | None = None
        self.trades: list[TradeRecord] = []
        self.last_price: Decimal | None = None
        self.last_time: datetime | None = None

    @property
    def instrument_id(self) -> str:
        return self.instrument.instrument_id

    @property
    def price_step(self) -> Decimal:
        return self.instrument.min_price_increment

    def _outcome(
        self,
        timestamp: datetime | None,
        action: str,
        reason_codes: list[str] | None = None,
        **kwargs,
    ) -> CycleOutcome:
        phase = self.state_machine.phase(self.instrument_id, now=timestamp or self.last_time)
        return CycleOutcome(
            instrument_id=self.instrument_id,
            timestamp=timestamp,
            phase=phase.value,
            action=action,
            reason_codes=list(reason_codes or []),
            **kwargs,
        )

    def on_cycle(self, item: MarketView | Insufficient) -> CycleOutcome:
        if isinstance(item, Insufficient):
            LOGGER.debug("Skip %s: %s %s", self.instrument_id, item.reason, item.detail)
            return self._outcome(item.timestamp, "SKIP", [item.reason])
        checked = check_market_view(item, min_history_bars=self.config.min_history_bars)
        if isinstance(checked, Insufficient):
            LOGGER.debug("Skip %s: %s %s", self.instrument_id, checked.reason, checked.detail)
            return self._outcome(checked.timestamp, "SKIP", [checked.reason])

        view = checked
        now = view.timestamp
        self.last_price = view.price
        self.last_time = now
        phase = self.state_machine.phase(self.instrument_id, now=now)

        if self.position is not None and phase in _UNHELD_PHASES:
            LOGGER.warning(
                "STATE_POSITION_MISMATCH %s: position open but phase %s",
                self.instrument_id,
                phase.value,
            )
            self.force_reset(now=now)
            return self._outcome(now, "RESET", ["STATE_POSITION_MISMATCH"])
        if self.position is None and phase in _PENDING_OR_HELD:
            LOGGER.warning(
                "STATE_POSITION_MISMATCH %s: no position but phase %s",
                self.instrument_id,
                phase.value,
            )
            self.state_machine.reset_to_scanning(self.instrument_id, now=now)
            phase = InstrumentPhase.SCANNING

        if self.position is not None:
            return self._manage(view, phase)
        if phase == InstrumentPhase.SCANNING:
            return self._try_enter(view)
        return self._outcome(now, "HOLD", ["COOLDOWN_ACTIVE"])

    def _manage(self, view: MarketView, phase: InstrumentPhase) -> CycleOutcome:
        position = self.position
        assert position is not None
        now = view.timestamp
        if phase == InstrumentPhase.EXIT_PENDING:
            return self._exit(view.price, now, position.pending_exit or ExitReason.MANUAL)

        atr = to_decimal(view.higher.atr)
        stop_update: Decimal | None = None
        new_stop = self.stops.trail(position, view.price, atr, price_step=self.price_step)
        if new_stop != position.stop_loss:
            LOGGER.info(
                "Trail %s stop %s -> %s (price=%s)",
                self.instrument_id,
                position.stop_loss,
                new_stop,
                view.price,
            )
            position.stop_loss = new_stop
            stop_update = new_stop
            self.gateway.update_stop(position=position, stop_loss=new_stop)

        reason = self.stops.exit_reason(position, view.price)
        if reason is not None:
            outcome = self._exit(view.price, now, reason)
            outcome.stop_update = stop_update
            return outcome

        self.ledger.mark_unrealized(
            position.locked_amount,
            position.unrealized_pnl(view.price),
            position_key=self.instrument_id,
        )
        return self._outcome(now, "MANAGE", [], stop_update=stop_update)

    def _exit(self, price: Decimal, now: datetime, reason: ExitReason) -> CycleOutcome:
        position = self.position
        assert position is not None
        order_ref = self.gateway.new_order_ref(self.instrument_id, "EXIT")
        if self.state_machine.phase(self.instrument_id, now=now) == InstrumentPhase.ACTIVE:
            self.state_machine.set_exit_pending(self.instrument_id, order_ref, now=now)
        position.pending_exit = reason

        fill: Fill | None
        try:
            fill = self.gateway.submit_exit(
                position=position,
                price=price,
                reason=reason,
                order_ref=order_ref,
                now=now,
            )
        except BrokerError as exc:
            LOGGER.error("Exit order for %s failed: %s", self.instrument_id, exc)
            fill = None
        if fill is None:
            return self._outcome(now, "EXIT_PENDING", ["EXIT_NOT_FILLED"])

        trade = self._settle(position, fill.price, fill.filled_at, reason)
        return self._outcome(now, "EXIT", [reason.value], trade=trade)

    def _settle(
        self,
        position: OpenPosition,
        exit_price: Decimal,
        exit_time: datetime,
        reason: ExitReason,
    ) -> TradeRecord:
        rate = self.config.commission_rate
        quantity = position.quantity
        entry_value = position.entry_price * quantity
        exit_value = exit_price * quantity
        gross = exit_value - entry_value if position.is_long else entry_value - exit_value
        exit_commission = exit_value * rate
        net = gross - exit_commission

        self.ledger.close_position(position.locked_amount, net, position_key=self.instrument_id)
        pnl_percent = percent_of(net, entry_value * (1 + rate))
        trade = TradeRecord(
            instrument_id=self.instrument_id,
            direction=position.direction,
            entry_time=position.entry_time,
            exit_time=exit_time,
            entry_price=position.entry_price,
            exit_price=exit_price,
            quantity=quantity,
            net_pnl=net,
            pnl_percent=pnl_percent,
            exit_reason=reason,
            entry_commission=position.entry_commission,
            exit_commission=exit_commission,
        )
        self.trades.append(trade)
        self.position = None
        if self.state_machine.phase(self.instrument_id, now=exit_time) == InstrumentPhase.ACTIVE:
            self.state_machine.set_exit_pending(self.instrument_id, position.order_ref, now=exit_time)
        self.state_machine.set_cooldown(self.instrument_id, was_loss=net < 0, now=exit_time)
        LOGGER.info(
            "Closed %s %s entry=%s exit=%s net=%s (%s%%) reason=%s",
            position.direction.value,
            self.instrument_id,
            position.entry_price,
            exit_price,
            net,
            pnl_percent,
            reason.value,
        )
        return trade

    def _reject(self, now: datetime, code: str, signal: TradeSignal | None = None) -> CycleOutcome:
        LOGGER.debug("Entry rejected for %s: %s", self.instrument_id, code)
        return self._outcome(now, "REJECT", [code], signal=signal)

    def _try_enter(self, view: MarketView) -> CycleOutcome:
        now = view.timestamp
        signal = self.scorer.score(
            view.higher,
            view.lower,
            order_book=view.order_book,
            sentiment=view.sentiment,
        )
        if not signal.actionable:
            code = "LOW_ADX" if view.higher.adx < self.scorer.min_adx else "SIGNAL_HOLD"
            return self._outcome(now, "HOLD", [code], signal=signal)
        if not self.scorer.can_execute(signal):
            return self._outcome(now, "HOLD", ["CONFIDENCE_TOO_LOW"], signal=signal)

        direction = Direction.from_action(signal.action)
        atr = to_decimal(view.higher.atr)
        levels = self.stops.initial_stops(view.price, atr, direction, price_step=self.price_step)
        if levels is None:
            return self._reject(now, "ATR_ZERO", signal)

        if view.order_book is not None:
            spread = check_spread(
                best_bid=view.order_book.best_bid,
                best_ask=view.order_book.best_ask,
                max_spread_pct=self.config.max_spread_pct,
            )
            if not spread.ok and spread.reason is not None:
                return self._reject(now, spread.reason.value, signal)

        lots = lots_for(
            self.config.sizing_mode,
            available=self.ledger.available,
            entry_price=view.price,
            stop_price=levels.stop_loss,
            lot_size=self.instrument.lot_size,
            risk_per_trade=self.config.risk_per_trade,
        )
        economics = check_economics(
            entry_price=view.price,
            target_price=levels.take_profit,
            lots=lots,
            lot_size=self.instrument.lot_size,
            commission_rate=self.config.commission_rate,
            min_profit_ratio=self.config.min_profit_ratio,
        )
        if not economics.ok and economics.reason is not None:
            return self._reject(now, economics.reason.value, signal)

        trade_amount = view.price * Decimal(lots * self.instrument.lot_size)
        entry_commission = trade_amount * self.config.commission_rate
        if not self.ledger.open_position(trade_amount, entry_commission):
            return self._reject(now, "INSUFFICIENT_CAPITAL", signal)

        order_ref = self.gateway.new_order_ref(self.instrument_id, "ENTRY")
        self.state_machine.set_entry_pending(self.instrument_id, order_ref, now=now)
        fill: Fill | None
        try:
            fill = self.gateway.submit_entry(
                instrument=self.instrument,
                direction=direction,
                lots=lots,
                price=view.price,
                order_ref=order_ref,
                now=now,
            )
        except BrokerError as exc:
            LOGGER.error("Entry order for %s failed: %s", self.instrument_id, exc)
            fill = None
        if fill is None:
            self.ledger.release(trade_amount, entry_commission)
            self.state_machine.entry_failed(self.instrument_id, now=now)
            return self._reject(now, "ENTRY_NOT_FILLED", signal)

        if fill.price != view.price:
            filled_amount = fill.price * Decimal(lots * self.instrument.lot_size)
            filled_commission = filled_amount * self.config.commission_rate
            self.ledger.rebook(trade_amount, entry_commission, filled_amount, filled_commission)
            LOGGER.info(
                "Entry %s filled at %s instead of %s, reservation %s -> %s",
                self.instrument_id,
                fill.price,
                view.price,
                trade_amount,
                filled_amount,
            )
            trade_amount = filled_amount
            entry_commission = filled_commission

        self.position = OpenPosition(
            instrument_id=self.instrument_id,
            entry_time=fill.filled_at,
            entry_price=fill.price,
            lots=lots,
            lot_size=self.instrument.lot_size,
            direction=direction,
            stop_loss=levels.stop_loss,
            take_profit=levels.take_profit,
            locked_amount=trade_amount,
            entry_commission=entry_commission,
            order_ref=order_ref,
        )
        self.state_machine.set_active(self.instrument_id, now=now)
        self.gateway.place_protection(
            position=self.position,
            take_profit_limit=self.stops.take_profit_limit(self.position, price_step=self.price_step),
        )
        LOGGER.info(
            "Opened %s %s lots=%s price=%s stop=%s target=%s",
            direction.value,
            self.instrument_id,
            lots,
            fill.price,
            levels.stop_loss,
            levels.take_profit,
        )
        return self._outcome(now, "ENTER", [signal.action.value], signal=signal)

    def request_exit(
        self,
        *,
        price: Decimal,
        now: datetime,
        reason: ExitReason = ExitReason.MANUAL,
    ) -> CycleOutcome:
        if self.position is None:
            return self._outcome(now, "HOLD", ["NO_POSITION"])
        self.last_price = price
        self.last_time = now
        return self._exit(price, now, reason)

    def force_close(
        self,
        *,
        price: Decimal | None = None,
        now: datetime | None = None,
        reason: ExitReason = ExitReason.END_OF_PERIOD,
    ) -> TradeRecord | None:
        if self.position is None:
            return None
        exit_price = price if price is not None else self.last_price
        exit_time = now if now is not None else self.last_time
        if exit_price is None or exit_time is None:
            raise ValueError(f"no observed price to close {self.instrument_id}")
        return self._settle(self.position, exit_price, exit_time, reason)

    def force_reset(self, *, now: datetime | None = None) -> None:
        position = self.position
        if position is not None:
            self.ledger.close_position(position.locked_amount, Decimal("0"), position_key=self.instrument_id)
            self.position = None
        self.state_machine.reset_to_scanning(self.instrument_id, now=now)
