from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from tradeagent.config import StrategyConfig
from tradeagent.execution.sizing import round_to_step
from tradeagent.strategy.contracts import Direction, ExitReason, OpenPosition


@dataclass(slots=True, frozen=True)
class ProtectiveLevels:
    stop_loss: Decimal
    take_profit: Decimal


class ProtectiveStops:
    """Stop-loss, take-profit and breakeven-trailing prices derived from ATR.

    Stateless; every price is rounded half-up to ``price_step``. A stop only
    ever moves in the position holder's favour.
    """

    def __init__(
        self,
        *,
        stop_loss_mult: Decimal,
        take_profit_mult: Decimal,
        breakeven_mult: Decimal,
        breakeven_offset_steps: int = 5,
        take_profit_slippage_steps: int = 20,
    ):
        self.stop_loss_mult = stop_loss_mult
        self.take_profit_mult = take_profit_mult
        self.breakeven_mult = breakeven_mult
        self.breakeven_offset_steps = breakeven_offset_steps
        self.take_profit_slippage_steps = take_profit_slippage_steps

    @classmethod
    def from_config(cls, config: StrategyConfig) -> "ProtectiveStops":
        return cls(
            stop_loss_mult=config.stop_loss_atr_mult,
            take_profit_mult=config.take_profit_atr_mult,
            breakeven_mult=config.breakeven_atr_mult,
            breakeven_offset_steps=config.breakeven_offset_steps,
            take_profit_slippage_steps=config.take_profit_slippage_steps,
        )

    def initial_stops(
        self,
        entry_price: Decimal,
        atr: Decimal,
        direction: Direction,
        *,
        price_step: Decimal,
    ) -> ProtectiveLevels | None:
        if atr <= 0:
            return None
        stop_offset = atr * self.stop_loss_mult
        target_offset = atr * self.take_profit_mult
        if direction == Direction.LONG:
            stop_loss = entry_price - stop_offset
            take_profit = entry_price + target_offset
        else:
            stop_loss = entry_price + stop_offset
            take_profit = entry_price - target_offset
        return ProtectiveLevels(
            stop_loss=round_to_step(stop_loss, price_step),
            take_profit=round_to_step(take_profit, price_step),
        )

    def breakeven_level(self, position: OpenPosition, *, price_step: Decimal) -> Decimal:
        offset = price_step * self.breakeven_offset_steps
        if position.is_long:
            return round_to_step(position.entry_price + offset, price_step)
        return round_to_step(position.entry_price - offset, price_step)

    def trail(
        self,
        position: OpenPosition,
        current_price: Decimal,
        atr: Decimal,
        *,
        price_step: Decimal,
    ) -> Decimal:
        if atr <= 0:
            return position.stop_loss
        breakeven = self.breakeven_level(position, price_step=price_step)
        trigger = atr * self.breakeven_mult
        if position.is_long:
            gain = current_price - position.entry_price
            if gain >= trigger:
                return breakeven if breakeven > position.stop_loss else position.stop_loss
            candidate = round_to_step(current_price - atr * self.stop_loss_mult, price_step)
            if candidate > breakeven and candidate > position.stop_loss:
                return candidate
            return position.stop_loss

        gain = position.entry_price - current_price
        if gain >= trigger:
            return breakeven if breakeven < position.stop_loss else position.stop_loss
        candidate = round_to_step(current_price + atr * self.stop_loss_mult, price_step)
        if candidate < breakeven and candidate < position.stop_loss:
            return candidate
        return position.stop_loss

    def take_profit_limit(self, position: OpenPosition, *, price_step: Decimal) -> Decimal:
        slippage = price_step * self.take_profit_slippage_steps
        if position.is_long:
            return round_to_step(position.take_profit - slippage, price_step)
        return round_to_step(position.take_profit + slippage, price_step)

    @staticmethod
    def exit_reason(position: OpenPosition, current_price: Decimal) -> ExitReason | None:
        if position.is_long:
            if current_price <= position.stop_loss:
                return ExitReason.STOP_LOSS
            if current_price >= position.take_profit:
                return ExitReason.TAKE_PROFIT
            return None
        if current_price >= position.stop_loss:
            return ExitReason.STOP_LOSS
        if current_price <= position.take_profit:
            return ExitReason.TAKE_PROFIT
        return None
