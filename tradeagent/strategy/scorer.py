from __future__ import annotations

import logging
from dataclasses import dataclass

from tradeagent.config import StrategyConfig
from tradeagent.strategy.contracts import (
    IndicatorSnapshot,
    OrderBookImbalance,
    SignalAction,
    TradeSignal,
)

LOGGER = logging.getLogger(__name__)

TREND_WEIGHT = 2.0
MOMENTUM_WEIGHT = 1.0
ORDER_BOOK_WEIGHT = 1.0
SENTIMENT_WEIGHT = 0.0


@dataclass(slots=True)
class _SideScore:
    trend: float = 0.0
    momentum: float = 0.0
    order_book: float = 0.0
    sentiment: float = 0.0

    @property
    def total(self) -> float:
        return self.trend + self.momentum + self.order_book + self.sentiment

    def rationale(self, adx: float) -> str:
        return (
            f"ADX={adx:.1f}, H1 Trend={self.trend:.0f}, M15 Entry={self.momentum:.0f}, "
            f"Order Book={self.order_book:.0f}, News={self.sentiment:.0f}. "
        )


class SignalScorer:
    def __init__(self, config: StrategyConfig):
        self.min_adx = float(config.min_adx)
        self.min_score = float(config.min_score)
        self.signal_confidence = float(config.signal_confidence)
        self.min_confidence = float(config.min_confidence)

    def score(
        self,
        higher: IndicatorSnapshot,
        lower: IndicatorSnapshot,
        *,
        order_book: OrderBookImbalance | None = None,
        sentiment: str | None = None,
    ) -> TradeSignal:
        instrument_id = higher.instrument_id
        if higher.adx < self.min_adx:
            return TradeSignal(
                instrument_id=instrument_id,
                action=SignalAction.HOLD,
                confidence=0.0,
                rationale=f"Low ADX ({higher.adx:.1f} < {self.min_adx:.1f}): flat market.",
                score_buy=0.0,
                score_sell=0.0,
            )

        buy = _SideScore()
        sell = _SideScore()

        if higher.price > higher.ema_long and higher.macd_hist > 0:
            buy.trend = TREND_WEIGHT
        if higher.price < higher.ema_long and higher.macd_hist < 0:
            sell.trend = TREND_WEIGHT

        if lower.macd_hist > 0 and lower.macd_hist > lower.macd_hist_prev:
            buy.momentum = MOMENTUM_WEIGHT
        if lower.macd_hist < 0 and lower.macd_hist < lower.macd_hist_prev:
            sell.momentum = MOMENTUM_WEIGHT

        if order_book is not None:
            if order_book.bids_volume > order_book.asks_volume:
                buy.order_book = ORDER_BOOK_WEIGHT
            elif order_book.asks_volume > order_book.bids_volume:
                sell.order_book = ORDER_BOOK_WEIGHT

        # sentiment is accepted but carries no weight
        buy.sentiment = SENTIMENT_WEIGHT
        sell.sentiment = SENTIMENT_WEIGHT

        LOGGER.debug(
            "Score %s: BUY=%.1f SELL=%.1f sentiment=%s",
            instrument_id,
            buy.total,
            sell.total,
            sentiment,
        )

        if buy.total >= self.min_score:
            action = SignalAction.BUY
            rationale = buy.rationale(higher.adx) + f"Total: {buy.total:.1f} -> BUY"
        elif sell.total >= self.min_score:
            action = SignalAction.SELL
            rationale = sell.rationale(higher.adx) + f"Total: {sell.total:.1f} -> SELL"
        else:
            return TradeSignal(
                instrument_id=instrument_id,
                action=SignalAction.HOLD,
                confidence=0.0,
                rationale=f"Total: {max(buy.total, sell.total):.1f} -> HOLD",
                score_buy=buy.total,
                score_sell=sell.total,
            )

        LOGGER.info("%s signal for %s: %s", action.value, instrument_id, rationale)
        return TradeSignal(
            instrument_id=instrument_id,
            action=action,
            confidence=self.signal_confidence,
            rationale=rationale,
            score_buy=buy.total,
            score_sell=sell.total,
        )

    def can_execute(self, signal: TradeSignal | None) -> bool:
        if signal is None:
            return False
        if signal.confidence < self.min_confidence:
            return False
        return signal.actionable
