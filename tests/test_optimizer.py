from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tradeagent.backtest.data_provider import InstrumentFeed
from tradeagent.backtest.optimizer import optimize, parameter_grid
from tradeagent.config import InstrumentConfig, OptimizerConfig, ParameterRange, StrategyConfig
from tradeagent.strategy.contracts import IndicatorSnapshot, MarketView

T0 = datetime(2024, 7, 1, 8, 0, tzinfo=timezone.utc)


def _view(minutes: int, price: str) -> MarketView:
    ts = T0 + timedelta(minutes=minutes)
    value = float(price)
    snapshot = IndicatorSnapshot(
        instrument_id="SBER",
        timeframe="1h",
        timestamp=ts,
        price=value,
        atr=2.0,
        adx=35.0,
        ema_long=value - 4,
        macd_hist=0.5,
        macd_hist_prev=0.25,
        rsi=60.0,
        rsi_prev=57.0,
    )
    return MarketView(
        instrument_id="SBER",
        timestamp=ts,
        price=Decimal(price),
        higher=snapshot,
        lower=snapshot,
        higher_bars=500,
        lower_bars=500,
    )


def _range(start: str, stop: str, step: str) -> ParameterRange:
    return ParameterRange(start=Decimal(start), stop=Decimal(stop), step=Decimal(step))


def test_default_grid_size() -> None:
    grid = parameter_grid(OptimizerConfig())
    assert len(grid) == 7 * 9 * 4
    assert grid[0] == (Decimal("1.0"), Decimal("2.0"), Decimal("0.5"))
    assert grid[-1] == (Decimal("4.0"), Decimal("6.0"), Decimal("2.0"))


def test_optimizer_picks_highest_final_balance() -> None:
    feeds = {"SBER": InstrumentFeed("SBER", [_view(i * 15, p) for i, p in enumerate(["100", "103", "106", "104"])])}
    optimizer = OptimizerConfig(
        stop_loss=_range("2", "2", "1"),
        take_profit=_range("3", "4", "1"),
        breakeven=_range("1", "1", "1"),
        top_n=5,
        workers=2,
    )
    result = optimize(feeds, [InstrumentConfig(ticker="SBER")], StrategyConfig(), optimizer)

    assert result.evaluated == 2
    assert result.best is not None
    assert result.best.take_profit_atr_mult == Decimal("3")
    assert result.best.final_balance == Decimal("10005.897")
    assert [row.take_profit_atr_mult for row in result.top] == [Decimal("3"), Decimal("4")]
    assert result.top[1].final_balance < result.best.final_balance
    assert result.to_dict()["best"]["trades"] == 1


def test_ties_keep_grid_order() -> None:
    feeds = {"SBER": InstrumentFeed("SBER", [_view(i * 15, p) for i, p in enumerate(["100", "100.5", "101"])])}
    optimizer = OptimizerConfig(
        stop_loss=_range("2", "3", "1"),
        take_profit=_range("5", "5", "1"),
        breakeven=_range("1", "1", "1"),
        top_n=1,
        workers=4,
    )
    result = optimize(feeds, [InstrumentConfig(ticker="SBER")], StrategyConfig(), optimizer)
    assert result.evaluated == 2
    assert len(result.top) == 1
    assert result.best is not None
    assert result.best.stop_loss_atr_mult == Decimal("2")
