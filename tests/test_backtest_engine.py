from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tradeagent.backtest.data_provider import InstrumentFeed
from tradeagent.backtest.engine import (
    ordered_timeline,
    run_backtest,
    run_portfolio_backtest,
)
from tradeagent.config import InstrumentConfig, StrategyConfig
from tradeagent.strategy.contracts import ExitReason, IndicatorSnapshot, Insufficient, MarketView

T0 = datetime(2024, 4, 1, 7, 0, tzinfo=timezone.utc)


def _view(instrument_id: str, minutes: int, price: str, *, atr: float = 2.0) -> MarketView:
    ts = T0 + timedelta(minutes=minutes)
    value = float(price)
    higher = IndicatorSnapshot(
        instrument_id=instrument_id,
        timeframe="1h",
        timestamp=ts,
        price=value,
        atr=atr,
        adx=28.0,
        ema_long=value - 3,
        macd_hist=0.6,
        macd_hist_prev=0.3,
        rsi=58.0,
        rsi_prev=54.0,
    )
    lower = IndicatorSnapshot(
        instrument_id=instrument_id,
        timeframe="15m",
        timestamp=ts,
        price=value,
        atr=atr / 2,
        adx=28.0,
        ema_long=value - 1,
        macd_hist=0.2,
        macd_hist_prev=0.1,
        rsi=58.0,
        rsi_prev=54.0,
    )
    return MarketView(
        instrument_id=instrument_id,
        timestamp=ts,
        price=Decimal(price),
        higher=higher,
        lower=lower,
        higher_bars=150,
        lower_bars=150,
    )


def _feed(instrument_id: str, prices: list[str], *, start: int = 0) -> InstrumentFeed:
    items: list[MarketView | Insufficient] = [
        Insufficient(instrument_id=instrument_id, timestamp=T0 + timedelta(minutes=start - 15), reason="INSUFFICIENT_HISTORY")
    ]
    items.extend(_view(instrument_id, start + idx * 15, price) for idx, price in enumerate(prices))
    return InstrumentFeed(instrument_id=instrument_id, items=items)


def test_single_instrument_report() -> None:
    feed = _feed("SBER", ["100", "103", "106", "106"])
    report = run_backtest(feed, InstrumentConfig(ticker="SBER"), StrategyConfig(), initial_balance=Decimal("10000"))
    assert report.trades == 1
    assert report.wins == 1
    assert report.losses == 0
    assert report.final_balance == Decimal("10005.897")
    assert report.total_pnl == Decimal("5.897")
    assert report.trade_log[0].exit_reason == ExitReason.TAKE_PROFIT
    assert report.start == T0 - timedelta(minutes=15)
    assert report.end == T0 + timedelta(minutes=45)
    payload = report.to_dict()
    assert payload["metrics"]["trades_count"] == 1
    assert payload["metrics"]["by_exit_reason"]["TAKE_PROFIT"]["trades"] == 1
    assert Decimal(payload["metrics"]["equity_end"]) == Decimal("10005.897")
    assert Decimal(payload["equity_curve"][-1]["equity"]) == Decimal("10005.897")
    assert payload["trade_log"][0]["exit_reason"] == "TAKE_PROFIT"


def test_open_position_is_closed_at_end_of_period() -> None:
    feed = _feed("SBER", ["100", "101", "101.5"])
    report = run_backtest(feed, InstrumentConfig(ticker="SBER"), StrategyConfig())
    assert report.trades == 1
    trade = report.trade_log[0]
    assert trade.exit_reason == ExitReason.END_OF_PERIOD
    assert trade.exit_price == Decimal("101.5")
    assert report.final_balance == Decimal("10000") - Decimal("0.05") + trade.net_pnl


def test_loss_counts_in_report() -> None:
    feed = _feed("SBER", ["100", "95"])
    report = run_backtest(feed, InstrumentConfig(ticker="SBER"), StrategyConfig())
    assert report.trades == 1
    assert report.wins == 0
    assert report.losses == 1
    assert report.max_drawdown > 0
    assert report.max_drawdown_pct > 0


def test_ordered_timeline_breaks_ties_by_instrument_id() -> None:
    feeds = {
        "BBB": _feed("BBB", ["50", "51"]),
        "AAA": _feed("AAA", ["70", "71"]),
    }
    order = [(ts, instrument_id) for ts, instrument_id, _ in ordered_timeline(feeds)]
    assert order == sorted(order)
    assert [instrument_id for _, instrument_id in order[:2]] == ["AAA", "BBB"]


def test_shared_ledger_contention_is_deterministic() -> None:
    instruments = [InstrumentConfig(ticker="BBB"), InstrumentConfig(ticker="AAA")]
    feeds = {
        "AAA": _feed("AAA", ["100", "101", "102"]),
        "BBB": _feed("BBB", ["100", "101", "102"]),
    }
    first = run_portfolio_backtest(feeds, instruments, StrategyConfig(), initial_balance=Decimal("150"))
    second = run_portfolio_backtest(feeds, instruments, StrategyConfig(), initial_balance=Decimal("150"))

    assert first.reports["AAA"].trades == 1
    assert first.reports["BBB"].trades == 0
    assert first.to_dict() == second.to_dict()
    assert list(first.reports) == ["AAA", "BBB"]
    contribution = sum(
        (trade.realized_contribution for report in first.reports.values() for trade in report.trade_log),
        Decimal("0"),
    )
    assert first.final_balance == Decimal("150") + contribution


def test_shared_report_carries_pool_curve_and_metrics() -> None:
    instruments = [InstrumentConfig(ticker="AAA"), InstrumentConfig(ticker="BBB")]
    feeds = {
        "AAA": _feed("AAA", ["100", "103", "106"]),
        "BBB": _feed("BBB", ["50", "49", "48"], start=15),
    }
    report = run_portfolio_backtest(feeds, instruments, StrategyConfig(), initial_balance=Decimal("10000"))
    payload = report.to_dict()

    metrics = payload["metrics"]
    assert metrics["trades_count"] == report.trades == 2
    assert metrics["total_pnl"] == str(sum((trade.net_pnl for trade in report.trade_log), Decimal("0")))
    assert metrics["equity_end"] == str(report.final_balance)
    assert Decimal(metrics["equity_start"]) == Decimal("10000")
    assert set(metrics["by_direction"]) == {"LONG"}
    assert payload["equity_curve"]
    assert payload["equity_curve"][-1]["equity"] == str(report.final_balance)
    assert [trade.instrument_id for trade in report.trade_log] == ["AAA", "BBB"]

    for instrument_payload in payload["reports"].values():
        assert "equity_end" not in instrument_payload["metrics"]
        assert "max_drawdown" not in instrument_payload["metrics"]
        assert instrument_payload["equity_curve"] == []
    assert payload["reports"]["AAA"]["metrics"]["trades_count"] == 1


def test_isolated_mode_gives_each_instrument_its_balance() -> None:
    instruments = [InstrumentConfig(ticker="AAA"), InstrumentConfig(ticker="BBB")]
    feeds = {
        "AAA": _feed("AAA", ["100", "101", "102"]),
        "BBB": _feed("BBB", ["100", "101", "102"]),
    }
    report = run_portfolio_backtest(
        feeds,
        instruments,
        StrategyConfig(),
        initial_balance=Decimal("150"),
        shared_balance=False,
        workers=2,
    )
    assert report.shared_balance is False
    assert report.reports["AAA"].trades == 1
    assert report.reports["BBB"].trades == 1
    assert report.initial_balance == Decimal("300")
    assert report.final_balance == report.reports["AAA"].final_balance + report.reports["BBB"].final_balance


def test_feeds_without_config_are_ignored() -> None:
    feeds = {"AAA": _feed("AAA", ["100"]), "ZZZ": _feed("ZZZ", ["100"])}
    report = run_portfolio_backtest(feeds, [InstrumentConfig(ticker="AAA")], StrategyConfig())
    assert list(report.reports) == ["AAA"]
