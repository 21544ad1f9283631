from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from tradeagent.backtest.data_provider import InstrumentFeed
from tradeagent.config import InstrumentConfig, StrategyConfig
from tradeagent.execution.ledger import CapitalLedger
from tradeagent.execution.orders import PaperGateway
from tradeagent.execution.sizing import percent_of
from tradeagent.reporting.metrics import EquityPoint, compute_metrics
from tradeagent.strategy.contracts import Insufficient, MarketView, TradeRecord
from tradeagent.strategy.state_machine import TradingStateMachine
from tradeagent.strategy.trader import InstrumentTrader

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class BacktestReport:
    instrument_id: str
    start: datetime | None
    end: datetime | None
    initial_balance: Decimal
    final_balance: Decimal
    trades: int
    wins: int
    losses: int
    max_drawdown: Decimal
    max_drawdown_pct: Decimal
    trade_log: list[TradeRecord] = field(default_factory=list)
    equity_curve: list[EquityPoint] = field(default_factory=list)

    @property
    def total_pnl(self) -> Decimal:
        return self.final_balance - self.initial_balance

    @property
    def total_pnl_pct(self) -> Decimal:
        return percent_of(self.total_pnl, self.initial_balance)

    @property
    def win_rate(self) -> float:
        return (self.wins / self.trades) if self.trades else 0.0

    def to_dict(self) -> dict[str, Any]:
        trades = [trade.to_dict() for trade in self.trade_log]
        curve = [point.to_dict() for point in self.equity_curve]
        return {
            "instrument_id": self.instrument_id,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "initial_balance": str(self.initial_balance),
            "final_balance": str(self.final_balance),
            "total_pnl": str(self.total_pnl),
            "total_pnl_pct": str(self.total_pnl_pct),
            "trades": self.trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": self.win_rate,
            "max_drawdown": str(self.max_drawdown),
            "max_drawdown_pct": str(self.max_drawdown_pct),
            "metrics": compute_metrics(self.trade_log, self.equity_curve),
            "trade_log": trades,
            "equity_curve": curve,
        }


@dataclass(slots=True)
class PortfolioBacktestReport:
    shared_balance: bool
    initial_balance: Decimal
    final_balance: Decimal
    max_drawdown: Decimal
    max_drawdown_pct: Decimal
    reports: dict[str, BacktestReport]
    equity_curve: list[EquityPoint] = field(default_factory=list)

    @property
    def total_pnl(self) -> Decimal:
        return self.final_balance - self.initial_balance

    @property
    def total_pnl_pct(self) -> Decimal:
        return percent_of(self.total_pnl, self.initial_balance)

    @property
    def trade_log(self) -> list[TradeRecord]:
        trades = [trade for report in self.reports.values() for trade in report.trade_log]
        return sorted(trades, key=lambda trade: (trade.exit_time, trade.instrument_id))

    @property
    def trades(self) -> int:
        return sum(report.trades for report in self.reports.values())

    @property
    def wins(self) -> int:
        return sum(report.wins for report in self.reports.values())

    @property
    def losses(self) -> int:
        return sum(report.losses for report in self.reports.values())

    @property
    def win_rate(self) -> float:
        return (self.wins / self.trades) if self.trades else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "shared_balance": self.shared_balance,
            "initial_balance": str(self.initial_balance),
            "final_balance": str(self.final_balance),
            "total_pnl": str(self.total_pnl),
            "total_pnl_pct": str(self.total_pnl_pct),
            "trades": self.trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": self.win_rate,
            "max_drawdown": str(self.max_drawdown),
            "max_drawdown_pct": str(self.max_drawdown_pct),
            "metrics": compute_metrics(self.trade_log, self.equity_curve),
            "equity_curve": [point.to_dict() for point in self.equity_curve],
            "reports": {key: report.to_dict() for key, report in self.reports.items()},
        }


def _new_trader(
    instrument: InstrumentConfig,
    config: StrategyConfig,
    ledger: CapitalLedger,
    state_machine: TradingStateMachine,
) -> InstrumentTrader:
    return InstrumentTrader(
        instrument=instrument,
        config=config,
        ledger=ledger,
        state_machine=state_machine,
        gateway=PaperGateway(mode_prefix="BT", deterministic_refs=True),
    )


def _feed_bounds(items: Sequence[MarketView | Insufficient]) -> tuple[datetime | None, datetime | None]:
    stamps = [item.timestamp for item in items if item.timestamp is not None]
    if not stamps:
        return None, None
    return min(stamps), max(stamps)


def _win_loss(trades: Sequence[TradeRecord]) -> tuple[int, int]:
    wins = sum(1 for trade in trades if trade.net_pnl > 0)
    return wins, len(trades) - wins


def ordered_timeline(feeds: Mapping[str, InstrumentFeed]) -> list[tuple[datetime, str, MarketView | Insufficient]]:
    """Merge feeds into one replay order: timestamp first, then instrument id."""
    timeline: list[tuple[datetime, str, int, MarketView | Insufficient]] = []
    for instrument_id in sorted(feeds):
        for idx, item in enumerate(feeds[instrument_id].items):
            if item.timestamp is None:
                continue
            timeline.append((item.timestamp, instrument_id, idx, item))
    timeline.sort(key=lambda entry: (entry[0], entry[1], entry[2]))
    return [(ts, instrument_id, item) for ts, instrument_id, _, item in timeline]


def run_backtest(
    feed: InstrumentFeed,
    instrument: InstrumentConfig,
    config: StrategyConfig,
    *,
    initial_balance: Decimal = Decimal("10000"),
    ledger: CapitalLedger | None = None,
) -> BacktestReport:
    pool = ledger if ledger is not None else CapitalLedger(initial_balance)
    starting_balance = pool.total
    state_machine = TradingStateMachine(cooldown_minutes=config.cooldown_minutes)
    trader = _new_trader(instrument, config, pool, state_machine)
    equity_curve: list[EquityPoint] = []

    for item in feed.items:
        trader.on_cycle(item)
        if isinstance(item, MarketView):
            equity_curve.append(EquityPoint(item.timestamp, pool.total))

    if trader.position is not None:
        trader.force_close()
        if trader.last_time is not None:
            equity_curve.append(EquityPoint(trader.last_time, pool.total))

    start, end = _feed_bounds(feed.items)
    wins, losses = _win_loss(trader.trades)
    snapshot = pool.snapshot()
    LOGGER.info(
        "Backtest %s: trades=%s wins=%s final=%s max_dd=%s%%",
        instrument.instrument_id,
        len(trader.trades),
        wins,
        snapshot.total,
        snapshot.max_drawdown_pct,
    )
    return BacktestReport(
        instrument_id=instrument.instrument_id,
        start=start,
        end=end,
        initial_balance=starting_balance,
        final_balance=snapshot.total,
        trades=len(trader.trades),
        wins=wins,
        losses=losses,
        max_drawdown=snapshot.max_drawdown,
        max_drawdown_pct=snapshot.max_drawdown_pct,
        trade_log=list(trader.trades),
        equity_curve=equity_curve,
    )


def run_shared_backtest(
    feeds: Mapping[str, InstrumentFeed],
    instruments: Sequence[InstrumentConfig],
    config: StrategyConfig,
    *,
    initial_balance: Decimal = Decimal("10000"),
    ledger: CapitalLedger | None = None,
) -> PortfolioBacktestReport:
    pool = ledger if ledger is not None else CapitalLedger(initial_balance)
    starting_balance = pool.total
    state_machine = TradingStateMachine(cooldown_minutes=config.cooldown_minutes)
    by_id = {instrument.instrument_id: instrument for instrument in instruments}
    traders = {
        instrument_id: _new_trader(by_id[instrument_id], config, pool, state_machine)
        for instrument_id in sorted(feeds)
        if instrument_id in by_id
    }
    equity_curve: list[EquityPoint] = []
    current_ts: datetime | None = None

    for ts, instrument_id, item in ordered_timeline(feeds):
        trader = traders.get(instrument_id)
        if trader is None:
            continue
        if current_ts is not None and ts != current_ts:
            equity_curve.append(EquityPoint(current_ts, pool.total))
        current_ts = ts
        trader.on_cycle(item)
    if current_ts is not None:
        equity_curve.append(EquityPoint(current_ts, pool.total))

    for instrument_id in sorted(traders):
        if traders[instrument_id].position is not None:
            traders[instrument_id].force_close()
    if current_ts is not None:
        equity_curve.append(EquityPoint(current_ts, pool.total))

    snapshot = pool.snapshot()
    reports: dict[str, BacktestReport] = {}
    for instrument_id, trader in traders.items():
        start, end = _feed_bounds(feeds[instrument_id].items)
        wins, losses = _win_loss(trader.trades)
        contribution = sum((trade.realized_contribution for trade in trader.trades), Decimal("0"))
        reports[instrument_id] = BacktestReport(
            instrument_id=instrument_id,
            start=start,
            end=end,
            initial_balance=starting_balance,
            final_balance=starting_balance + contribution,
            trades=len(trader.trades),
            wins=wins,
            losses=losses,
            max_drawdown=snapshot.max_drawdown,
            max_drawdown_pct=snapshot.max_drawdown_pct,
            trade_log=list(trader.trades),
        )
    LOGGER.info(
        "Shared backtest over %s instruments: final=%s max_dd=%s%%",
        len(traders),
        snapshot.total,
        snapshot.max_drawdown_pct,
    )
    return PortfolioBacktestReport(
        shared_balance=True,
        initial_balance=starting_balance,
        final_balance=snapshot.total,
        max_drawdown=snapshot.max_drawdown,
        max_drawdown_pct=snapshot.max_drawdown_pct,
        reports=reports,
        equity_curve=equity_curve,
    )


def run_isolated_backtest(
    feeds: Mapping[str, InstrumentFeed],
    instruments: Sequence[InstrumentConfig],
    config: StrategyConfig,
    *,
    initial_balance: Decimal = Decimal("10000"),
    workers: int = 1,
) -> PortfolioBacktestReport:
    by_id = {instrument.instrument_id: instrument for instrument in instruments}
    selected = [instrument_id for instrument_id in sorted(feeds) if instrument_id in by_id]
    reports: dict[str, BacktestReport] = {}
    with ThreadPoolExecutor(max_workers=max(1, int(workers))) as pool:
        future_map: dict[Future[BacktestReport], str] = {
            pool.submit(
                run_backtest,
                feeds[instrument_id],
                by_id[instrument_id],
                config,
                initial_balance=initial_balance,
            ): instrument_id
            for instrument_id in selected
        }
        for future in as_completed(future_map):
            reports[future_map[future]] = future.result()

    ordered = {instrument_id: reports[instrument_id] for instrument_id in selected}
    total_initial = initial_balance * len(ordered)
    total_final = sum((report.final_balance for report in ordered.values()), Decimal("0"))
    worst = max(ordered.values(), key=lambda report: report.max_drawdown_pct, default=None)
    return PortfolioBacktestReport(
        shared_balance=False,
        initial_balance=total_initial,
        final_balance=total_final,
        max_drawdown=worst.max_drawdown if worst else Decimal("0"),
        max_drawdown_pct=worst.max_drawdown_pct if worst else Decimal("0"),
        reports=ordered,
    )


def run_portfolio_backtest(
    feeds: Mapping[str, InstrumentFeed],
    instruments: Sequence[InstrumentConfig],
    config: StrategyConfig,
    *,
    initial_balance: Decimal = Decimal("10000"),
    shared_balance: bool = True,
    workers: int = 1,
) -> PortfolioBacktestReport:
    if shared_balance:
        return run_shared_backtest(feeds, instruments, config, initial_balance=initial_balance)
    return run_isolated_backtest(
        feeds,
        instruments,
        config,
        initial_balance=initial_balance,
        workers=workers,
    )
