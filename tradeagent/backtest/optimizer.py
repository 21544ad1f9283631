from __future__ import annotations

import itertools
import logging
from collections.abc import Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from tradeagent.backtest.data_provider import InstrumentFeed
from tradeagent.backtest.engine import run_shared_backtest
from tradeagent.config import InstrumentConfig, OptimizerConfig, StrategyConfig
from tradeagent.execution.ledger import CapitalLedger

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SweepRow:
    index: int
    stop_loss_atr_mult: Decimal
    take_profit_atr_mult: Decimal
    breakeven_atr_mult: Decimal
    final_balance: Decimal
    total_pnl: Decimal
    trades: int
    wins: int
    max_drawdown_pct: Decimal

    @property
    def win_rate(self) -> float:
        return (self.wins / self.trades) if self.trades else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "stop_loss_atr_mult": str(self.stop_loss_atr_mult),
            "take_profit_atr_mult": str(self.take_profit_atr_mult),
            "breakeven_atr_mult": str(self.breakeven_atr_mult),
            "final_balance": str(self.final_balance),
            "total_pnl": str(self.total_pnl),
            "trades": self.trades,
            "wins": self.wins,
            "win_rate": self.win_rate,
            "max_drawdown_pct": str(self.max_drawdown_pct),
        }


@dataclass(slots=True)
class OptimizationResult:
    best: SweepRow | None
    top: list[SweepRow] = field(default_factory=list)
    evaluated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "evaluated": self.evaluated,
            "best": self.best.to_dict() if self.best else None,
            "top": [row.to_dict() for row in self.top],
        }


def parameter_grid(config: OptimizerConfig) -> list[tuple[Decimal, Decimal, Decimal]]:
    return list(
        itertools.product(
            config.stop_loss.values(),
            config.take_profit.values(),
            config.breakeven.values(),
        )
    )


def _evaluate(
    index: int,
    params: tuple[Decimal, Decimal, Decimal],
    feeds: Mapping[str, InstrumentFeed],
    instruments: Sequence[InstrumentConfig],
    base: StrategyConfig,
    initial_balance: Decimal,
) -> SweepRow:
    stop_loss, take_profit, breakeven = params
    strategy = base.model_copy(
        update={
            "stop_loss_atr_mult": stop_loss,
            "take_profit_atr_mult": take_profit,
            "breakeven_atr_mult": breakeven,
        }
    )
    report = run_shared_backtest(
        feeds,
        instruments,
        strategy,
        ledger=CapitalLedger(initial_balance),
    )
    return SweepRow(
        index=index,
        stop_loss_atr_mult=stop_loss,
        take_profit_atr_mult=take_profit,
        breakeven_atr_mult=breakeven,
        final_balance=report.final_balance,
        total_pnl=report.total_pnl,
        trades=report.trades,
        wins=report.wins,
        max_drawdown_pct=report.max_drawdown_pct,
    )


def optimize(
    feeds: Mapping[str, InstrumentFeed],
    instruments: Sequence[InstrumentConfig],
    base: StrategyConfig,
    optimizer: OptimizerConfig,
    *,
    initial_balance: Decimal = Decimal("10000"),
) -> OptimizationResult:
    """Replay the universe once per (stop, target, breakeven) combination."""
    grid = parameter_grid(optimizer)
    LOGGER.info("Optimizer: %s combinations, workers=%s", len(grid), optimizer.workers)
    rows: list[SweepRow] = []
    with ThreadPoolExecutor(max_workers=max(1, int(optimizer.workers))) as pool:
        future_map: dict[Future[SweepRow], int] = {
            pool.submit(_evaluate, idx, params, feeds, instruments, base, initial_balance): idx
            for idx, params in enumerate(grid)
        }
        for future in as_completed(future_map):
            row = future.result()
            LOGGER.debug(
                "SL=%s TP=%s BE=%s -> final=%s trades=%s",
                row.stop_loss_atr_mult,
                row.take_profit_atr_mult,
                row.breakeven_atr_mult,
                row.final_balance,
                row.trades,
            )
            rows.append(row)

    ranked = sorted(rows, key=lambda row: (-row.final_balance, row.index))
    best = ranked[0] if ranked else None
    if best is not None:
        LOGGER.info(
            "Best: SL=%s TP=%s BE=%s final=%s",
            best.stop_loss_atr_mult,
            best.take_profit_atr_mult,
            best.breakeven_atr_mult,
            best.final_balance,
        )
    return OptimizationResult(best=best, top=ranked[: optimizer.top_n], evaluated=len(rows))
