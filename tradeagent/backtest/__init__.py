from tradeagent.backtest.data_provider import InstrumentFeed, MissingDataError, build_feed, load_feed
from tradeagent.backtest.engine import (
    BacktestReport,
    PortfolioBacktestReport,
    run_backtest,
    run_isolated_backtest,
    run_portfolio_backtest,
    run_shared_backtest,
)
from tradeagent.backtest.optimizer import OptimizationResult, SweepRow, optimize

__all__ = [
    "InstrumentFeed",
    "MissingDataError",
    "build_feed",
    "load_feed",
    "BacktestReport",
    "PortfolioBacktestReport",
    "run_backtest",
    "run_isolated_backtest",
    "run_portfolio_backtest",
    "run_shared_backtest",
    "OptimizationResult",
    "SweepRow",
    "optimize",
]
