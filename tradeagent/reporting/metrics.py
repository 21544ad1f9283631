from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from tradeagent.execution.sizing import percent_of, quantize_ratio
from tradeagent.strategy.contracts import TradeRecord

_MONEY_PLACES = Decimal("0.0001")
_ZERO = Decimal("0")


@dataclass(slots=True, frozen=True)
class EquityPoint:
    timestamp: datetime
    equity: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {"ts": self.timestamp.isoformat(), "equity": str(self.equity)}


@dataclass(slots=True)
class TradeGroupStats:
    """Running totals for one slice of a trade log."""

    trades: int = 0
    wins: int = 0
    net_pnl: Decimal = _ZERO
    gross_profit: Decimal = _ZERO
    gross_loss: Decimal = _ZERO
    commission: Decimal = _ZERO

    def add(self, trade: TradeRecord) -> None:
        self.trades += 1
        self.net_pnl += trade.net_pnl
        self.commission += trade.entry_commission + trade.exit_commission
        if trade.net_pnl > 0:
            self.wins += 1
            self.gross_profit += trade.net_pnl
        elif trade.net_pnl < 0:
            self.gross_loss += trade.net_pnl

    @property
    def losses(self) -> int:
        return self.trades - self.wins

    @property
    def win_rate_pct(self) -> Decimal:
        return percent_of(Decimal(self.wins), Decimal(self.trades))

    @property
    def profit_factor(self) -> Decimal | None:
        if self.gross_loss == 0:
            return None
        return quantize_ratio(self.gross_profit, -self.gross_loss)

    def to_dict(self) -> dict[str, Any]:
        profit_factor = self.profit_factor
        return {
            "trades": self.trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate_pct": str(self.win_rate_pct),
            "net_pnl": str(self.net_pnl),
            "gross_profit": str(self.gross_profit),
            "gross_loss": str(self.gross_loss),
            "commission": str(self.commission),
            "profit_factor": str(profit_factor) if profit_factor is not None else None,
        }


def _mean(total: Decimal, count: int) -> Decimal:
    if count == 0:
        return _ZERO
    return (total / Decimal(count)).quantize(_MONEY_PLACES, rounding=ROUND_HALF_UP)


def _longest_streaks(trades: Iterable[TradeRecord]) -> tuple[int, int]:
    best_win = best_loss = run_win = run_loss = 0
    for trade in trades:
        if trade.net_pnl > 0:
            run_win += 1
            run_loss = 0
        else:
            run_loss += 1
            run_win = 0
        best_win = max(best_win, run_win)
        best_loss = max(best_loss, run_loss)
    return best_win, best_loss


def _grouped(trades: Iterable[TradeRecord], key: Callable[[TradeRecord], str]) -> dict[str, dict[str, Any]]:
    groups: dict[str, TradeGroupStats] = {}
    for trade in trades:
        groups.setdefault(key(trade), TradeGroupStats()).add(trade)
    return {name: groups[name].to_dict() for name in sorted(groups)}


def compute_drawdown_series(equity: Sequence[EquityPoint]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    peak: Decimal | None = None
    for idx, point in enumerate(equity):
        if peak is None or point.equity > peak:
            peak = point.equity
        drawdown = peak - point.equity
        drawdown_pct = percent_of(drawdown, peak) if peak > 0 else _ZERO
        out.append(
            {
                "idx": idx,
                "ts": point.timestamp.isoformat(),
                "equity": point.equity,
                "drawdown": drawdown,
                "drawdown_pct": drawdown_pct,
            }
        )
    return out


def compute_metrics(
    trades: Sequence[TradeRecord],
    equity: Sequence[EquityPoint] | None = None,
) -> dict[str, Any]:
    """Summarize a trade log; equity figures are added only when a curve is given."""
    overall = TradeGroupStats()
    for trade in trades:
        overall.add(trade)
    avg_win = _mean(overall.gross_profit, overall.wins)
    losing = sum(1 for trade in trades if trade.net_pnl < 0)
    avg_loss = _mean(overall.gross_loss, losing)
    longest_wins, longest_losses = _longest_streaks(trades)
    pnls = [trade.net_pnl for trade in trades]
    profit_factor = overall.profit_factor

    metrics: dict[str, Any] = {
        "trades_count": overall.trades,
        "wins": overall.wins,
        "losses": overall.losses,
        "win_rate_pct": str(overall.win_rate_pct),
        "total_pnl": str(overall.net_pnl),
        "gross_profit": str(overall.gross_profit),
        "gross_loss": str(overall.gross_loss),
        "avg_pnl": str(_mean(overall.net_pnl, overall.trades)),
        "avg_win": str(avg_win),
        "avg_loss": str(avg_loss),
        "payoff_ratio": str(quantize_ratio(avg_win, -avg_loss)) if avg_loss < 0 else None,
        "profit_factor": str(profit_factor) if profit_factor is not None else None,
        "commission_total": str(overall.commission),
        "largest_win": str(max(pnls, default=_ZERO)),
        "largest_loss": str(min(pnls, default=_ZERO)),
        "max_consecutive_wins": longest_wins,
        "max_consecutive_losses": longest_losses,
        "by_direction": _grouped(trades, lambda trade: trade.direction.value),
        "by_exit_reason": _grouped(trades, lambda trade: trade.exit_reason.value),
    }
    if equity:
        series = compute_drawdown_series(equity)
        worst = max(series, key=lambda point: point["drawdown"])
        metrics.update(
            {
                "equity_start": str(equity[0].equity),
                "equity_end": str(equity[-1].equity),
                "max_drawdown": str(worst["drawdown"]),
                "max_drawdown_pct": str(max(point["drawdown_pct"] for point in series)),
            }
        )
    return metrics
