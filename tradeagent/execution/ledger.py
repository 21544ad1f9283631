from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

LOGGER = logging.getLogger(__name__)

_DRAWDOWN_PLACES = Decimal("0.0001")


@dataclass(slots=True, frozen=True)
class LedgerSnapshot:
    available: Decimal
    locked: Decimal
    unrealized: Decimal
    shortfall: Decimal
    total: Decimal
    peak: Decimal
    max_drawdown: Decimal
    max_drawdown_pct: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": str(self.available),
            "locked": str(self.locked),
            "unrealized": str(self.unrealized),
            "shortfall": str(self.shortfall),
            "total": str(self.total),
            "peak": str(self.peak),
            "max_drawdown": str(self.max_drawdown),
            "max_drawdown_pct": str(self.max_drawdown_pct),
        }


class CapitalLedger:
    """Capital pool shared by every instrument that trades against one balance.

    All mutations run under ``self.lock``; one ledger instance is one pool.
    Available cash never drops below zero: a loss larger than the pool can pay
    is carried as ``shortfall`` and settled first by later credits, so
    ``total == available + locked + unrealized - shortfall``.
    """

    def __init__(self, initial_balance: Decimal):
        if initial_balance < 0:
            raise ValueError("initial_balance must be >= 0")
        self.lock = threading.Lock()
        self.initial_balance = initial_balance
        self._available = initial_balance
        self._locked = Decimal("0")
        self._shortfall = Decimal("0")
        self._marks: dict[str, Decimal] = {}
        self._total = initial_balance
        self._peak = initial_balance
        self._max_drawdown = Decimal("0")
        self._max_drawdown_pct = Decimal("0")

    @property
    def available(self) -> Decimal:
        with self.lock:
            return self._available

    @property
    def locked(self) -> Decimal:
        with self.lock:
            return self._locked

    @property
    def shortfall(self) -> Decimal:
        with self.lock:
            return self._shortfall

    @property
    def total(self) -> Decimal:
        with self.lock:
            return self._total

    @property
    def max_drawdown(self) -> Decimal:
        with self.lock:
            return self._max_drawdown

    @property
    def max_drawdown_pct(self) -> Decimal:
        with self.lock:
            return self._max_drawdown_pct

    def snapshot(self) -> LedgerSnapshot:
        with self.lock:
            return LedgerSnapshot(
                available=self._available,
                locked=self._locked,
                unrealized=sum(self._marks.values(), Decimal("0")),
                shortfall=self._shortfall,
                total=self._total,
                peak=self._peak,
                max_drawdown=self._max_drawdown,
                max_drawdown_pct=self._max_drawdown_pct,
            )

    def open_position(self, trade_amount: Decimal, entry_commission: Decimal) -> bool:
        if trade_amount < 0 or entry_commission < 0:
            raise ValueError("trade_amount and entry_commission must be >= 0")
        required = trade_amount + entry_commission
        with self.lock:
            if self._available < required:
                LOGGER.debug(
                    "Ledger refused reservation: required=%s available=%s",
                    required,
                    self._available,
                )
                return False
            self._available -= required
            self._locked += trade_amount
            self._recompute_total()
            self._update_drawdown()
            return True

    def close_position(
        self,
        locked_amount: Decimal,
        net_pnl: Decimal,
        *,
        position_key: str | None = None,
    ) -> None:
        if locked_amount < 0:
            raise ValueError("locked_amount must be >= 0")
        with self.lock:
            if locked_amount > self._locked:
                raise ValueError(f"cannot release {locked_amount}, only {self._locked} is locked")
            self._locked -= locked_amount
            self._apply_cash(locked_amount + net_pnl)
            if position_key is not None:
                self._marks.pop(position_key, None)
            self._recompute_total()
            self._update_drawdown()

    def release(self, trade_amount: Decimal, entry_commission: Decimal) -> None:
        if trade_amount < 0 or entry_commission < 0:
            raise ValueError("trade_amount and entry_commission must be >= 0")
        with self.lock:
            if trade_amount > self._locked:
                raise ValueError(f"cannot release {trade_amount}, only {self._locked} is locked")
            self._locked -= trade_amount
            self._apply_cash(trade_amount + entry_commission)
            self._recompute_total()
            self._update_drawdown()

    def rebook(
        self,
        reserved_amount: Decimal,
        reserved_commission: Decimal,
        filled_amount: Decimal,
        filled_commission: Decimal,
    ) -> None:
        """Replace a reservation made at the quoted price with the filled one."""
        if min(reserved_amount, reserved_commission, filled_amount, filled_commission) < 0:
            raise ValueError("amounts must be >= 0")
        with self.lock:
            if reserved_amount > self._locked:
                raise ValueError(f"cannot rebook {reserved_amount}, only {self._locked} is locked")
            self._locked += filled_amount - reserved_amount
            self._apply_cash((reserved_amount + reserved_commission) - (filled_amount + filled_commission))
            self._recompute_total()
            self._update_drawdown()

    def mark_unrealized(
        self,
        locked_amount: Decimal,
        unrealized_pnl: Decimal,
        *,
        position_key: str = "default",
    ) -> None:
        with self.lock:
            if locked_amount > self._locked:
                raise ValueError(f"cannot mark {locked_amount}, only {self._locked} is locked")
            self._marks[position_key] = unrealized_pnl
            self._recompute_total()
            self._update_drawdown()

    def _apply_cash(self, delta: Decimal) -> None:
        cash = self._available - self._shortfall + delta
        if cash >= 0:
            self._available = cash
            self._shortfall = Decimal("0")
            return
        if cash < -self._shortfall:
            LOGGER.warning("Ledger shortfall: loss exceeds available capital by %s", -cash)
        self._available = Decimal("0")
        self._shortfall = -cash

    def _recompute_total(self) -> None:
        marks = sum(self._marks.values(), Decimal("0"))
        self._total = self._available + self._locked + marks - self._shortfall

    def _update_drawdown(self) -> None:
        if self._total > self._peak:
            self._peak = self._total
        drawdown = self._peak - self._total
        if drawdown > self._max_drawdown:
            self._max_drawdown = drawdown
            if self._peak > 0:
                ratio = (drawdown / self._peak).quantize(_DRAWDOWN_PLACES, rounding=ROUND_HALF_UP)
                self._max_drawdown_pct = ratio * 100
