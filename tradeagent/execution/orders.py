from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from tradeagent.config import InstrumentConfig
from tradeagent.strategy.contracts import Direction, ExitReason, OpenPosition

LOGGER = logging.getLogger(__name__)


class BrokerError(RuntimeError):
    pass


@dataclass(slots=True, frozen=True)
class Fill:
    order_ref: str
    price: Decimal
    filled_at: datetime


class ExecutionGateway(Protocol):
    def new_order_ref(self, instrument_id: str, kind: str) -> str:
        ...

    def submit_entry(
        self,
        *,
        instrument: InstrumentConfig,
        direction: Direction,
        lots: int,
        price: Decimal,
        order_ref: str,
        now: datetime,
    ) -> Fill | None:
        ...

    def submit_exit(
        self,
        *,
        position: OpenPosition,
        price: Decimal,
        reason: ExitReason,
        order_ref: str,
        now: datetime,
    ) -> Fill | None:
        ...

    def place_protection(
        self,
        *,
        position: OpenPosition,
        take_profit_limit: Decimal,
    ) -> None:
        ...

    def update_stop(self, *, position: OpenPosition, stop_loss: Decimal) -> None:
        ...


@dataclass(slots=True)
class PaperOrder:
    order_ref: str
    instrument_id: str
    kind: str
    side: str
    lots: int
    price: Decimal
    created_at: datetime
    status: str = "FILLED"
    metadata: dict[str, str] = field(default_factory=dict)


class PaperGateway:
    """Fills every order immediately at the requested price.

    Used by historical replays and by dry-run live scans.
    """

    def __init__(self, *, mode_prefix: str = "DRY", deterministic_refs: bool = False):
        self.mode_prefix = mode_prefix
        self.deterministic_refs = deterministic_refs
        self.orders: list[PaperOrder] = []
        self.stop_updates: list[tuple[str, Decimal]] = []
        self._lock = threading.Lock()
        self._counter = 0

    def new_order_ref(self, instrument_id: str, kind: str) -> str:
        if not self.deterministic_refs:
            return f"{self.mode_prefix}-{kind}-{uuid.uuid4().hex[:10]}"
        with self._lock:
            self._counter += 1
            return f"{self.mode_prefix}-{kind}-{instrument_id}-{self._counter}"

    def _record(self, order: PaperOrder) -> None:
        with self._lock:
            self.orders.append(order)

    def submit_entry(
        self,
        *,
        instrument: InstrumentConfig,
        direction: Direction,
        lots: int,
        price: Decimal,
        order_ref: str,
        now: datetime,
    ) -> Fill | None:
        side = "BUY" if direction == Direction.LONG else "SELL"
        self._record(
            PaperOrder(
                order_ref=order_ref,
                instrument_id=instrument.instrument_id,
                kind="ENTRY",
                side=side,
                lots=lots,
                price=price,
                created_at=now,
            )
        )
        LOGGER.debug("Paper entry %s %s lots=%s price=%s", side, instrument.ticker, lots, price)
        return Fill(order_ref=order_ref, price=price, filled_at=now)

    def submit_exit(
        self,
        *,
        position: OpenPosition,
        price: Decimal,
        reason: ExitReason,
        order_ref: str,
        now: datetime,
    ) -> Fill | None:
        side = "SELL" if position.is_long else "BUY"
        self._record(
            PaperOrder(
                order_ref=order_ref,
                instrument_id=position.instrument_id,
                kind="EXIT",
                side=side,
                lots=position.lots,
                price=price,
                created_at=now,
                metadata={"reason": reason.value},
            )
        )
        return Fill(order_ref=order_ref, price=price, filled_at=now)

    def place_protection(self, *, position: OpenPosition, take_profit_limit: Decimal) -> None:
        LOGGER.debug(
            "Paper protection %s: stop=%s take_profit=%s limit=%s",
            position.instrument_id,
            position.stop_loss,
            position.take_profit,
            take_profit_limit,
        )

    def update_stop(self, *, position: OpenPosition, stop_loss: Decimal) -> None:
        with self._lock:
            self.stop_updates.append((position.instrument_id, stop_loss))
