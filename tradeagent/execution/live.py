from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import datetime
from decimal import Decimal

from tradeagent.clock import utc_now
from tradeagent.config import InstrumentConfig, StrategyConfig
from tradeagent.execution.ledger import CapitalLedger
from tradeagent.execution.orders import ExecutionGateway, PaperGateway
from tradeagent.strategy.contracts import CycleOutcome, Insufficient, MarketView
from tradeagent.strategy.state_machine import TradingStateMachine
from tradeagent.strategy.trader import InstrumentTrader

LOGGER = logging.getLogger(__name__)


class LiveExecutor:
    """Runs one decision cycle per instrument against a shared capital pool.

    Instruments are evaluated concurrently; only the ledger is shared between
    workers.
    """

    def __init__(
        self,
        *,
        instruments: Sequence[InstrumentConfig],
        config: StrategyConfig,
        ledger: CapitalLedger,
        gateway: ExecutionGateway | None = None,
        state_machine: TradingStateMachine | None = None,
        workers: int = 4,
    ):
        self.config = config
        self.ledger = ledger
        self.gateway = gateway or PaperGateway(mode_prefix="DRY")
        self.state_machine = state_machine or TradingStateMachine(cooldown_minutes=config.cooldown_minutes)
        self.workers = max(1, int(workers))
        self.traders: dict[str, InstrumentTrader] = {
            instrument.instrument_id: InstrumentTrader(
                instrument=instrument,
                config=config,
                ledger=ledger,
                state_machine=self.state_machine,
                gateway=self.gateway,
            )
            for instrument in sorted(instruments, key=lambda item: item.instrument_id)
        }

    def trader(self, instrument_id: str) -> InstrumentTrader:
        trader = self.traders.get(instrument_id)
        if trader is None:
            raise KeyError(f"unknown instrument {instrument_id}")
        return trader

    def scan(self, views: Mapping[str, MarketView | Insufficient]) -> list[CycleOutcome]:
        selected = [instrument_id for instrument_id in sorted(views) if instrument_id in self.traders]
        skipped = sorted(set(views) - set(selected))
        if skipped:
            LOGGER.warning("Scan ignored unconfigured instruments: %s", ",".join(skipped))

        outcomes: list[CycleOutcome] = []
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            future_map: dict[Future[CycleOutcome], str] = {
                pool.submit(self.traders[instrument_id].on_cycle, views[instrument_id]): instrument_id
                for instrument_id in selected
            }
            for future in as_completed(future_map):
                outcomes.append(future.result())
        outcomes.sort(key=lambda outcome: outcome.instrument_id)

        snapshot = self.ledger.snapshot()
        LOGGER.info(
            "Scan done: instruments=%s actions=%s available=%s locked=%s total=%s",
            len(outcomes),
            ",".join(f"{outcome.instrument_id}:{outcome.action}" for outcome in outcomes),
            snapshot.available,
            snapshot.locked,
            snapshot.total,
        )
        return outcomes

    def request_close(
        self,
        instrument_id: str,
        price: Decimal,
        now: datetime | None = None,
    ) -> CycleOutcome:
        trader = self.trader(instrument_id)
        LOGGER.info("Manual close requested for %s at %s", instrument_id, price)
        return trader.request_exit(price=price, now=now or utc_now())

    def reconcile(self, held_ids: Iterable[str], now: datetime | None = None) -> list[str]:
        """Force-reset every instrument whose local state disagrees with the broker."""
        current_time = now or utc_now()
        held = set(held_ids)
        mismatched: list[str] = []
        for instrument_id, trader in self.traders.items():
            locally_held = trader.position is not None or self.state_machine.is_held(instrument_id, now=current_time)
            if locally_held == (instrument_id in held):
                continue
            LOGGER.warning(
                "STATE_POSITION_MISMATCH %s: broker_held=%s local_held=%s",
                instrument_id,
                instrument_id in held,
                locally_held,
            )
            trader.force_reset(now=current_time)
            mismatched.append(instrument_id)
        unknown = sorted(held - set(self.traders))
        if unknown:
            LOGGER.warning("Broker holds unconfigured instruments: %s", ",".join(unknown))
        return mismatched
