from __future__ import annotations

import argparse
import json
import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from tradeagent.backtest.data_provider import InstrumentFeed, MissingDataError, load_feed
from tradeagent.backtest.engine import run_portfolio_backtest
from tradeagent.backtest.optimizer import optimize
from tradeagent.config import AppConfig, InstrumentConfig, load_config
from tradeagent.execution.ledger import CapitalLedger
from tradeagent.execution.live import LiveExecutor
from tradeagent.execution.orders import PaperGateway
from tradeagent.strategy.contracts import Insufficient, MarketView

LOGGER = logging.getLogger("tradeagent")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Multi-instrument signal scoring, backtest and dry-run scanner")
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--backtest", action="store_true", help="Replay indicator history and print the report.")
    mode_group.add_argument("--optimize", action="store_true", help="Sweep stop/target/breakeven multipliers.")
    mode_group.add_argument("--scan", action="store_true", help="Evaluate the latest bar of every instrument once (dry run).")

    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--data-root", default=None, help="Folder with <TICKER>/<tf>.parquet|csv indicator files")
    parser.add_argument("--isolated", action="store_true", help="Give every instrument its own balance in --backtest.")
    parser.add_argument("--output", default=None, help="Write the JSON report to this path")
    parser.add_argument("--log-level", default=None)
    return parser.parse_args()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _resolve_path(base: Path, value: str) -> Path:
    path = Path(value)
    if path.is_absolute():
        return path
    cwd_candidate = Path.cwd() / path
    if cwd_candidate.exists():
        return cwd_candidate
    return base / path


def load_feeds(config: AppConfig, data_root: Path, instruments: list[InstrumentConfig]) -> dict[str, InstrumentFeed]:
    feeds: dict[str, InstrumentFeed] = {}
    for instrument in instruments:
        try:
            feeds[instrument.instrument_id] = load_feed(
                data_root,
                instrument,
                higher_timeframe=config.backtest.higher_timeframe,
                lower_timeframe=config.backtest.lower_timeframe,
            )
        except MissingDataError as exc:
            LOGGER.warning("Skipping %s: %s", instrument.instrument_id, exc)
    return feeds


def _emit(label: str, payload: dict[str, Any], output: str | None) -> None:
    text = json.dumps(payload, indent=2, ensure_ascii=True)
    if output:
        path = Path(output)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        LOGGER.info("%s written to %s", label, path)
    else:
        LOGGER.info("%s: %s", label, text)


def run_backtest_mode(args: argparse.Namespace, config: AppConfig, feeds: dict[str, InstrumentFeed], instruments: list[InstrumentConfig]) -> None:
    shared = config.backtest.shared_balance and not args.isolated
    report = run_portfolio_backtest(
        feeds,
        instruments,
        config.strategy,
        initial_balance=config.backtest.initial_balance,
        shared_balance=shared,
        workers=config.backtest.workers,
    )
    _emit("Backtest report", report.to_dict(), args.output)


def run_optimize_mode(args: argparse.Namespace, config: AppConfig, feeds: dict[str, InstrumentFeed], instruments: list[InstrumentConfig]) -> None:
    result = optimize(
        feeds,
        instruments,
        config.strategy,
        config.optimizer,
        initial_balance=config.backtest.initial_balance,
    )
    _emit("Optimization result", result.to_dict(), args.output)


def run_scan_mode(args: argparse.Namespace, config: AppConfig, feeds: dict[str, InstrumentFeed], instruments: list[InstrumentConfig]) -> None:
    if not config.live.dry_run:
        raise RuntimeError("Only dry-run scanning is available; set live.dry_run: true")
    executor = LiveExecutor(
        instruments=instruments,
        config=config.strategy,
        ledger=CapitalLedger(config.live.initial_balance),
        gateway=PaperGateway(mode_prefix="DRY"),
        workers=config.live.workers,
    )
    latest: dict[str, MarketView | Insufficient] = {
        instrument_id: feed.items[-1] for instrument_id, feed in feeds.items() if feed.items
    }
    outcomes = executor.scan(latest)
    payload = {
        "ledger": executor.ledger.snapshot().to_dict(),
        "outcomes": [
            {
                "instrument_id": outcome.instrument_id,
                "timestamp": outcome.timestamp.isoformat() if outcome.timestamp else None,
                "phase": outcome.phase,
                "action": outcome.action,
                "reason_codes": outcome.reason_codes,
                "rationale": outcome.signal.rationale if outcome.signal else None,
            }
            for outcome in outcomes
        ],
    }
    _emit("Scan result", payload, args.output)


def run() -> None:
    args = parse_args()
    load_dotenv()
    setup_logging(args.log_level or os.getenv("LOG_LEVEL", "INFO"))

    root = Path(__file__).resolve().parent
    config_path = _resolve_path(root, args.config or os.getenv("TRADEAGENT_CONFIG", "config.yaml"))
    config = load_config(config_path)
    data_root = _resolve_path(root, args.data_root or os.getenv("TRADEAGENT_DATA_ROOT", config.backtest.data_root))
    balance_override = os.getenv("TRADEAGENT_INITIAL_BALANCE")
    if balance_override:
        config.backtest.initial_balance = Decimal(balance_override)
        config.live.initial_balance = Decimal(balance_override)

    instruments = config.tradable_instruments()
    if not instruments:
        raise RuntimeError(f"No tradable instruments configured in {config_path}")
    LOGGER.info("Instruments configured: %s", ",".join(item.instrument_id for item in instruments))

    feeds = load_feeds(config, data_root, instruments)
    if not feeds:
        raise MissingDataError("No indicator data found for any instrument", path=data_root)

    if args.optimize:
        run_optimize_mode(args, config, feeds, instruments)
    elif args.scan:
        run_scan_mode(args, config, feeds, instruments)
    else:
        run_backtest_mode(args, config, feeds, instruments)


if __name__ == "__main__":
    run()
