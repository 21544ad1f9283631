from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pandas as pd

from tradeagent.config import InstrumentConfig
from tradeagent.execution.sizing import to_decimal
from tradeagent.strategy.contracts import IndicatorSnapshot, Insufficient, MarketView

LOGGER = logging.getLogger(__name__)

_TF_ALIAS_TO_MINUTES = {
    "1m": 1,
    "m1": 1,
    "5m": 5,
    "m5": 5,
    "15m": 15,
    "m15": 15,
    "30m": 30,
    "m30": 30,
    "1h": 60,
    "h1": 60,
    "4h": 240,
    "h4": 240,
    "1d": 1440,
    "d1": 1440,
}
_TS_CANDIDATES = ("ts_utc", "timestamp", "datetime", "date", "time")
_PRICE_CANDIDATES = ("current_price", "close", "price", "c")
_ATR_CANDIDATES = ("atr", "atr_14")
_ADX_CANDIDATES = ("adx", "adx_14")
_EMA_CANDIDATES = ("ema_long", "ema_100", "ema")
_MACD_CANDIDATES = ("macd_hist", "macd_histogram")
_MACD_PREV_CANDIDATES = ("macd_hist_prev", "macd_hist_previous")
_RSI_CANDIDATES = ("rsi", "rsi_14")
_RSI_PREV_CANDIDATES = ("rsi_prev", "rsi_previous")
_BARS_CANDIDATES = ("bars", "bar_count")


def normalize_timeframe(value: str) -> str:
    key = value.strip().lower()
    if key not in _TF_ALIAS_TO_MINUTES:
        raise ValueError(f"Unsupported timeframe '{value}'")
    minutes = _TF_ALIAS_TO_MINUTES[key]
    if minutes % 1440 == 0:
        return f"{minutes // 1440}d"
    if minutes % 60 == 0:
        return f"{minutes // 60}h"
    return f"{minutes}m"


def timeframe_to_minutes(value: str) -> int:
    key = value.strip().lower()
    if key not in _TF_ALIAS_TO_MINUTES:
        raise ValueError(f"Unsupported timeframe '{value}'")
    return _TF_ALIAS_TO_MINUTES[key]


class MissingDataError(RuntimeError):
    def __init__(self, message: str, *, path: Path | None = None):
        self.path = path
        super().__init__(message if path is None else f"{message}: {path}")


@dataclass(slots=True)
class InstrumentFeed:
    instrument_id: str
    items: list[MarketView | Insufficient]

    @property
    def ready_count(self) -> int:
        return sum(1 for item in self.items if isinstance(item, MarketView))


def resolve_indicator_file(data_root: str | Path, ticker: str, timeframe: str) -> Path:
    folder = Path(data_root) / ticker.strip().upper()
    tf_norm = normalize_timeframe(timeframe)
    for suffix in (".parquet", ".csv"):
        candidate = folder / f"{tf_norm}{suffix}"
        if candidate.exists():
            return candidate
    raise MissingDataError(f"No indicator file for {ticker.upper()} {tf_norm}", path=folder)


def _read_raw(path: Path) -> pd.DataFrame:
    if path.suffix.lower() == ".parquet":
        return pd.read_parquet(path, engine="pyarrow")
    return pd.read_csv(path)


def normalize_indicator_frame(raw: pd.DataFrame, *, source: str = "<frame>") -> pd.DataFrame:
    columns = {str(name).strip().lower(): name for name in raw.columns}

    def pick(candidates: tuple[str, ...], required: bool) -> str | None:
        for candidate in candidates:
            matched = columns.get(candidate)
            if matched is not None:
                return matched
        if required:
            raise MissingDataError(f"Indicator frame missing column, candidates={candidates} source={source}")
        return None

    ts_col = pick(_TS_CANDIDATES, required=True)
    out = pd.DataFrame({"ts_utc": pd.to_datetime(raw[ts_col], utc=True, errors="coerce")})
    for target, candidates, required in (
        ("price", _PRICE_CANDIDATES, True),
        ("atr", _ATR_CANDIDATES, True),
        ("adx", _ADX_CANDIDATES, True),
        ("ema_long", _EMA_CANDIDATES, True),
        ("macd_hist", _MACD_CANDIDATES, True),
        ("rsi", _RSI_CANDIDATES, True),
        ("macd_hist_prev", _MACD_PREV_CANDIDATES, False),
        ("rsi_prev", _RSI_PREV_CANDIDATES, False),
        ("bars", _BARS_CANDIDATES, False),
    ):
        column = pick(candidates, required=required)
        if column is not None:
            out[target] = pd.to_numeric(raw[column], errors="coerce")

    out = out.dropna(subset=["ts_utc"]).sort_values("ts_utc", kind="mergesort")
    out = out.drop_duplicates(subset=["ts_utc"], keep="last").reset_index(drop=True)
    if "macd_hist_prev" not in out.columns:
        out["macd_hist_prev"] = out["macd_hist"].shift(1)
    if "rsi_prev" not in out.columns:
        out["rsi_prev"] = out["rsi"].shift(1)
    if "bars" not in out.columns:
        out["bars"] = range(1, len(out) + 1)
    out["bars"] = out["bars"].fillna(0).astype(int)
    return out


def load_indicator_frame(path: str | Path) -> pd.DataFrame:
    file_path = Path(path)
    if not file_path.exists():
        raise MissingDataError("Indicator file not found", path=file_path)
    frame = normalize_indicator_frame(_read_raw(file_path), source=str(file_path))
    LOGGER.debug("Loaded %s rows from %s", len(frame), file_path)
    return frame


def _float(value: Any) -> float:
    if value is None:
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _snapshot(row: dict[str, Any], prefix: str, instrument_id: str, timeframe: str) -> IndicatorSnapshot:
    ts = row[f"{prefix}ts_utc"]
    return IndicatorSnapshot(
        instrument_id=instrument_id,
        timeframe=timeframe,
        timestamp=ts.to_pydatetime() if hasattr(ts, "to_pydatetime") else ts,
        price=_float(row[f"{prefix}price"]),
        atr=_float(row[f"{prefix}atr"]),
        adx=_float(row[f"{prefix}adx"]),
        ema_long=_float(row[f"{prefix}ema_long"]),
        macd_hist=_float(row[f"{prefix}macd_hist"]),
        macd_hist_prev=_float(row[f"{prefix}macd_hist_prev"]),
        rsi=_float(row[f"{prefix}rsi"]),
        rsi_prev=_float(row[f"{prefix}rsi_prev"]),
    )


def build_feed(
    instrument_id: str,
    higher: pd.DataFrame,
    lower: pd.DataFrame,
    *,
    higher_timeframe: str = "1h",
    lower_timeframe: str = "15m",
) -> InstrumentFeed:
    """Align each lower-timeframe row with the latest higher-timeframe row at or before it."""
    higher_tf = normalize_timeframe(higher_timeframe)
    lower_tf = normalize_timeframe(lower_timeframe)
    if timeframe_to_minutes(higher_tf) <= timeframe_to_minutes(lower_tf):
        raise ValueError(f"higher timeframe {higher_tf} must be coarser than lower timeframe {lower_tf}")
    left = lower.add_prefix("l_").rename(columns={"l_ts_utc": "ts_utc"})
    right = higher.add_prefix("h_")
    right["ts_utc"] = right["h_ts_utc"]
    merged = pd.merge_asof(
        left.sort_values("ts_utc"),
        right.sort_values("ts_utc"),
        on="ts_utc",
        direction="backward",
        allow_exact_matches=True,
    )

    items: list[MarketView | Insufficient] = []
    for row in merged.to_dict("records"):
        ts = row["ts_utc"].to_pydatetime()
        if pd.isna(row.get("h_ts_utc")):
            items.append(
                Insufficient(
                    instrument_id=instrument_id,
                    timestamp=ts,
                    reason="INSUFFICIENT_HISTORY",
                    detail=f"no {higher_tf} snapshot yet",
                )
            )
            continue
        price = _float(row["l_price"])
        if math.isnan(price) or math.isinf(price):
            items.append(
                Insufficient(
                    instrument_id=instrument_id,
                    timestamp=ts,
                    reason="INVALID_INDICATOR",
                    detail=f"{lower_tf}.price",
                )
            )
            continue
        row["l_ts_utc"] = row["ts_utc"]
        items.append(
            MarketView(
                instrument_id=instrument_id,
                timestamp=ts,
                price=to_decimal(price),
                higher=_snapshot(row, "h_", instrument_id, higher_tf),
                lower=_snapshot(row, "l_", instrument_id, lower_tf),
                higher_bars=int(row["h_bars"]),
                lower_bars=int(row["l_bars"]),
            )
        )
    return InstrumentFeed(instrument_id=instrument_id, items=items)


def load_feed(
    data_root: str | Path,
    instrument: InstrumentConfig,
    *,
    higher_timeframe: str = "1h",
    lower_timeframe: str = "15m",
) -> InstrumentFeed:
    higher = load_indicator_frame(resolve_indicator_file(data_root, instrument.ticker, higher_timeframe))
    lower = load_indicator_frame(resolve_indicator_file(data_root, instrument.ticker, lower_timeframe))
    feed = build_feed(
        instrument.instrument_id,
        higher,
        lower,
        higher_timeframe=higher_timeframe,
        lower_timeframe=lower_timeframe,
    )
    LOGGER.info(
        "Feed %s: %s cycles (%s ready)",
        instrument.instrument_id,
        len(feed.items),
        feed.ready_count,
    )
    return feed

