from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator


class InstrumentConfig(BaseModel):
    ticker: str
    figi: str | None = None
    lot_size: int = 1
    min_price_increment: Decimal = Decimal("0.01")
    trade_enabled: bool = True

    @model_validator(mode="after")
    def normalize_fields(self) -> "InstrumentConfig":
        self.ticker = str(self.ticker).strip().upper()
        if not self.ticker:
            raise ValueError("ticker must not be empty")
        figi = str(self.figi or "").strip().upper()
        self.figi = figi or None
        if self.lot_size < 1:
            raise ValueError("lot_size must be >= 1")
        if self.min_price_increment <= 0:
            raise ValueError("min_price_increment must be > 0")
        return self

    @property
    def instrument_id(self) -> str:
        return self.figi or self.ticker


class StrategyConfig(BaseModel):
    stop_loss_atr_mult: Decimal = Decimal("2.0")
    take_profit_atr_mult: Decimal = Decimal("3.0")
    breakeven_atr_mult: Decimal = Decimal("1.0")
    breakeven_offset_steps: int = 5
    take_profit_slippage_steps: int = 20
    min_adx: float = 20.0
    min_score: float = 3.0
    signal_confidence: float = 0.9
    min_confidence: float = 0.8
    min_profit_ratio: Decimal = Decimal("3.0")
    commission_rate: Decimal = Decimal("0.0005")
    cooldown_minutes: int = 60
    min_history_bars: int = 120
    max_spread_pct: Decimal | None = Decimal("0.05")
    sizing_mode: Literal["single_lot", "risk_budget"] = "single_lot"
    risk_per_trade: Decimal = Decimal("0.01")

    @model_validator(mode="after")
    def validate_values(self) -> "StrategyConfig":
        if self.stop_loss_atr_mult <= 0:
            raise ValueError("stop_loss_atr_mult must be > 0")
        if self.take_profit_atr_mult <= 0:
            raise ValueError("take_profit_atr_mult must be > 0")
        if self.breakeven_atr_mult <= 0:
            raise ValueError("breakeven_atr_mult must be > 0")
        if self.breakeven_offset_steps < 0:
            raise ValueError("breakeven_offset_steps must be >= 0")
        if self.take_profit_slippage_steps < 0:
            raise ValueError("take_profit_slippage_steps must be >= 0")
        if self.min_adx < 0:
            raise ValueError("min_adx must be >= 0")
        if self.min_score <= 0:
            raise ValueError("min_score must be > 0")
        if not (0 <= self.min_confidence <= 1.0):
            raise ValueError("min_confidence must be in [0,1]")
        if not (0 < self.signal_confidence <= 1.0):
            raise ValueError("signal_confidence must be in (0,1]")
        if self.min_profit_ratio < 0:
            raise ValueError("min_profit_ratio must be >= 0")
        if not (0 <= self.commission_rate < 1):
            raise ValueError("commission_rate must be in [0,1)")
        if self.cooldown_minutes < 0:
            raise ValueError("cooldown_minutes must be >= 0")
        if self.min_history_bars < 1:
            raise ValueError("min_history_bars must be >= 1")
        if self.max_spread_pct is not None and self.max_spread_pct <= 0:
            raise ValueError("max_spread_pct must be > 0")
        if not (0 < self.risk_per_trade <= 1):
            raise ValueError("risk_per_trade must be in (0,1]")
        return self


class BacktestConfig(BaseModel):
    initial_balance: Decimal = Decimal("10000")
    shared_balance: bool = True
    data_root: str = "data"
    higher_timeframe: str = "1h"
    lower_timeframe: str = "15m"
    workers: int = 4

    @model_validator(mode="after")
    def validate_values(self) -> "BacktestConfig":
        if self.initial_balance <= 0:
            raise ValueError("initial_balance must be > 0")
        if self.workers <= 0:
            raise ValueError("workers must be > 0")
        return self


class ParameterRange(BaseModel):
    start: Decimal
    stop: Decimal
    step: Decimal

    @model_validator(mode="after")
    def validate_range(self) -> "ParameterRange":
        if self.step <= 0:
            raise ValueError("step must be > 0")
        if self.start <= 0:
            raise ValueError("start must be > 0")
        if self.start > self.stop:
            raise ValueError("start must be <= stop")
        return self

    def values(self) -> list[Decimal]:
        out: list[Decimal] = []
        current = self.start
        while current <= self.stop:
            out.append(current)
            current += self.step
        return out


class OptimizerConfig(BaseModel):
    stop_loss: ParameterRange = Field(
        default_factory=lambda: ParameterRange(start=Decimal("1.0"), stop=Decimal("4.0"), step=Decimal("0.5"))
    )
    take_profit: ParameterRange = Field(
        default_factory=lambda: ParameterRange(start=Decimal("2.0"), stop=Decimal("6.0"), step=Decimal("0.5"))
    )
    breakeven: ParameterRange = Field(
        default_factory=lambda: ParameterRange(start=Decimal("0.5"), stop=Decimal("2.0"), step=Decimal("0.5"))
    )
    top_n: int = 10
    workers: int = 4

    @model_validator(mode="after")
    def validate_values(self) -> "OptimizerConfig":
        if self.top_n <= 0:
            raise ValueError("top_n must be > 0")
        if self.workers <= 0:
            raise ValueError("workers must be > 0")
        return self


class LiveConfig(BaseModel):
    initial_balance: Decimal = Decimal("10000")
    workers: int = 4
    dry_run: bool = True

    @model_validator(mode="after")
    def validate_values(self) -> "LiveConfig":
        if self.initial_balance < 0:
            raise ValueError("initial_balance must be >= 0")
        if self.workers <= 0:
            raise ValueError("workers must be > 0")
        return self


class AppConfig(BaseModel):
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    backtest: BacktestConfig = Field(default_factory=BacktestConfig)
    optimizer: OptimizerConfig = Field(default_factory=OptimizerConfig)
    live: LiveConfig = Field(default_factory=LiveConfig)
    instruments: list[InstrumentConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_instruments(self) -> "AppConfig":
        dedup: list[InstrumentConfig] = []
        seen: set[str] = set()
        for instrument in self.instruments:
            if instrument.instrument_id in seen:
                continue
            seen.add(instrument.instrument_id)
            dedup.append(instrument)
        self.instruments = dedup
        return self

    def tradable_instruments(self) -> list[InstrumentConfig]:
        return sorted(
            (item for item in self.instruments if item.trade_enabled),
            key=lambda item: item.instrument_id,
        )


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)
