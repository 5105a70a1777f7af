from __future__ import annotations

from datetime import time as dt_time
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator


class ConfigError(ValueError):
    """Configuration rejected; ``problems`` lists every failing constraint."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        lines = "\n".join(f"  {idx}. {item}" for idx, item in enumerate(self.problems, start=1))
        super().__init__(f"Invalid configuration ({len(self.problems)} problem(s)):\n{lines}")


def _raise_if(problems: list[str]) -> None:
    if problems:
        raise ValueError("; ".join(problems))


def _normalize_symbols(values: list[str] | None) -> list[str]:
    if not values:
        return []
    seen: set[str] = set()
    out: list[str] = []
    for item in values:
        symbol = str(item).strip().upper()
        if not symbol or symbol in seen:
            continue
        seen.add(symbol)
        out.append(symbol)
    return out


class PolicyConfig(BaseModel):
    max_position_pct_equity: float = 0.10
    max_open_positions: int = 5
    max_notional_per_trade: Decimal = Decimal("5000")
    allowed_order_types: list[str] = Field(default_factory=lambda: ["market", "limit"])
    max_daily_loss_pct: float = 0.02
    cooldown_minutes_after_loss: int = 30
    allowed_symbols: list[str] | None = None
    deny_symbols: list[str] = Field(default_factory=list)
    trading_hours_only: bool = True
    extended_hours_allowed: bool = False
    approval_token_ttl_seconds: int = 300
    allow_short_selling: bool = False
    use_cash_only: bool = True
    position_warning_ratio: float = 0.8

    @model_validator(mode="after")
    def validate_limits(self) -> "PolicyConfig":
        problems: list[str] = []
        if not (0.0 < self.max_position_pct_equity <= 1.0):
            problems.append("policy.max_position_pct_equity must be in (0,1]")
        if self.max_open_positions < 1:
            problems.append("policy.max_open_positions must be >= 1")
        if self.max_notional_per_trade <= 0:
            problems.append("policy.max_notional_per_trade must be > 0")
        if not (0.0 < self.max_daily_loss_pct <= 1.0):
            problems.append("policy.max_daily_loss_pct must be in (0,1]")
        if self.cooldown_minutes_after_loss < 0:
            problems.append("policy.cooldown_minutes_after_loss must be >= 0")
        if self.approval_token_ttl_seconds < 1:
            problems.append("policy.approval_token_ttl_seconds must be >= 1")
        if not (0.0 < self.position_warning_ratio < 1.0):
            problems.append("policy.position_warning_ratio must be in (0,1)")
        order_types = [str(item).strip().lower() for item in self.allowed_order_types if str(item).strip()]
        unknown = sorted(set(order_types) - {"market", "limit", "stop", "stop_limit", "trailing_stop"})
        if unknown:
            problems.append(f"policy.allowed_order_types contains unsupported values: {','.join(unknown)}")
        if not order_types:
            problems.append("policy.allowed_order_types must not be empty")
        _raise_if(problems)
        self.allowed_order_types = order_types
        if self.allowed_symbols is not None:
            self.allowed_symbols = _normalize_symbols(self.allowed_symbols)
        self.deny_symbols = _normalize_symbols(self.deny_symbols)
        return self


class SignalsConfig(BaseModel):
    source_weights: dict[str, float] = Field(
        default_factory=lambda: {
            "sec_filing": 0.9,
            "news": 0.75,
            "reddit": 0.5,
            "stocktwits": 0.5,
            "crypto_momentum": 0.3,
        }
    )
    default_source_weight: float = 0.5
    min_weighted_volume: float = 1.0
    max_signal_age_minutes: int = 240
    momentum_scale_pct: float = 10.0
    spool_dir: str = "signals_spool"

    @model_validator(mode="after")
    def validate_weights(self) -> "SignalsConfig":
        problems: list[str] = []
        normalized: dict[str, float] = {}
        for key, value in self.source_weights.items():
            name = str(key).strip().lower()
            weight = float(value)
            if not (0.0 <= weight <= 1.0):
                problems.append(f"signals.source_weights[{name}] must be in [0,1]")
            normalized[name] = weight
        if not (0.0 <= self.default_source_weight <= 1.0):
            problems.append("signals.default_source_weight must be in [0,1]")
        if self.min_weighted_volume < 0:
            problems.append("signals.min_weighted_volume must be >= 0")
        if self.max_signal_age_minutes < 1:
            problems.append("signals.max_signal_age_minutes must be >= 1")
        if self.momentum_scale_pct <= 0:
            problems.append("signals.momentum_scale_pct must be > 0")
        _raise_if(problems)
        self.source_weights = normalized
        return self


class EntryConfig(BaseModel):
    min_sentiment_score: float = 0.3
    min_sources: int = 1
    max_entries_per_cycle: int = 3
    position_size_pct_of_cash: float = 10.0
    max_position_value: Decimal = Decimal("5000")
    ticker_blacklist: list[str] = Field(default_factory=list)
    order_type: str = "market"
    time_in_force: str = "day"

    @model_validator(mode="after")
    def validate_values(self) -> "EntryConfig":
        problems: list[str] = []
        if not (-1.0 <= self.min_sentiment_score <= 1.0):
            problems.append("entry.min_sentiment_score must be in [-1,1]")
        if self.min_sources < 1:
            problems.append("entry.min_sources must be >= 1")
        if self.max_entries_per_cycle < 0:
            problems.append("entry.max_entries_per_cycle must be >= 0")
        if not (0.0 < self.position_size_pct_of_cash <= 100.0):
            problems.append("entry.position_size_pct_of_cash must be in (0,100]")
        if self.max_position_value <= 0:
            problems.append("entry.max_position_value must be > 0")
        self.order_type = str(self.order_type).strip().lower()
        self.time_in_force = str(self.time_in_force).strip().lower()
        if self.time_in_force not in {"day", "gtc", "ioc", "fok"}:
            problems.append("entry.time_in_force must be one of: day, gtc, ioc, fok")
        _raise_if(problems)
        self.ticker_blacklist = _normalize_symbols(self.ticker_blacklist)
        return self


class ExitsConfig(BaseModel):
    take_profit_pct: float = 10.0
    stop_loss_pct: float = 5.0
    trailing_stop_pct: float | None = 8.0
    sell_sentiment_threshold: float = -0.2
    stale_position_enabled: bool = True
    stale_min_hold_hours: float = 24.0
    stale_mid_hold_days: float = 3.0
    stale_mid_min_gain_pct: float = 1.0
    stale_max_hold_days: float = 7.0
    stale_min_gain_pct: float = 5.0
    stale_social_volume_decay: float = 0.3
    stale_no_mentions_hours: float = 48.0

    @model_validator(mode="after")
    def validate_windows(self) -> "ExitsConfig":
        problems: list[str] = []
        if self.take_profit_pct <= 0:
            problems.append("exits.take_profit_pct must be > 0")
        if self.stop_loss_pct <= 0:
            problems.append("exits.stop_loss_pct must be > 0")
        if self.trailing_stop_pct is not None and not (0.0 < self.trailing_stop_pct < 100.0):
            problems.append("exits.trailing_stop_pct must be in (0,100) when provided")
        if not (-1.0 <= self.sell_sentiment_threshold <= 1.0):
            problems.append("exits.sell_sentiment_threshold must be in [-1,1]")
        if self.stale_min_hold_hours < 0:
            problems.append("exits.stale_min_hold_hours must be >= 0")
        if self.stale_mid_hold_days > self.stale_max_hold_days:
            problems.append("exits.stale_mid_hold_days must be <= exits.stale_max_hold_days")
        if not (0.0 <= self.stale_social_volume_decay <= 1.0):
            problems.append("exits.stale_social_volume_decay must be in [0,1]")
        if self.stale_no_mentions_hours <= 0:
            problems.append("exits.stale_no_mentions_hours must be > 0")
        _raise_if(problems)
        return self


class CryptoConfig(BaseModel):
    enabled: bool = False
    symbols: list[str] = Field(default_factory=lambda: ["BTC/USD", "ETH/USD"])
    max_position_value: Decimal = Decimal("1000")
    take_profit_pct: float = 10.0
    stop_loss_pct: float = 5.0

    @model_validator(mode="after")
    def validate_values(self) -> "CryptoConfig":
        problems: list[str] = []
        if self.max_position_value <= 0:
            problems.append("crypto.max_position_value must be > 0")
        if self.take_profit_pct <= 0:
            problems.append("crypto.take_profit_pct must be > 0")
        if self.stop_loss_pct <= 0:
            problems.append("crypto.stop_loss_pct must be > 0")
        _raise_if(problems)
        self.symbols = _normalize_symbols(self.symbols)
        return self


class SchedulerConfig(BaseModel):
    exchange_timezone: str = "America/New_York"
    pre_open_start: dt_time = dt_time(4, 0)
    regular_close: dt_time = dt_time(16, 0)
    after_hours_end: dt_time = dt_time(20, 0)
    open_seconds: int = 30
    pre_open_seconds: int = 120
    after_hours_seconds: int = 300
    overnight_seconds: int = 900
    non_trading_day_seconds: int = 1800
    continuous_seconds: int = 60
    read_timeout_seconds: float = 15.0

    @model_validator(mode="after")
    def validate_delays(self) -> "SchedulerConfig":
        problems: list[str] = []
        delays = {
            "open_seconds": self.open_seconds,
            "pre_open_seconds": self.pre_open_seconds,
            "after_hours_seconds": self.after_hours_seconds,
            "overnight_seconds": self.overnight_seconds,
            "non_trading_day_seconds": self.non_trading_day_seconds,
            "continuous_seconds": self.continuous_seconds,
        }
        for name, value in delays.items():
            if value < 1:
                problems.append(f"scheduler.{name} must be >= 1")
        if self.open_seconds > min(self.pre_open_seconds, self.after_hours_seconds, self.overnight_seconds):
            problems.append("scheduler.open_seconds must be the shortest session delay")
        if self.non_trading_day_seconds < max(self.pre_open_seconds, self.after_hours_seconds, self.overnight_seconds):
            problems.append("scheduler.non_trading_day_seconds must be the longest session delay")
        if not (self.pre_open_start < self.regular_close < self.after_hours_end):
            problems.append("scheduler.pre_open_start < regular_close < after_hours_end must hold")
        if self.read_timeout_seconds <= 0:
            problems.append("scheduler.read_timeout_seconds must be > 0")
        _raise_if(problems)
        return self


class AdvisorConfig(BaseModel):
    enabled: bool = False
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    min_confidence: float = 0.6
    timeout_seconds: float = 20.0
    max_tokens: int = 300

    @model_validator(mode="after")
    def validate_values(self) -> "AdvisorConfig":
        if not (0.0 <= self.min_confidence <= 1.0):
            raise ValueError("advisor.min_confidence must be in [0,1]")
        if self.timeout_seconds <= 0:
            raise ValueError("advisor.timeout_seconds must be > 0")
        return self


class BrokerConfig(BaseModel):
    paper_base_url: str = "https://paper-api.alpaca.markets"
    live_base_url: str = "https://api.alpaca.markets"
    data_base_url: str = "https://data.alpaca.markets"
    timeout_seconds: float = 10.0
    rate_limit_rps: float = 3.0
    rate_limit_burst: int = 5
    request_max_attempts: int = 2
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 5.0

    @model_validator(mode="after")
    def validate_values(self) -> "BrokerConfig":
        problems: list[str] = []
        if self.timeout_seconds <= 0:
            problems.append("broker.timeout_seconds must be > 0")
        if self.rate_limit_rps <= 0:
            problems.append("broker.rate_limit_rps must be > 0")
        if self.rate_limit_burst < 1:
            problems.append("broker.rate_limit_burst must be >= 1")
        if self.request_max_attempts < 1:
            problems.append("broker.request_max_attempts must be >= 1")
        if self.backoff_base_seconds > self.backoff_max_seconds:
            problems.append("broker.backoff_base_seconds must be <= broker.backoff_max_seconds")
        _raise_if(problems)
        return self


class MonitoringConfig(BaseModel):
    alerts_enabled: bool = True
    heartbeat_seconds: int = 300


class AppConfig(BaseModel):
    timezone: str = "America/New_York"
    state_path: str = "signaltrader_state.db"
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    signals: SignalsConfig = Field(default_factory=SignalsConfig)
    entry: EntryConfig = Field(default_factory=EntryConfig)
    exits: ExitsConfig = Field(default_factory=ExitsConfig)
    crypto: CryptoConfig = Field(default_factory=CryptoConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    advisor: AdvisorConfig = Field(default_factory=AdvisorConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @model_validator(mode="after")
    def validate_cross_sections(self) -> "AppConfig":
        problems: list[str] = []
        if self.entry.order_type not in self.policy.allowed_order_types:
            problems.append("entry.order_type must be listed in policy.allowed_order_types")
        if self.entry.max_position_value > self.policy.max_notional_per_trade:
            problems.append("entry.max_position_value must be <= policy.max_notional_per_trade")
        if self.entry.min_sentiment_score <= self.exits.sell_sentiment_threshold:
            problems.append("entry.min_sentiment_score must be > exits.sell_sentiment_threshold")
        _raise_if(problems)
        return self


def _format_validation_error(exc: ValidationError) -> list[str]:
    problems: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = str(error.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        for part in message.split("; "):
            problems.append(f"{location}: {part}" if location else part)
    return problems


def parse_config(raw: dict[str, Any]) -> AppConfig:
    try:
        return AppConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(_format_validation_error(exc)) from exc


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    if not isinstance(raw, dict):
        raise ConfigError([f"{config_path} must contain a YAML mapping"])
    return parse_config(raw)
