"""
Typed configuration — single source of truth for all autotrader settings.

SRP: This module's sole responsibility is loading and validating configuration.
All env-var reads are consolidated here; no other module should call os.getenv().
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import FrozenSet

from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default: str) -> str:
    return os.getenv(key, default)


def _env_bool(key: str, default: str = "true") -> bool:
    return _env(key, default).lower() == "true"


def _env_int(key: str, default: str) -> int:
    return int(_env(key, default))


def _env_float(key: str, default: str) -> float:
    return float(_env(key, default))


def _env_decimal(key: str, default: str) -> Decimal:
    return Decimal(_env(key, default))


def _env_int_set(key: str, default: str) -> FrozenSet[int]:
    return frozenset(int(v) for v in _env(key, default).split(",") if v.strip())


# ── Risk ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RiskConfig:
    """Process-wide risk limits. Immutable for the lifetime of a run."""
    max_position_size_percent: Decimal = _env_decimal("MAX_POSITION_SIZE_PERCENT", "2")
    max_daily_loss_percent: Decimal = _env_decimal("MAX_DAILY_LOSS_PERCENT", "5")
    max_open_positions: int = _env_int("MAX_OPEN_POSITIONS", "3")
    allowed_leverage: FrozenSet[int] = _env_int_set("ALLOWED_LEVERAGE", "1,2,3,5,10")
    min_account_balance: Decimal = _env_decimal("MIN_ACCOUNT_BALANCE", "100")

    def __post_init__(self):
        for name in ("max_position_size_percent", "max_daily_loss_percent"):
            value = getattr(self, name)
            if not Decimal("0") < value <= Decimal("100"):
                raise ValueError(f"{name}={value} must be in (0, 100]")
        if self.max_open_positions < 1:
            raise ValueError("max_open_positions must be >= 1")
        if not self.allowed_leverage:
            raise ValueError("allowed_leverage must not be empty")


# ── Resilient request layer ──────────────────────────────────────────────────

@dataclass(frozen=True)
class RequestConfig:
    """Retry, rate-limit and pacing parameters for exchange calls."""
    max_attempts: int = _env_int("REQUEST_MAX_ATTEMPTS", "3")
    base_delay_sec: float = _env_float("REQUEST_BASE_DELAY_SEC", "1.0")
    rate_limit_cooldown_sec: float = _env_float("RATE_LIMIT_COOLDOWN_SEC", "60")
    min_spacing_sec: float = _env_float("REQUEST_MIN_SPACING_SEC", "0.2")
    max_queue_size: int = _env_int("REQUEST_MAX_QUEUE", "256")


# ── Position monitor ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MonitorConfig:
    """Monitor loop cadence and exit-rule switches."""
    interval_sec: float = _env_float("MONITOR_INTERVAL_SEC", "5")
    trailing_enabled: bool = _env_bool("TRAILING_ENABLED", "true")
    trailing_activation_percent: Decimal = _env_decimal("TRAILING_ACTIVATION_PERCENT", "1.0")
    trailing_offset_percent: Decimal = _env_decimal("TRAILING_OFFSET_PERCENT", "0.5")
    reversal_enabled: bool = _env_bool("REVERSAL_ENABLED", "true")
    reversal_min_confidence: float = _env_float("REVERSAL_MIN_CONFIDENCE", "0")
    maintenance_poll_sec: float = _env_float("MAINTENANCE_POLL_SEC", "30")
    flatten_on_daily_loss: bool = _env_bool("FLATTEN_ON_DAILY_LOSS", "false")


# ── Execution ────────────────────────────────────────────────────────────────

INSUFFICIENT_BALANCE_HALT = "halt"
INSUFFICIENT_BALANCE_SKIP = "skip"


@dataclass(frozen=True)
class ExecutionConfig:
    """Order placement parameters."""
    quote_currency: str = _env("QUOTE_CURRENCY", "USDT")
    fee_rate: Decimal = _env_decimal("TAKER_FEE_RATE", "0.0004")
    fill_timeout_sec: float = _env_float("ENTRY_FILL_TIMEOUT_SEC", "30")
    fill_poll_sec: float = _env_float("ENTRY_FILL_POLL_SEC", "1")
    insufficient_balance_policy: str = _env("INSUFFICIENT_BALANCE_POLICY", INSUFFICIENT_BALANCE_HALT)

    def __post_init__(self):
        if self.insufficient_balance_policy not in (INSUFFICIENT_BALANCE_HALT,
                                                    INSUFFICIENT_BALANCE_SKIP):
            raise ValueError(
                f"insufficient_balance_policy must be "
                f"'{INSUFFICIENT_BALANCE_HALT}' or '{INSUFFICIENT_BALANCE_SKIP}'")


# ── Exchange credentials ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExchangeConfig:
    """ccxt exchange id and API credentials (read-only from env)."""
    exchange_id: str = _env("EXCHANGE_ID", "binanceusdm")
    api_key: str = _env("EXCHANGE_API_KEY", "")
    secret: str = _env("EXCHANGE_SECRET_KEY", "")
    testnet: bool = _env_bool("EXCHANGE_TESTNET", "true")
    mock_mode: bool = _env_bool("EXCHANGE_MOCK_MODE", "false")
    recv_window_ms: int = _env_int("EXCHANGE_RECV_WINDOW_MS", "60000")

    @property
    def use_mock(self) -> bool:
        """Mock mode is forced when credentials are missing."""
        return self.mock_mode or not (self.api_key and self.secret)


# ── Redis ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RedisConfig:
    """Redis connection settings (state store, signal inbox, control channel)."""
    enabled: bool = _env_bool("REDIS_ENABLED", "false")
    host: str = _env("REDIS_HOST", "localhost")
    port: int = _env_int("REDIS_PORT", "6379")
    db: int = _env_int("REDIS_DB", "2")
    prefix: str = _env("REDIS_PREFIX", "autotrader")


# ── Notifier / metrics ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class NotifierConfig:
    webhook_url: str = _env("NOTIFIER_WEBHOOK_URL", "")
    timeout_sec: float = _env_float("NOTIFIER_TIMEOUT_SEC", "5")


@dataclass(frozen=True)
class MetricsConfig:
    enabled: bool = _env_bool("METRICS_ENABLED", "false")
    port: int = _env_int("METRICS_PORT", "8000")


# ── Top-level aggregate ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class BotConfig:
    """
    Root configuration object — compose all sub-configs.

    Usage:
        cfg = BotConfig()              # loads from env
        print(cfg.risk.max_open_positions)
        print(cfg.monitor.interval_sec)
    """
    risk: RiskConfig = field(default_factory=RiskConfig)
    requests: RequestConfig = field(default_factory=RequestConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    symbols: str = _env("SYMBOLS", "BTC/USDT:USDT")
    log_level: str = _env("LOG_LEVEL", "INFO")

    @property
    def symbol_list(self):
        return [s.strip() for s in self.symbols.split(",") if s.strip()]


# Module-level singleton (immutable, safe to share)
_cfg: BotConfig | None = None


def get_config() -> BotConfig:
    """Get the global immutable config. Created once, never mutated."""
    global _cfg
    if _cfg is None:
        _cfg = BotConfig()
    return _cfg
