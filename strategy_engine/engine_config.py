"""Environment-backed configuration for the strategy lifecycle engine."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path


@dataclass(frozen=True)
class EngineConfig:
    """Canonical configuration surface for the scheduler daemon and CLI."""

    redis_url: str
    monitored_assets: tuple[str, ...]
    trend_symbol: str
    regime_refresh_seconds: int
    risk_check_seconds: int
    promotion_hour_utc: int
    enable_auto_promotion: bool
    auto_promotion_allocation_pct: float
    activation_review_hours: int
    lock_dir: Path
    daemon_lock_stale_seconds: int
    daemon_failure_backoff_seconds: int
    daemon_max_consecutive_failures: int
    log_level: str


_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def _read_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value.strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value.strip()


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    return value


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid float value for {name}: {raw}") from exc
    return value


def _read_symbols(name: str, default: str) -> tuple[str, ...]:
    raw = _read_env(name, default)
    symbols = tuple(dict.fromkeys(token.strip().upper() for token in raw.split(",") if token.strip()))
    if not symbols:
        raise RuntimeError(f"{name} must list at least one symbol")
    return symbols


def load_engine_config() -> EngineConfig:
    """Load and validate engine configuration from environment."""
    promotion_hour = _read_int("ENGINE_PROMOTION_HOUR_UTC", 2)
    if not 0 <= promotion_hour <= 23:
        raise RuntimeError(f"ENGINE_PROMOTION_HOUR_UTC must be within 0..23, got {promotion_hour}")

    allocation_pct = _read_float("ENGINE_AUTO_PROMOTION_ALLOCATION_PCT", 1.0)
    if not 0 < allocation_pct <= 100:
        raise RuntimeError(f"ENGINE_AUTO_PROMOTION_ALLOCATION_PCT must be within (0, 100], got {allocation_pct}")

    log_level = _read_env("ENGINE_LOG_LEVEL", "INFO").upper()
    if log_level not in _LOG_LEVELS:
        raise RuntimeError(f"Invalid log level for ENGINE_LOG_LEVEL: {log_level}")

    return EngineConfig(
        redis_url=_read_env("ENGINE_REDIS_URL", "redis://localhost:6379/0"),
        monitored_assets=_read_symbols("ENGINE_MONITORED_ASSETS", "BTC,ETH,SOL,POL"),
        trend_symbol=_read_env("ENGINE_TREND_SYMBOL", "BTC").upper(),
        regime_refresh_seconds=_read_int("ENGINE_REGIME_REFRESH_SECONDS", 3600),
        risk_check_seconds=_read_int("ENGINE_RISK_CHECK_SECONDS", 3600),
        promotion_hour_utc=promotion_hour,
        enable_auto_promotion=_read_bool("ENGINE_ENABLE_AUTO_PROMOTION", True),
        auto_promotion_allocation_pct=allocation_pct,
        activation_review_hours=_read_int("ENGINE_ACTIVATION_REVIEW_HOURS", 24),
        lock_dir=Path(_read_env("ENGINE_LOCK_DIR", ".engine")).resolve(),
        daemon_lock_stale_seconds=_read_int("ENGINE_DAEMON_LOCK_STALE_SECONDS", 900),
        daemon_failure_backoff_seconds=_read_int("ENGINE_DAEMON_FAILURE_BACKOFF_SECONDS", 120),
        daemon_max_consecutive_failures=_read_int("ENGINE_DAEMON_MAX_CONSECUTIVE_FAILURES", 10),
        log_level=log_level,
    )
