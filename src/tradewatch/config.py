from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from tradewatch.ingest.binance_ws import FUTURES_WS_URL, SPOT_WS_URL

DEFAULT_ALERT_REFRESH_INTERVAL_MS = 60_000
DEFAULT_SETTINGS_REFRESH_INTERVAL_MS = 60_000
DEFAULT_SYMBOL_REFRESH_INTERVAL_MS = 300_000
DEFAULT_WS_RETRY_MS = 5_000
MAX_WS_RETRY_MS = 60_000


class ConfigError(RuntimeError):
    """Missing or unusable required configuration; the process must not start."""


@dataclass(slots=True)
class WorkerSettings:
    backend_base_url: str
    worker_api_token: str
    alert_trigger_token: str
    admin_token: str
    log_level: str = "info"
    port: int = 8080

    spot_ws_url: str = SPOT_WS_URL
    futures_ws_url: str = FUTURES_WS_URL
    spot_symbols: list[str] = field(default_factory=list)
    futures_symbols: list[str] = field(default_factory=list)
    price_symbols: list[str] = field(default_factory=list)

    enable_spot: bool = True
    enable_futures: bool = True
    enable_price_alerts: bool = False

    volume_window_s: float = 15 * 60
    volume_threshold_usd: float = 400_000.0
    volume_cooldown_s: float = 15 * 60

    symbol_refresh_interval_s: float = DEFAULT_SYMBOL_REFRESH_INTERVAL_MS / 1000
    settings_refresh_interval_s: float = DEFAULT_SETTINGS_REFRESH_INTERVAL_MS / 1000
    alert_refresh_interval_s: float = DEFAULT_ALERT_REFRESH_INTERVAL_MS / 1000
    ws_retry_base_s: float = DEFAULT_WS_RETRY_MS / 1000
    ws_retry_max_s: float = MAX_WS_RETRY_MS / 1000


def parse_symbols(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    return [s.strip().lower() for s in str(raw).split(",") if s.strip()]


def _require(env: Mapping[str, str], *names: str) -> str:
    for n in names:
        v = env.get(n)
        if v:
            return v
    raise ConfigError(f"Missing required environment variable: {names[0]}")


def _positive(env: Mapping[str, str], name: str, default: float) -> float:
    """Number(x) || default: empty, zero, negative or garbage -> default."""
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        v = float(raw)
    except ValueError:
        return default
    return v if v > 0 else default


def _non_negative(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        v = float(raw)
    except ValueError:
        return default
    return v if v >= 0 else default


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> WorkerSettings:
    """Build settings from the environment; raises ConfigError if credentials are missing."""
    env = os.environ if environ is None else environ

    base_url = _require(env, "BACKEND_BASE_URL", "VERCEL_BASE_URL").rstrip("/")
    worker_token = _require(env, "WORKER_API_TOKEN")
    trigger_token = _require(env, "ALERT_TRIGGER_TOKEN")

    price_symbols = parse_symbols(env.get("BINANCE_SYMBOLS"))

    return WorkerSettings(
        backend_base_url=base_url,
        worker_api_token=worker_token,
        alert_trigger_token=trigger_token,
        admin_token=env.get("ADMIN_TOKEN") or worker_token,
        log_level=env.get("LOG_LEVEL") or "info",
        port=int(_positive(env, "PORT", 8080)),
        spot_ws_url=env.get("BINANCE_WS_URL") or SPOT_WS_URL,
        futures_ws_url=env.get("BINANCE_FUTURES_WS_URL") or FUTURES_WS_URL,
        spot_symbols=parse_symbols(env.get("SPOT_SYMBOLS")),
        futures_symbols=parse_symbols(env.get("FUTURES_SYMBOLS")),
        price_symbols=price_symbols,
        enable_spot=_flag(env, "ENABLE_SPOT", True),
        enable_futures=_flag(env, "ENABLE_FUTURES", True),
        enable_price_alerts=_flag(env, "ENABLE_PRICE_ALERTS", bool(price_symbols)),
        volume_window_s=_positive(env, "VOLUME_WINDOW_MINUTES", 15) * 60,
        volume_threshold_usd=_positive(env, "VOLUME_THRESHOLD_USD", 400_000.0),
        volume_cooldown_s=_non_negative(env, "VOLUME_COOLDOWN_MINUTES", 15) * 60,
        symbol_refresh_interval_s=_positive(env, "SYMBOL_REFRESH_INTERVAL_MS", DEFAULT_SYMBOL_REFRESH_INTERVAL_MS) / 1000,
        settings_refresh_interval_s=_positive(env, "SETTINGS_REFRESH_INTERVAL_MS", DEFAULT_SETTINGS_REFRESH_INTERVAL_MS) / 1000,
        alert_refresh_interval_s=_positive(env, "ALERT_REFRESH_INTERVAL_MS", DEFAULT_ALERT_REFRESH_INTERVAL_MS) / 1000,
        ws_retry_base_s=_positive(env, "WS_RETRY_BASE_MS", DEFAULT_WS_RETRY_MS) / 1000,
        ws_retry_max_s=_positive(env, "WS_RETRY_MAX_MS", MAX_WS_RETRY_MS) / 1000,
    )
