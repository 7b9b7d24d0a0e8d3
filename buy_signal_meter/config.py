from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional
import os
import yaml

from .models import validate_timeframe


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


def _env_list(env_key: str) -> Optional[List[str]]:
    raw = os.getenv(env_key)
    if not raw:
        return None
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass
class AppConfig:
    name: str = "Buy Signal Meter"
    log_level: str = "INFO"


@dataclass
class ProviderConfig:
    symbol: str = "OKMUSDT"
    candle_limit: int = 100
    rest_timeout_s: int = 20
    rest_max_retries: int = 4
    rest_backoff_s: float = 0.8


@dataclass
class IndicatorConfig:
    bb_period: int = 20
    bb_mult: float = 2.0
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    volume_period: int = 5
    stability_period: int = 5

    def min_history(self) -> int:
        """Candles needed before every indicator can produce its latest value."""
        return max(
            self.bb_period,
            self.rsi_period + 1,
            self.macd_slow + self.macd_signal,
            self.volume_period + 1,
            self.stability_period,
        )


@dataclass
class MonitorConfig:
    timeframes: List[str] = None
    poll_interval_s: int = 60


@dataclass
class TelegramConfig:
    enabled: bool = True
    token: str = ""
    chat_ids: List[str] = None
    disable_web_page_preview: bool = True


@dataclass
class AlertsConfig:
    enabled: bool = True
    min_strength: int = 70
    min_buy_score: int = 0
    parse_mode: str = "HTML"  # HTML | MarkdownV2
    dedupe: bool = True
    footer: str = ""


@dataclass
class Config:
    app: AppConfig
    provider: ProviderConfig
    indicators: IndicatorConfig
    monitor: MonitorConfig
    telegram: TelegramConfig
    alerts: AlertsConfig


def build_config(raw: Optional[dict] = None) -> Config:
    raw = raw or {}
    cfg = Config(
        app=AppConfig(**raw.get("app", {})),
        provider=ProviderConfig(**raw.get("provider", {})),
        indicators=IndicatorConfig(**raw.get("indicators", {})),
        monitor=MonitorConfig(**raw.get("monitor", {})),
        telegram=TelegramConfig(**raw.get("telegram", {})),
        alerts=AlertsConfig(**raw.get("alerts", {})),
    )

    if cfg.monitor.timeframes is None:
        cfg.monitor.timeframes = ["1h"]
    cfg.monitor.timeframes = [validate_timeframe(tf) for tf in cfg.monitor.timeframes]

    if int(cfg.provider.candle_limit) < cfg.indicators.min_history():
        raise ValueError(
            f"provider.candle_limit={cfg.provider.candle_limit} is below the "
            f"{cfg.indicators.min_history()} candles the indicators need"
        )

    # env overrides (useful on servers)
    cfg.provider.symbol = _env_override(cfg.provider.symbol, "MEXC_SYMBOL").upper()
    cfg.telegram.token = _env_override(cfg.telegram.token, "TELEGRAM_TOKEN")
    if cfg.telegram.chat_ids is None:
        cfg.telegram.chat_ids = []

    # Allow TELEGRAM_CHAT_IDS="id1,id2"
    chat_env = _env_list("TELEGRAM_CHAT_IDS")
    if chat_env:
        cfg.telegram.chat_ids = chat_env

    return cfg


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return build_config(raw)
