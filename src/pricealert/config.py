"""Configuration from environment (.env loaded by python-dotenv in main)."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_ADMIN_TOKEN = "default-admin-token"


def _bool(v: Optional[str], default: bool) -> bool:
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


@dataclass(slots=True)
class AppConfig:
    database_url: str = "sqlite+aiosqlite:///./pricealert.db"
    redis_url: str = "redis://localhost:6379/0"
    coingecko_api_url: str = "https://api.coingecko.com/api/v3"
    telegram_bot_token: Optional[str] = None
    admin_token: str = DEFAULT_ADMIN_TOKEN
    cron_secret: Optional[str] = None
    poll_interval_s: float = 60.0
    price_ttl_s: float = 30.0
    cron_deadline_s: float = 9.0
    http_timeout_s: float = 5.0
    store_timeout_s: float = 5.0
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    polling_enabled: bool = True
    history_retention_s: float = 24 * 60 * 60
    warnings: list[str] = field(default_factory=list)


def config_from_env() -> AppConfig:
    cfg = AppConfig(
        database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./pricealert.db"),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        coingecko_api_url=os.getenv("COINGECKO_API_URL", "https://api.coingecko.com/api/v3"),
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
        admin_token=os.getenv("ADMIN_TOKEN", DEFAULT_ADMIN_TOKEN),
        cron_secret=os.getenv("CRON_SECRET") or None,
        poll_interval_s=float(os.getenv("POLL_INTERVAL_S", "60")),
        price_ttl_s=float(os.getenv("PRICE_TTL_S", "30")),
        cron_deadline_s=float(os.getenv("CRON_DEADLINE_S", "9")),
        http_timeout_s=float(os.getenv("HTTP_TIMEOUT_S", "5")),
        store_timeout_s=float(os.getenv("STORE_TIMEOUT_S", "5")),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3001")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        polling_enabled=_bool(os.getenv("POLLING_ENABLED"), True),
    )
    cfg.warnings = validate_config(cfg)
    return cfg


def validate_config(cfg: AppConfig) -> list[str]:
    warnings = []
    if not cfg.telegram_bot_token:
        warnings.append("TELEGRAM_BOT_TOKEN is not set; alerts will only be printed to the console.")
    if cfg.admin_token == DEFAULT_ADMIN_TOKEN:
        warnings.append("ADMIN_TOKEN is using the default value; set a secure token in production.")
    if cfg.cron_deadline_s <= 0:
        warnings.append("CRON_DEADLINE_S must be positive; cron passes will time out immediately.")
    return warnings
