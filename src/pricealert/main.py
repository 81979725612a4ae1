# src/pricealert/main.py
import asyncio
import logging

import structlog
from aiohttp import web
from dotenv import load_dotenv
from redis.asyncio import Redis

from pricealert.config import AppConfig, config_from_env

from pricealert.prices.source import CoinGeckoConfig, CoinGeckoSource
from pricealert.prices.cache import PriceCache
from pricealert.prices.history import HistoricalLookup

from pricealert.alerts.confirmations import ConfirmationTracker
from pricealert.alerts.state import AlertStateMachine
from pricealert.alerts.evaluator import Evaluator
from pricealert.alerts.actions import ActionHandler
from pricealert.alerts.notifiers import ConsoleNotifier

from pricealert.jobs.ticker import EvaluationTicker
from pricealert.jobs.housekeeping import PriceHistoryPruner
from pricealert.web.server import WebDeps, create_app

# Storage
from storage.alert_store import SqlAlertStore
from storage.price_samples import RedisPriceSampleStore

# Telegram notifier (optional)
from pricealert.notify.telegram import TelegramNotifier, config_from_env as telegram_config_from_env

load_dotenv()
log = structlog.get_logger()


def configure_logging(level: str = "INFO") -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
    )


# ---------------------------
# Main
# ---------------------------

async def main(cfg: AppConfig | None = None):
    cfg = cfg or config_from_env()
    configure_logging(cfg.log_level)
    for w in cfg.warnings:
        log.warning("config_warning", msg=w)

    # ----- Storage -----
    store = SqlAlertStore.from_url(cfg.database_url, timeout_s=cfg.store_timeout_s)
    await store.init_schema()  # fatal if the database is unreachable
    redis_client = Redis.from_url(cfg.redis_url)
    samples = RedisPriceSampleStore(redis_client, timeout_s=cfg.store_timeout_s)

    # ----- Prices -----
    source = CoinGeckoSource(CoinGeckoConfig(base_url=cfg.coingecko_api_url, timeout_s=cfg.http_timeout_s))
    await source.start()
    cache = PriceCache(source, samples, ttl_s=cfg.price_ttl_s)
    lookup = HistoricalLookup(samples)

    # ----- Notifications -----
    # Optional Telegram (built from env). If not configured, alerts go to the console.
    tg_notifier = None
    try:
        tg_notifier = TelegramNotifier(cfg=telegram_config_from_env())
        await tg_notifier.start()
        notifier = tg_notifier
        log.info("telegram_enabled")
    except KeyError:
        notifier = ConsoleNotifier()
        log.info("telegram_disabled_missing_env")

    # ----- Engine -----
    machine = AlertStateMachine(store, ConfirmationTracker(store), notifier)
    evaluator = Evaluator(store, cache, lookup, machine)
    actions = ActionHandler(machine)

    ticker = EvaluationTicker(evaluator, interval_s=cfg.poll_interval_s)
    pruner = PriceHistoryPruner(samples, source.known_symbols, retention_s=cfg.history_retention_s)

    # ----- HTTP -----
    app = create_app(WebDeps(
        evaluator=evaluator,
        machine=machine,
        actions=actions,
        notifier=notifier,
        admin_token=cfg.admin_token,
        cron_secret=cfg.cron_secret,
        cron_deadline_s=cfg.cron_deadline_s,
        webhook_secret=tg_notifier.cfg.webhook_secret if tg_notifier else None,
    ))
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, cfg.host, cfg.port)
    await site.start()
    log.info("http_listening", host=cfg.host, port=cfg.port)

    # ----- Run everything -----
    if cfg.polling_enabled:
        await ticker.start()
        await pruner.start()
        log.info("polling_started", interval_s=cfg.poll_interval_s)
    else:
        log.info("polling_disabled_cron_only")

    try:
        await asyncio.Event().wait()
    finally:
        # graceful shutdown to avoid unclosed sessions
        await ticker.stop()
        await pruner.stop()
        await runner.cleanup()
        await source.stop()
        if tg_notifier is not None:
            await tg_notifier.stop()
        await redis_client.aclose()
        await store.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
