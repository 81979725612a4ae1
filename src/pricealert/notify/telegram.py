from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

import aiohttp
import structlog

from pricealert.alerts.actions import ActionKind, encode_callback
from pricealert.alerts.formatting import format_alert_html
from pricealert.utils.backoff import backoff_iter, jitter
from pricealert.utils.types import TriggerContext

log = structlog.get_logger("telegram")

# --------- small rate limiter (token bucket) ----------

class RateLimiter:
    def __init__(self, rate_per_sec: float, burst: int = 1):
        self.rate = float(rate_per_sec)
        self.capacity = int(burst)
        self.tokens = float(burst)
        self.updated = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            now = time.monotonic()
            # refill
            self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
            self.updated = now
            # wait if no token
            if self.tokens < 1.0:
                needed = 1.0 - self.tokens
                await asyncio.sleep(needed / self.rate)
                self.updated = time.monotonic()
                self.tokens = 1.0
            self.tokens -= 1.0

# --------- config & client ----------

@dataclass(slots=True)
class TelegramConfig:
    bot_token: str
    parse_mode: Optional[str] = "HTML"  # "HTML" or "MarkdownV2" or None
    timeout_s: float = 5.0
    rate_per_sec: float = 1.0
    burst: int = 3
    max_retries: int = 3
    initial_backoff_s: float = 0.5
    max_backoff_s: float = 4.0
    api_base: str = "https://api.telegram.org"
    webhook_secret: Optional[str] = None

def config_from_env() -> TelegramConfig:
    """Raises KeyError when TELEGRAM_BOT_TOKEN is missing so callers can fall back."""
    token = os.environ["TELEGRAM_BOT_TOKEN"]
    if not token.strip():
        raise KeyError("TELEGRAM_BOT_TOKEN")
    return TelegramConfig(
        bot_token=token.strip(),
        timeout_s=float(os.getenv("HTTP_TIMEOUT_S", "5")),
        webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET") or None,
    )

class TelegramNotifier:
    """
    Notification gateway over the Bot API.

    send() delivers one trigger message with Confirm / Remove buttons and returns
    the Telegram message_id as the delivery handle, or None when delivery failed
    after a bounded number of retries (429 / 5xx / network errors).
    """
    def __init__(self, cfg: TelegramConfig, format_fn: Optional[Callable[[TriggerContext], str]] = None):
        self.cfg = cfg
        self._session: Optional[aiohttp.ClientSession] = None
        self._rl = RateLimiter(rate_per_sec=cfg.rate_per_sec, burst=cfg.burst)
        self._format_fn = format_fn or format_alert_html

    async def start(self):
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def stop(self):
        if self._session:
            await self._session.close()
            self._session = None

    @staticmethod
    def keyboard(alert_id: int) -> dict:
        return {
            "inline_keyboard": [[
                {"text": "✅ Confirm Receipt", "callback_data": encode_callback(ActionKind.CONFIRM, alert_id)},
                {"text": "🗑️ Remove Alert", "callback_data": encode_callback(ActionKind.DELETE, alert_id)},
            ]]
        }

    async def send(self, recipient: str, ctx: TriggerContext) -> Optional[str]:
        payload = {
            "chat_id": recipient,
            "text": self._format_fn(ctx),
            "reply_markup": self.keyboard(ctx.alert_id),
        }
        if self.cfg.parse_mode:
            payload["parse_mode"] = self.cfg.parse_mode
        await self._rl.acquire()
        data = await self._call("sendMessage", payload)
        if not data:
            return None
        msg_id = (data.get("result") or {}).get("message_id")
        log.info("telegram_alert_sent", symbol=ctx.symbol, recipient=recipient, message_id=msg_id)
        return str(msg_id) if msg_id is not None else None

    async def answer_callback(self, callback_query_id: str, text: str) -> bool:
        data = await self._call("answerCallbackQuery", {"callback_query_id": callback_query_id, "text": text})
        return data is not None

    async def _call(self, method: str, payload: dict) -> Optional[dict]:
        if self._session is None:
            await self.start()
        assert self._session is not None
        url = f"{self.cfg.api_base}/bot{self.cfg.bot_token}/{method}"

        delays = backoff_iter(self.cfg.initial_backoff_s, self.cfg.max_backoff_s, attempts=self.cfg.max_retries)
        for attempt, backoff in enumerate(delays, start=1):
            try:
                async with self._session.post(url, json=payload) as resp:
                    if resp.status == 200:
                        return await resp.json()
                    # 429 or 5xx → retry with backoff
                    detail = await _maybe_text(resp)
                    log.warning("telegram_call_failed", method=method, status=resp.status, body=detail, attempt=attempt)
                    if resp.status == 429:
                        # Telegram may include retry_after (seconds)
                        ra = await _retry_after(resp)
                        if ra is not None and ra <= self.cfg.max_backoff_s:
                            await asyncio.sleep(ra)
                            continue
                    if 500 <= resp.status < 600 or resp.status == 429:
                        await asyncio.sleep(jitter(backoff))
                        continue
                    # other 4xx: don't retry
                    return None
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.warning("telegram_network_error", method=method, err=str(e), attempt=attempt)
                await asyncio.sleep(jitter(backoff))
        log.error("telegram_give_up_after_retries", method=method)
        return None

async def _maybe_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return await resp.text()
    except (aiohttp.ClientError, UnicodeDecodeError):
        return "<no body>"

async def _retry_after(resp: aiohttp.ClientResponse) -> Optional[float]:
    try:
        data = await resp.json(content_type=None)
    except (aiohttp.ClientError, ValueError):
        return None
    ra = (data or {}).get("parameters", {}).get("retry_after")
    return float(ra) if ra else None
