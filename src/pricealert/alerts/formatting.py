from __future__ import annotations
from datetime import datetime
from html import escape
from typing import Optional
from zoneinfo import ZoneInfo

from pricealert.utils.types import TriggerContext

def _fmt_ts(ts_s: float, tz_name: str) -> str:
    tz = ZoneInfo(tz_name)
    return datetime.fromtimestamp(ts_s, tz).strftime("%H:%M:%S %Z")  # e.g., 11:28:30 UTC

def _fmt_px(px: float) -> str:
    # sub-dollar assets need more precision than 2 decimals
    return f"{px:,.2f}" if abs(px) >= 1 else f"{px:,.6f}"

def format_alert_text(ctx: TriggerContext, ts: Optional[float] = None, tz_name: str = "UTC") -> str:
    """Plain one-line form, used by the console notifier and in logs."""
    up = ctx.pct >= 0
    arrow = "↑" if up else "↓"
    when = f" {_fmt_ts(ts, tz_name)}" if ts is not None else ""
    return (
        f"[{ctx.symbol} {'UP' if up else 'DOWN'}]{when} {arrow} {ctx.pct:+.2f}% "
        f"in past {ctx.window_minutes}m  |  "
        f"{_fmt_px(ctx.baseline_price)} → {_fmt_px(ctx.current_price)} now"
    )

def format_alert_html(ctx: TriggerContext) -> str:
    """Telegram HTML body for a trigger message."""
    up = ctx.pct >= 0
    head = "🚀" if up else "💥"
    trend = "📈 UP" if up else "📉 DOWN"
    move = abs(ctx.current_price - ctx.baseline_price)
    lines = [
        f"{head} <b>{escape(ctx.symbol)} ALERT</b>",
        "",
        f"{trend} <b>{abs(ctx.pct):.2f}%</b>",
        "",
        f"💰 <b>Current:</b> <code>${_fmt_px(ctx.current_price)}</code>",
        f"🕒 <b>Started:</b> <code>${_fmt_px(ctx.baseline_price)}</code>",
        f"✨ <b>Move:</b> <code>${_fmt_px(move)}</code> {'➕' if up else '➖'}",
        f"⏱ <b>Window:</b> <code>{ctx.window_minutes}m</code>",
    ]
    if ctx.requires_confirmation:
        lines += ["", "✅ <i>Tap to confirm</i>"]
    return "\n".join(lines)
