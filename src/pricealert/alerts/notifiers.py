# src/pricealert/alerts/notifiers.py
from __future__ import annotations
import structlog
from typing import Callable, Optional

from pricealert.alerts.formatting import format_alert_text
from pricealert.utils.types import TriggerContext

log = structlog.get_logger("notifier")

class ConsoleNotifier:
    """
    Fallback gateway when no chat channel is configured. Prints the alert and
    returns no delivery handle, so confirmations can only come from an operator.
    """
    def __init__(self, format_fn: Optional[Callable[[TriggerContext], str]] = None):
        self._format_fn = format_fn or format_alert_text

    async def send(self, recipient: str, ctx: TriggerContext) -> Optional[str]:
        try:
            text = self._format_fn(ctx)
        except Exception as e:
            log.warning("console_format_failed", err=str(e))
            text = f"[ALERT] {ctx.symbol} pct={ctx.pct:.2f} alert_id={ctx.alert_id}"
        print(f"→ {recipient}: {text}", flush=True)
        return None
