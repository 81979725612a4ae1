from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Optional, Protocol

import structlog

from pricealert.alerts.state import AlertStateMachine
from pricealert.prices.cache import PriceCache
from pricealert.prices.history import HistoricalLookup
from pricealert.utils.types import Alert, AlertState
from storage.errors import NotFoundError

log = structlog.get_logger("evaluator")


def _log_trigger_failure(alert_id: int, task: "asyncio.Future[bool]") -> None:
    # also retrieves the exception when a deadline left nobody awaiting the task
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("trigger_failed", alert_id=alert_id, err=repr(exc))


class EnabledAlerts(Protocol):
    async def list_enabled(self) -> list[Alert]: ...
    async def get(self, alert_id: int) -> Optional[Alert]: ...


def calc_pct(baseline: float, current: float) -> float:
    """Percent change from baseline to current; 0 when the baseline is 0."""
    if not baseline:
        return 0.0
    return (current - baseline) / baseline * 100.0


def threshold_crossed(pct: float, threshold: float) -> bool:
    """
    Magnitude and direction must both hold:
      threshold > 0  -> pct >= threshold  (rise)
      threshold <= 0 -> pct <= threshold  (fall)
    """
    if abs(pct) < abs(threshold):
        return False
    if threshold > 0:
        return pct >= threshold
    return pct <= threshold


@dataclass(slots=True)
class EvaluationError:
    alert_id: int
    message: str


@dataclass(slots=True)
class EvaluationResult:
    checked: int = 0
    triggered: int = 0
    errors: list[EvaluationError] = field(default_factory=list)
    timed_out: bool = False

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "triggered": self.triggered,
            "errors": [{"alert_id": e.alert_id, "message": e.message} for e in self.errors],
            "timed_out": self.timed_out,
        }


class AlertNotIdle(Exception):
    pass


class PriceUnavailable(Exception):
    pass


class Evaluator:
    """
    One pass over every enabled alert:
      1) load enabled alerts (store failure here aborts the pass)
      2) one batched price refresh for the union of their symbols
      3) per alert: current + baseline -> pct -> threshold/direction -> trigger
    Per-alert failures are recorded and never stop the rest of the batch.
    Owns no state; the cache, lookup and state machine are injected.
    """

    def __init__(
        self,
        store: EnabledAlerts,
        cache: PriceCache,
        lookup: HistoricalLookup,
        machine: AlertStateMachine,
    ):
        self.store = store
        self.cache = cache
        self.lookup = lookup
        self.machine = machine

    async def evaluate_all(self, deadline_s: Optional[float] = None) -> EvaluationResult:
        """
        With a deadline, a pass that runs out of time returns what it finished so
        far with timed_out=True. Transitions already written stay written.
        """
        result = EvaluationResult()
        if deadline_s is None:
            await self._run(result)
            return result
        try:
            await asyncio.wait_for(self._run(result), timeout=deadline_s)
        except asyncio.TimeoutError:
            result.timed_out = True
            log.warning("evaluation_deadline_exceeded", deadline_s=deadline_s,
                        checked=result.checked, triggered=result.triggered)
        return result

    async def _run(self, result: EvaluationResult) -> None:
        alerts = await self.store.list_enabled()
        if not alerts:
            return
        await self.cache.refresh({a.symbol for a in alerts})

        for alert in alerts:
            try:
                if await self.check_alert(alert):
                    result.triggered += 1
            except Exception as e:
                result.errors.append(EvaluationError(alert_id=alert.id, message=str(e) or type(e).__name__))
                log.error("alert_check_failed", alert_id=alert.id, symbol=alert.symbol, err=repr(e))
            result.checked += 1

        if result.triggered or result.errors:
            log.info("evaluation_done", checked=result.checked, triggered=result.triggered, errors=len(result.errors))

    async def check_alert(self, alert: Alert) -> bool:
        """True when this call moved the alert idle -> triggered."""
        current = self.cache.get_current(alert.symbol)
        if current is None:
            log.debug("no_current_price", alert_id=alert.id, symbol=alert.symbol)
            return False
        baseline = await self.lookup.baseline_at(alert.symbol, alert.window_minutes)
        if baseline is None:
            return False

        pct = calc_pct(baseline, current)
        if not threshold_crossed(pct, alert.threshold_percent):
            return False
        if alert.state is not AlertState.IDLE:
            return False
        # once past the guarded write the trigger finishes even if the pass is cancelled
        task = asyncio.ensure_future(self.machine.trigger(alert, current, pct, baseline))
        task.add_done_callback(functools.partial(_log_trigger_failure, alert.id))
        return await asyncio.shield(task)

    async def trigger_now(self, alert_id: int) -> dict:
        """
        Force an idle alert to trigger at the current price (delivery test).
        Raises NotFoundError / AlertNotIdle / PriceUnavailable.
        """
        alert = await self.store.get(alert_id)
        if alert is None:
            raise NotFoundError(f"alert {alert_id} not found")
        if alert.state is not AlertState.IDLE:
            raise AlertNotIdle(f"alert {alert_id} is {alert.state.value}, not idle")

        await self.cache.refresh({alert.symbol})
        current = self.cache.get_current(alert.symbol)
        if current is None:
            raise PriceUnavailable(f"could not fetch price for {alert.symbol}")

        if not await self.machine.trigger(alert, current, alert.threshold_percent, current):
            raise AlertNotIdle(f"alert {alert_id} left idle before it could be triggered")
        return {"alert_id": alert.id, "symbol": alert.symbol, "price": current}
