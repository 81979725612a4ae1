from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from pricealert.alerts.evaluator import Evaluator
from storage.errors import StoreError

log = structlog.get_logger("ticker")


class EvaluationTicker:
    """
    In-process timer that calls evaluate_all() every `interval_s`.
    A failed pass (store down at batch start, or any unexpected error) is logged
    and retried on the next tick.
    Runs alongside the cron endpoint; the store's guarded writes keep the two from
    double-triggering an alert.
    """
    def __init__(self, evaluator: Evaluator, interval_s: float = 60.0, deadline_s: Optional[float] = None):
        self.evaluator = evaluator
        self.interval_s = interval_s
        self.deadline_s = deadline_s
        self.ticks = 0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="evaluation-ticker")

    async def stop(self):
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def tick(self) -> None:
        try:
            res = await self.evaluator.evaluate_all(self.deadline_s)
        except StoreError as e:
            log.error("evaluation_pass_failed", err=str(e))
            return
        except Exception as e:
            log.exception("evaluation_pass_crashed", err=repr(e))
            return
        finally:
            self.ticks += 1
        if res.timed_out:
            log.warning("evaluation_pass_incomplete", checked=res.checked)

    async def _loop(self):
        try:
            while not self._stop.is_set():
                await self.tick()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.interval_s)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            return
