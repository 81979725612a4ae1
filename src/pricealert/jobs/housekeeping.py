from __future__ import annotations

import asyncio
from typing import Callable, Iterable, Optional, Protocol

import structlog

from pricealert.utils.time import utc_now_s
from storage.errors import StoreError

log = structlog.get_logger("housekeeping")

RETENTION_S = 24 * 60 * 60


class PrunableSamples(Protocol):
    async def prune(self, symbols: Iterable[str], before: float) -> int: ...


class PriceHistoryPruner:
    """Hourly removal of price samples older than the retention horizon."""
    def __init__(
        self,
        samples: PrunableSamples,
        symbols: Callable[[], Iterable[str]],
        *,
        retention_s: float = RETENTION_S,
        interval_s: float = 3600.0,
        clock: Callable[[], float] = utc_now_s,
    ):
        self.samples = samples
        self.symbols = symbols
        self.retention_s = retention_s
        self.interval_s = interval_s
        self._clock = clock
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="price-history-pruner")

    async def stop(self):
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def prune_once(self) -> int:
        cutoff = self._clock() - self.retention_s
        try:
            n = await self.samples.prune(list(self.symbols()), cutoff)
        except StoreError as e:
            log.error("price_history_prune_failed", err=str(e))
            return 0
        except Exception as e:
            log.exception("price_history_prune_crashed", err=repr(e))
            return 0
        log.info("price_history_pruned", removed=n)
        return n

    async def _loop(self):
        try:
            while not self._stop.is_set():
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.interval_s)
                except asyncio.TimeoutError:
                    await self.prune_once()
        except asyncio.CancelledError:
            return
