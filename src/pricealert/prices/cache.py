from __future__ import annotations

import asyncio
from typing import Callable, Iterable, Optional, Protocol

import structlog

from pricealert.prices.source import PriceSource
from pricealert.utils.time import utc_now_s
from pricealert.utils.types import PriceSample
from storage.errors import StoreError

log = structlog.get_logger("price_cache")

DEFAULT_TTL_S = 30.0


class SampleSink(Protocol):
    async def append(self, samples: Iterable[PriceSample]) -> int: ...


class PriceCache:
    """
    Last fetched price per symbol, refreshed from a PriceSource at most once per TTL.

    - one shared `fetched_at` for the whole map: a refresh fetches every requested
      symbol in a single source call and replaces the map
    - a failed refresh keeps the last good map and does NOT move `fetched_at`,
      so the next call retries immediately
    - every successful refresh appends one PriceSample per symbol to `sink`
    - refreshes are serialised by a lock; `get_current` never fetches
    """

    def __init__(
        self,
        source: PriceSource,
        sink: Optional[SampleSink] = None,
        *,
        ttl_s: float = DEFAULT_TTL_S,
        clock: Callable[[], float] = utc_now_s,
    ):
        self.source = source
        self.sink = sink
        self.ttl_s = ttl_s
        self._clock = clock
        self._prices: dict[str, float] = {}
        self._fetched_at: float = 0.0
        self._lock = asyncio.Lock()

    @property
    def fetched_at(self) -> float:
        return self._fetched_at

    def snapshot(self) -> dict[str, float]:
        return dict(self._prices)

    def get_current(self, symbol: str) -> Optional[float]:
        return self._prices.get(symbol.upper())

    def is_fresh(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return bool(self._prices) and (now - self._fetched_at) < self.ttl_s

    async def refresh(self, symbols: Optional[Iterable[str]] = None) -> dict[str, float]:
        wanted = sorted({s.upper() for s in symbols}) if symbols else None
        async with self._lock:
            now = self._clock()
            if self.is_fresh(now):
                return self.snapshot()
            try:
                prices = await self.source.fetch(wanted)
            except Exception as e:
                log.warning("price_refresh_failed", err=str(e), symbols=wanted, cached=len(self._prices))
                return self.snapshot()

            self._prices = {k.upper(): float(v) for k, v in prices.items()}
            self._fetched_at = now
            log.debug("price_refresh_ok", count=len(self._prices))

            if self.sink is not None and self._prices:
                samples = [PriceSample(symbol=s, value=v, observed_at=now) for s, v in self._prices.items()]
                try:
                    await self.sink.append(samples)
                except StoreError as e:
                    log.warning("price_samples_append_failed", err=str(e), count=len(samples))
            return self.snapshot()
