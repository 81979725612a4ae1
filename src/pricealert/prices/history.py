from __future__ import annotations

from typing import Callable, Optional, Protocol

from pricealert.utils.time import utc_now_s, window_start
from pricealert.utils.types import PriceSample


class SampleReader(Protocol):
    async def earliest_since(self, symbol: str, since: float) -> Optional[PriceSample]: ...


class HistoricalLookup:
    """
    Baseline for a trailing window: the OLDEST sample still inside
    [now - window, now], not the value exactly `window` minutes ago.
    Error vs the exact edge is bounded by the sampling interval.
    """

    def __init__(self, reader: SampleReader, *, clock: Callable[[], float] = utc_now_s):
        self.reader = reader
        self._clock = clock

    async def baseline_sample(self, symbol: str, window_minutes: int) -> Optional[PriceSample]:
        since = window_start(self._clock(), window_minutes)
        return await self.reader.earliest_since(symbol.upper(), since)

    async def baseline_at(self, symbol: str, window_minutes: int) -> Optional[float]:
        """None means "not evaluable yet" (cold start, or window shorter than the sampling cadence)."""
        sample = await self.baseline_sample(symbol, window_minutes)
        return sample.value if sample is not None else None
