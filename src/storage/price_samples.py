# src/storage/price_samples.py
from __future__ import annotations

import asyncio
import math
from typing import Iterable, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from pricealert.utils.time import from_ms, to_ms
from pricealert.utils.types import PriceSample
from storage.errors import StoreError, StoreTimeoutError, StoreUnavailableError

log = structlog.get_logger("price_samples")

RETENTION_MS = 86_400_000  # 24h horizon; RedisTimeSeries drops older points on its own

def key(symbol: str) -> str:
    # ts:{SYM}:price
    return f"ts:{symbol.upper()}:price"

def _finite(x) -> bool:
    return isinstance(x, (int, float)) and math.isfinite(x)

def _missing_key(err: ResponseError) -> bool:
    return "key does not exist" in str(err).lower()


class RedisPriceSampleStore:
    """
    Append-only price history on RedisTimeSeries, one series per symbol.

    Samples are never updated: a second write at the same millisecond keeps the
    last value (ON_DUPLICATE LAST), which only happens when two refreshes land
    in the same millisecond.
    """

    def __init__(self, redis: Redis, *, retention_ms: int = RETENTION_MS, timeout_s: float = 5.0):
        self.redis = redis
        self.retention_ms = retention_ms
        self.timeout_s = timeout_s

    async def _call(self, *args):
        try:
            return await asyncio.wait_for(self.redis.execute_command(*args), self.timeout_s)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(f"{args[0]} timed out after {self.timeout_s}s") from e
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            raise StoreUnavailableError(f"redis unavailable: {e}") from e
        except ResponseError as e:
            # a missing series is an empty result for the readers; anything else is a store failure
            if _missing_key(e):
                raise
            raise StoreError(f"{args[0]} rejected: {e}") from e
        except RedisError as e:
            raise StoreUnavailableError(f"redis error: {e}") from e

    async def append(self, samples: Iterable[PriceSample]) -> int:
        """
        TS.ADD one point per sample, creating the series (with retention and
        labels) on first write. Non-finite values are skipped. Returns count written.
        """
        written = 0
        for s in samples:
            if not _finite(s.value):
                log.warning("price_sample_skipped_non_finite", symbol=s.symbol, value=s.value)
                continue
            sym = s.symbol.upper()
            await self._call(
                "TS.ADD", key(sym), to_ms(s.observed_at), float(s.value),
                "RETENTION", self.retention_ms,
                "ON_DUPLICATE", "LAST",
                "LABELS", "symbol", sym, "metric", "price",
            )
            written += 1
        return written

    async def earliest_since(self, symbol: str, since: float) -> Optional[PriceSample]:
        """
        Oldest sample with observed_at >= since, or None when the window is empty
        or the series has never been written.
        """
        try:
            data = await self._call("TS.RANGE", key(symbol), to_ms(since), "+", "COUNT", 1)
        except ResponseError as e:
            if _missing_key(e):
                return None
            raise
        if not data:
            return None
        ts, val = data[0]
        v = val.decode("utf-8") if isinstance(val, (bytes, bytearray)) else val
        return PriceSample(symbol=symbol.upper(), value=float(v), observed_at=from_ms(int(ts)))

    async def prune(self, symbols: Iterable[str], before: float) -> int:
        """Delete samples strictly older than `before` for each symbol. Returns points removed."""
        removed = 0
        cutoff_ms = to_ms(before) - 1
        if cutoff_ms < 0:
            return 0
        for sym in symbols:
            try:
                n = await self._call("TS.DEL", key(sym), 0, cutoff_ms)
            except ResponseError as e:
                if _missing_key(e):
                    continue
                raise
            removed += int(n or 0)
        return removed
