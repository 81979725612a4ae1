from __future__ import annotations

import time

def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()

def to_ms(ts: float) -> int:
    """Epoch seconds -> integer epoch milliseconds (RedisTimeSeries resolution)."""
    return int(ts * 1000)

def from_ms(ts_ms: int | float) -> float:
    return float(ts_ms) / 1000.0

def window_start(now: float, window_minutes: int) -> float:
    """Earliest timestamp still inside a trailing window of `window_minutes`."""
    return now - window_minutes * 60.0

