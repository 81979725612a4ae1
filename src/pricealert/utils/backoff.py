from __future__ import annotations

import random
from typing import Iterator

def next_backoff(prev: float, cap: float) -> float:
    """Exponential backoff progression with cap (no jitter)."""
    return min(prev * 2.0, cap)

def jitter(v: float, *, ratio: float = 0.2) -> float:
    """
    Add ±ratio jitter. ratio=0.2 -> multiply by [0.8, 1.2].
    """
    lo = 1.0 - ratio
    hi = 1.0 + ratio
    return v * (lo + (hi - lo) * random.random())

def backoff_iter(initial: float = 0.25, cap: float = 30.0, attempts: int | None = None) -> Iterator[float]:
    """
    Deterministic (no jitter) iterator of backoff delays:
    0.25, 0.5, 1, 2, 4, ... (capped). Stops after `attempts` values when given,
    so callers with a bounded retry budget can simply iterate it.
    """
    v = initial
    n = 0
    while attempts is None or n < attempts:
        yield v
        v = next_backoff(v, cap)
        n += 1
