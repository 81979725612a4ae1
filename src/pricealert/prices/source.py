from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

import aiohttp
import structlog

log = structlog.get_logger("price_source")

# internal symbol -> CoinGecko id
SYMBOL_MAP: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "XRP": "ripple",
    "ADA": "cardano",
    "DOGE": "dogecoin",
    "DOT": "polkadot",
    "MATIC": "matic-network",
    "LINK": "chainlink",
    "AVAX": "avalanche-2",
}


class PriceSourceError(Exception):
    pass


class PriceSource(Protocol):
    def known_symbols(self) -> list[str]: ...

    async def fetch(self, symbols: Optional[Iterable[str]] = None) -> dict[str, float]: ...


@dataclass(slots=True)
class CoinGeckoConfig:
    base_url: str = "https://api.coingecko.com/api/v3"
    vs_currency: str = "usd"
    timeout_s: float = 5.0
    symbol_map: dict[str, str] = field(default_factory=lambda: dict(SYMBOL_MAP))


class CoinGeckoSource:
    """
    One GET /simple/price per call for the whole batch of symbols.
    Response shape: {"bitcoin": {"usd": 67000.1}, ...}; mapped back to {"BTC": 67000.1}.
    """

    def __init__(self, cfg: Optional[CoinGeckoConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg or CoinGeckoConfig()
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.cfg.timeout_s))

    async def stop(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def known_symbols(self) -> list[str]:
        return list(self.cfg.symbol_map)

    def resolve_ids(self, symbols: Optional[Iterable[str]] = None) -> list[str]:
        """Source ids for `symbols`; unknown ones are dropped, none at all means every mapped id."""
        ids = []
        for s in symbols or ():
            gid = self.cfg.symbol_map.get(s.upper())
            if gid and gid not in ids:
                ids.append(gid)
        return ids or list(self.cfg.symbol_map.values())

    def map_back(self, data: dict) -> dict[str, float]:
        out: dict[str, float] = {}
        for sym, gid in self.cfg.symbol_map.items():
            entry = data.get(gid)
            if not isinstance(entry, dict):
                continue
            px = entry.get(self.cfg.vs_currency)
            if isinstance(px, (int, float)) and not isinstance(px, bool):
                out[sym] = float(px)
        return out

    async def fetch(self, symbols: Optional[Iterable[str]] = None) -> dict[str, float]:
        if self._session is None:
            await self.start()
        assert self._session is not None
        ids = self.resolve_ids(symbols)
        url = f"{self.cfg.base_url}/simple/price"
        params = {"ids": ",".join(ids), "vs_currencies": self.cfg.vs_currency}
        try:
            async with self._session.get(
                url, params=params, timeout=aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            ) as resp:
                if resp.status != 200:
                    raise PriceSourceError(f"coingecko status {resp.status}")
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PriceSourceError(f"coingecko request failed: {e!r}") from e
        if not isinstance(data, dict):
            raise PriceSourceError("coingecko returned a non-object body")
        return self.map_back(data)
