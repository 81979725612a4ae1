import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from pricealert.prices.history import HistoricalLookup
from pricealert.utils.types import PriceSample
from storage.errors import StoreError, StoreUnavailableError
from storage.price_samples import RedisPriceSampleStore, key

from tests.helpers.fake_redis import FakeTimeSeriesRedis
from tests.helpers.fakes import FakeClock

T = 1_700_000_000.0


@pytest.fixture
def redis():
    return FakeTimeSeriesRedis()


@pytest.fixture
def store(redis):
    return RedisPriceSampleStore(redis)


@pytest.mark.asyncio
async def test_append_issues_ts_add_with_retention(store, redis):
    n = await store.append([PriceSample("BTC", 100.5, T), PriceSample("eth", float("nan"), T)])
    assert n == 1
    cmd = redis.commands[0]
    assert cmd[:4] == ("TS.ADD", "ts:BTC:price", int(T * 1000), 100.5)
    assert "RETENTION" in cmd and 86_400_000 in cmd
    assert ("ON_DUPLICATE", "LAST") == cmd[cmd.index("ON_DUPLICATE"):cmd.index("ON_DUPLICATE") + 2]


@pytest.mark.asyncio
async def test_baseline_is_oldest_sample_inside_window(store):
    await store.append([
        PriceSample("BTC", 1.0, T - 15 * 60),
        PriceSample("BTC", 2.0, T - 9 * 60),
        PriceSample("BTC", 3.0, T - 2 * 60),
    ])
    lookup = HistoricalLookup(store, clock=FakeClock(T))
    assert await lookup.baseline_at("BTC", 10) == 2.0
    assert await lookup.baseline_at("BTC", 20) == 1.0
    assert await lookup.baseline_at("BTC", 1) is None

    sample = await lookup.baseline_sample("btc", 10)
    assert sample.observed_at == T - 9 * 60


@pytest.mark.asyncio
async def test_unknown_series_has_no_baseline(store):
    assert await store.earliest_since("DOGE", T) is None


@pytest.mark.asyncio
async def test_prune_deletes_strictly_older(store, redis):
    await store.append([
        PriceSample("BTC", 1.0, T - 100),
        PriceSample("BTC", 2.0, T),
        PriceSample("BTC", 3.0, T + 5),
    ])
    removed = await store.prune(["BTC", "SOL"], before=T)
    assert removed == 1
    assert sorted(redis.series[key("BTC")]) == [int(T * 1000), int((T + 5) * 1000)]


@pytest.mark.asyncio
async def test_connection_errors_are_store_unavailable(store, redis):
    redis.fail_with = RedisConnectionError("refused")
    with pytest.raises(StoreUnavailableError):
        await store.earliest_since("BTC", T)


@pytest.mark.asyncio
async def test_command_errors_are_store_errors(store, redis):
    redis.fail_with = ResponseError("ERR unknown command 'TS.ADD'")
    with pytest.raises(StoreError):
        await store.append([PriceSample("BTC", 1.0, T)])
    with pytest.raises(StoreError):
        await store.earliest_since("BTC", T)
