import pytest
import pytest_asyncio

from pricealert.alerts.confirmations import ConfirmationTracker
from pricealert.alerts.state import AlertStateMachine
from pricealert.utils.types import AlertState, Confirmation, DeliveryContext, EventType
from storage.alert_store import SqlAlertStore, alerts
from storage.errors import InvalidRecordError, NotFoundError

from tests.helpers.engine import build_engine
from tests.helpers.fakes import FakeClock, RecordingNotifier


@pytest_asyncio.fixture
async def store(tmp_path):
    s = SqlAlertStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'alerts.db'}")
    await s.init_schema()
    yield s
    await s.close()


@pytest.fixture
def machine(store):
    clock = FakeClock()
    return AlertStateMachine(store, ConfirmationTracker(store, clock=clock), RecordingNotifier(), clock=clock)


@pytest.mark.asyncio
async def test_create_and_list(store, machine):
    a = await machine.create(symbol="btc", threshold_percent=5, window_minutes=15, owner_id=42)
    b = await machine.create(symbol="ETH", threshold_percent=-3, window_minutes=60, owner_id="42")
    await machine.set_enabled(b.id, False)

    assert [x.id for x in await store.list_enabled()] == [a.id]
    assert [x.id for x in await store.list_by_owner("42")] == [b.id, a.id]
    got = await store.get(a.id)
    assert got.symbol == "BTC" and got.owner_id == "42" and got.state is AlertState.IDLE
    assert await store.get(999) is None

    with pytest.raises(InvalidRecordError):
        await store.create(symbol="BTC", threshold_percent=1, window_minutes=0, owner_id="1")


@pytest.mark.asyncio
async def test_transition_is_compare_and_swap(store):
    a = await store.create(symbol="BTC", threshold_percent=5, window_minutes=10, owner_id="1")
    fields = {"last_triggered_at": 1.0, "baseline_price": 100.0}
    assert await store.transition(a.id, AlertState.IDLE, AlertState.TRIGGERED, fields=fields) is True
    assert await store.transition(a.id, AlertState.IDLE, AlertState.TRIGGERED, fields=fields) is False
    got = await store.get(a.id)
    assert got.state is AlertState.TRIGGERED and got.baseline_price == 100.0

    with pytest.raises(ValueError):
        await store.transition(a.id, AlertState.TRIGGERED, AlertState.IDLE, fields={"symbol": "ETH"})


@pytest.mark.asyncio
async def test_confirm_is_atomic_and_idempotent(store, machine):
    a = await machine.create(symbol="BTC", threshold_percent=5, window_minutes=10, owner_id="1")
    assert await machine.trigger(a, 106.0, 6.0, 100.0) is True
    assert (await store.get(a.id)).notification_handle == "m-1"

    ctx = DeliveryContext(handle="77", user_id="1")
    assert await machine.confirm(a.id, ctx) is True
    assert await machine.confirm(a.id, ctx) is False
    conf = await store.get_confirmation(a.id)
    assert conf.delivery_handle == "77"
    assert (await store.get(a.id)).state is AlertState.CONFIRMED

    kinds = [e.event_type for e in await store.history(a.id)]
    assert kinds.count(EventType.CONFIRMED) == 1
    assert set(kinds) == {EventType.CREATED, EventType.TRIGGERED, EventType.CONFIRMED}


@pytest.mark.asyncio
async def test_confirmation_row_blocks_transition(store):
    a = await store.create(symbol="BTC", threshold_percent=5, window_minutes=10, owner_id="1")
    await store.transition(a.id, AlertState.IDLE, AlertState.TRIGGERED)
    assert await store.insert_confirmation(Confirmation(a.id, 1.0)) is True
    assert await store.insert_confirmation(Confirmation(a.id, 2.0)) is False

    ok = await store.transition(
        a.id, AlertState.TRIGGERED, AlertState.CONFIRMED, confirmation=Confirmation(a.id, 3.0)
    )
    assert ok is False
    assert (await store.get(a.id)).state is AlertState.TRIGGERED
    assert (await store.get_confirmation(a.id)).confirmed_at == 1.0


@pytest.mark.asyncio
async def test_reset_clears_confirmation(store, machine):
    a = await machine.create(symbol="SOL", threshold_percent=2, window_minutes=5, owner_id="1")
    await machine.trigger(a, 1.0, 2.0, 1.0)
    await machine.confirm(a.id)
    assert await machine.reset(a.id) is True
    assert await store.confirmation_exists(a.id) is False
    got = await store.get(a.id)
    assert got.state is AlertState.IDLE and got.baseline_price is None


@pytest.mark.asyncio
async def test_delete_leaves_history(store, machine):
    a = await machine.create(symbol="BTC", threshold_percent=5, window_minutes=10, owner_id="1")
    await machine.trigger(a, 106.0, 6.0, 100.0)
    await machine.confirm(a.id)

    assert await machine.delete(a.id) is True
    assert await store.get(a.id) is None
    assert await store.get_confirmation(a.id) is None
    assert await machine.delete(a.id) is False
    with pytest.raises(NotFoundError):
        await store.delete(a.id)

    [latest] = await store.history(limit=1)
    assert latest.event_type is EventType.DELETED
    assert latest.alert_id is None
    assert latest.metadata["alert_id"] == a.id


@pytest.mark.asyncio
async def test_update_config_only_touches_config(store, machine):
    a = await machine.create(symbol="BTC", threshold_percent=5, window_minutes=10, owner_id="1")
    await machine.trigger(a, 106.0, 6.0, 100.0)
    got = await machine.update(a.id, window_minutes=30)
    assert got.window_minutes == 30 and got.state is AlertState.TRIGGERED
    with pytest.raises(ValueError):
        await store.update_config(a.id, {"state": "idle"})
    with pytest.raises(NotFoundError):
        await store.update_config(999, {"window_minutes": 5})


@pytest.mark.asyncio
async def test_malformed_row_is_rejected(store):
    async with store.engine.begin() as conn:
        res = await conn.execute(alerts.insert().values(
            symbol="btc", threshold_percent=1.0, window_minutes=10, enabled=True,
            requires_confirmation=False, owner_id="1", state="idle", created_at=0.0, updated_at=0.0,
        ))
        bad_id = res.inserted_primary_key[0]
    with pytest.raises(InvalidRecordError):
        await store.get(bad_id)


@pytest.mark.asyncio
async def test_malformed_row_does_not_block_the_batch(store):
    eng = build_engine({"BTC": 106.0}, store=store)
    good = await eng.machine.create(symbol="BTC", threshold_percent=5, window_minutes=10, owner_id="1")
    async with store.engine.begin() as conn:
        await conn.execute(alerts.insert().values(
            symbol="eth", threshold_percent=1.0, window_minutes=10, enabled=True,
            requires_confirmation=False, owner_id="2", state="idle", created_at=0.0, updated_at=0.0,
        ))
    assert [a.id for a in await store.list_enabled()] == [good.id]

    eng.seed_sample("BTC", 100.0, minutes_ago=9)
    r = await eng.evaluator.evaluate_all()
    assert (r.checked, r.triggered) == (1, 1)
    assert (await store.get(good.id)).state is AlertState.TRIGGERED
