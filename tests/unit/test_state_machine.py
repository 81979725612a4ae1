import asyncio
import pytest

from pricealert.utils.types import AlertState, DeliveryContext, EventType
from storage.errors import NotFoundError, StoreUnavailableError

from tests.helpers.engine import build_engine
from tests.helpers.fakes import RecordingNotifier


async def _triggered(eng, **kw):
    params = dict(symbol="ETH", threshold_percent=-5.0, window_minutes=30, owner_id="7")
    params.update(kw)
    a = await eng.machine.create(**params)
    assert await eng.machine.trigger(a, 95.0, -5.0, 100.0) is True
    return a


@pytest.mark.asyncio
async def test_create_logs_history():
    eng = build_engine()
    a = await eng.machine.create(symbol="btc", threshold_percent=3, window_minutes=15, owner_id="1")
    assert a.symbol == "BTC"
    assert a.state is AlertState.IDLE
    [ev] = eng.store.events(EventType.CREATED)
    assert ev.alert_id == a.id
    assert ev.new_state is AlertState.IDLE


@pytest.mark.asyncio
async def test_trigger_requires_idle():
    eng = build_engine()
    a = await _triggered(eng)
    stale = eng.store.alerts[a.id]
    assert await eng.machine.trigger(stale, 90.0, -10.0, 100.0) is False
    assert len(eng.notifier.sent) == 1


@pytest.mark.asyncio
async def test_trigger_with_stale_idle_snapshot_loses_guard():
    eng = build_engine()
    a = await eng.machine.create(symbol="ETH", threshold_percent=-5, window_minutes=30, owner_id="7")
    snapshot = await eng.store.get(a.id)           # idle copy
    assert await eng.machine.trigger(a, 95.0, -5.0, 100.0) is True
    assert await eng.machine.trigger(snapshot, 94.0, -6.0, 100.0) is False
    assert len(eng.notifier.sent) == 1
    assert len(eng.store.events(EventType.TRIGGERED)) == 1


@pytest.mark.asyncio
async def test_trigger_proceeds_when_delivery_fails():
    eng = build_engine(notifier=RecordingNotifier(fail=True))
    a = await _triggered(eng)
    stored = eng.store.alerts[a.id]
    assert stored.state is AlertState.TRIGGERED
    assert stored.notification_handle is None
    [ev] = eng.store.events(EventType.TRIGGERED)
    assert ev.metadata == {"price": 95.0, "pct": -5.0, "baseline": 100.0}


@pytest.mark.asyncio
async def test_trigger_history_survives_handle_write_failure():
    eng = build_engine()
    eng.store.fail_handle_write = StoreUnavailableError("db blip")
    a = await _triggered(eng)
    stored = eng.store.alerts[a.id]
    assert stored.state is AlertState.TRIGGERED
    assert stored.notification_handle is None
    assert len(eng.notifier.sent) == 1
    [ev] = eng.store.events(EventType.TRIGGERED)
    assert (ev.old_state, ev.new_state) == (AlertState.IDLE, AlertState.TRIGGERED)


@pytest.mark.asyncio
async def test_confirm_exactly_once():
    eng = build_engine()
    a = await _triggered(eng)
    ctx = DeliveryContext(handle="m-1", user_id="7")

    assert await eng.machine.confirm(a.id, ctx) is True
    assert eng.store.state_of(a.id) is AlertState.CONFIRMED
    first = eng.store.confirmations[a.id]
    assert first.delivery_handle == "m-1"

    assert await eng.machine.confirm(a.id, ctx) is False
    assert eng.store.state_of(a.id) is AlertState.CONFIRMED
    assert eng.store.confirmations[a.id] is first
    assert len(eng.store.events(EventType.CONFIRMED)) == 1


@pytest.mark.asyncio
async def test_confirm_concurrent_double_tap():
    eng = build_engine()
    a = await _triggered(eng)
    results = await asyncio.gather(*(eng.machine.confirm(a.id) for _ in range(5)))
    assert results.count(True) == 1
    assert len(eng.store.events(EventType.CONFIRMED)) == 1


@pytest.mark.asyncio
async def test_confirm_preconditions():
    eng = build_engine()
    assert await eng.machine.confirm(404) is False
    idle = await eng.machine.create(symbol="SOL", threshold_percent=2, window_minutes=5, owner_id="1")
    assert await eng.machine.confirm(idle.id) is False
    assert eng.store.state_of(idle.id) is AlertState.IDLE


@pytest.mark.asyncio
async def test_confirm_blocked_by_existing_confirmation_row():
    eng = build_engine()
    a = await _triggered(eng)
    await eng.machine.tracker.create(a.id, "legacy")
    assert await eng.machine.confirm(a.id) is False
    assert eng.store.state_of(a.id) is AlertState.TRIGGERED


@pytest.mark.asyncio
async def test_reset_confirmed_alert_can_trigger_again():
    eng = build_engine({"ETH": 90.0})
    a = await _triggered(eng)
    assert await eng.machine.confirm(a.id) is True

    assert await eng.machine.reset(a.id) is True
    stored = eng.store.alerts[a.id]
    assert stored.state is AlertState.IDLE
    assert stored.baseline_price is None and stored.notification_handle is None
    assert a.id not in eng.store.confirmations
    [ev] = eng.store.events(EventType.RESET)
    assert (ev.old_state, ev.new_state) == (AlertState.CONFIRMED, AlertState.IDLE)

    eng.seed_sample("ETH", 100.0, minutes_ago=20)
    r = await eng.evaluator.evaluate_all()
    assert r.triggered == 1
    assert len(eng.store.events(EventType.TRIGGERED)) == 2


@pytest.mark.asyncio
async def test_reset_unknown_alert():
    eng = build_engine()
    assert await eng.machine.reset(12) is False


@pytest.mark.asyncio
async def test_delete_removes_rows_and_leaves_terminal_history():
    eng = build_engine()
    a = await _triggered(eng)
    await eng.machine.confirm(a.id)
    assert a.id in eng.store.confirmations

    assert await eng.machine.delete(a.id) is True
    assert a.id not in eng.store.alerts
    assert a.id not in eng.store.confirmations
    [ev] = eng.store.events(EventType.DELETED)
    assert ev.alert_id is None
    assert ev.metadata["symbol"] == "ETH"
    assert ev.metadata["alert_id"] == a.id
    assert ev.old_state is AlertState.CONFIRMED

    assert await eng.machine.delete(a.id) is False


@pytest.mark.asyncio
async def test_update_and_toggle_keep_state():
    eng = build_engine()
    a = await _triggered(eng)
    updated = await eng.machine.update(a.id, threshold_percent=-8.0, window_minutes=60)
    assert updated.state is AlertState.TRIGGERED
    assert updated.threshold_percent == -8.0

    assert await eng.machine.set_enabled(a.id, False) is True
    assert await eng.machine.set_enabled(a.id, False) is False
    assert eng.store.state_of(a.id) is AlertState.TRIGGERED
    assert [e.event_type for e in eng.store.history_rows][-2:] == [EventType.UPDATED, EventType.DISABLED]

    with pytest.raises(NotFoundError):
        await eng.machine.update(999, threshold_percent=1.0)
