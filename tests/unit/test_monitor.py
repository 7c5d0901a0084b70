import asyncio
from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from pricewatch.alerts.monitor import AlertMonitor, MonitorConfig
from pricewatch.notify.dispatcher import NotificationDispatcher
from pricewatch.utils.time import utc_dt
from pricewatch.utils.types import Tick
from tests.helpers.fakes import (
    FakeAlertStore,
    FakeClock,
    FakeTickSource,
    RecordingTransport,
    make_alert,
)


def build(alerts=(), cooldown_s=300.0, transports=None):
    store = FakeAlertStore(alerts)
    source = FakeTickSource()
    transport = RecordingTransport()
    dispatcher = NotificationDispatcher(transports if transports is not None else [transport])
    clock = FakeClock()
    monitor = AlertMonitor(
        store,
        source,
        dispatcher,
        MonitorConfig(cooldown_s=cooldown_s, refresh_interval_s=3600.0, persist_timeout_s=0.5),
        clock=clock,
    )
    return monitor, store, source, transport, clock


def assert_index_matches_source(monitor, source):
    assert set(monitor.watched_symbols()) == source.subscribed
    for sym in monitor.watched_symbols():
        assert monitor.alerts_for(sym), f"{sym} indexed without alerts"


@pytest.mark.asyncio
async def test_btc_above_triggers_once_within_cooldown():
    monitor, store, source, transport, clock = build([make_alert("btc", "BTC", 45000.0, "above")])
    await monitor.start()
    try:
        assert monitor.handle_tick("BTC", 44000.0, clock.now) == []
        clock.advance(1)
        fired = monitor.handle_tick("BTC", 45500.0, clock.now)
        assert len(fired) == 1
        clock.advance(1)
        assert monitor.handle_tick("BTC", 45600.0, clock.now) == []
        await monitor.drain()

        assert len(transport.sent) == 1
        evt = transport.sent[0]
        assert evt.symbol == "BTC"
        assert evt.current_price == 45500.0
        assert evt.target_price == 45000.0
        assert evt.price_change is not None and evt.price_change.change == 1500.0
        assert [w[0] for w in store.last_triggered_writes] == ["btc"]
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_cooldown_elapses_then_fires_again():
    monitor, _, _, transport, clock = build([make_alert("a", "AAPL", 100.0, "above")], cooldown_s=300.0)
    await monitor.start()
    try:
        assert len(monitor.handle_tick("AAPL", 101.0, clock.now)) == 1
        clock.advance(299)
        assert monitor.handle_tick("AAPL", 102.0, clock.now) == []
        clock.advance(2)
        assert len(monitor.handle_tick("AAPL", 103.0, clock.now)) == 1
        await monitor.drain()
        assert len(transport.sent) == 2
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_below_uses_inclusive_threshold():
    monitor, _, _, _, clock = build([make_alert("b", "TSLA", 200.0, "below")], cooldown_s=0)
    await monitor.start()
    try:
        assert monitor.handle_tick("TSLA", 200.01, clock.now) == []
        assert len(monitor.handle_tick("TSLA", 200.0, clock.now)) == 1
        await monitor.drain()
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_eth_either_fires_on_each_crossing():
    monitor, _, _, transport, clock = build([make_alert("eth", "ETH", 3000.0, "either")], cooldown_s=0)
    await monitor.start()
    try:
        assert monitor.handle_tick("ETH", 2900.0, clock.now) == []
        assert len(monitor.handle_tick("ETH", 3100.0, clock.now)) == 1
        assert len(monitor.handle_tick("ETH", 2950.0, clock.now)) == 1
        # same side again, no crossing
        assert monitor.handle_tick("ETH", 2940.0, clock.now) == []
        await monitor.drain()
        assert [e.current_price for e in transport.sent] == [3100.0, 2950.0]
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_either_crossing_tracked_during_cooldown():
    monitor, _, _, _, clock = build([make_alert("eth", "ETH", 3000.0, "either")], cooldown_s=60)
    await monitor.start()
    try:
        monitor.handle_tick("ETH", 2900.0, clock.now)
        assert len(monitor.handle_tick("ETH", 3100.0, clock.now)) == 1
        # crosses back inside the cooldown: suppressed, but the price cache moves on
        assert monitor.handle_tick("ETH", 2950.0, clock.now) == []
        assert monitor.status().prices.get("ETH").price == 2950.0
        clock.advance(61)
        assert monitor.handle_tick("ETH", 2960.0, clock.now) == []
        assert len(monitor.handle_tick("ETH", 3001.0, clock.now)) == 1
        await monitor.drain()
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_remove_unknown_id_warns_and_leaves_index():
    monitor, _, source, _, _ = build([make_alert("a", "AAPL")])
    await monitor.start()
    try:
        with capture_logs() as logs:
            assert await monitor.remove_alert("nope") is False
        assert any(e["event"] == "alert_remove_missing" and e["log_level"] == "warning" for e in logs)
        assert monitor.watched_symbols() == ["AAPL"]
        assert_index_matches_source(monitor, source)
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_index_tracks_adapter_subscriptions_through_mutations():
    monitor, store, source, _, _ = build([make_alert("a1", "AAPL"), make_alert("m1", "MSFT")])
    await monitor.start()
    try:
        assert_index_matches_source(monitor, source)

        await monitor.add_alert(make_alert("a2", "aapl", 150.0))
        await monitor.add_alert(make_alert("n1", "NVDA"))
        assert monitor.watched_symbols() == ["AAPL", "MSFT", "NVDA"]
        assert_index_matches_source(monitor, source)

        await monitor.remove_alert("a1")
        assert "AAPL" in source.subscribed
        await monitor.remove_alert("a2")
        assert "AAPL" not in source.subscribed
        assert_index_matches_source(monitor, source)

        # re-adding an id moves it, never duplicates it
        await monitor.add_alert(make_alert("n1", "AMD"))
        assert monitor.watched_symbols() == ["AMD", "MSFT"]
        assert monitor.alert_count == 2
        assert_index_matches_source(monitor, source)

        store.alerts.clear()
        store.alerts["z"] = make_alert("z", "ZM")
        await monitor.reload()
        assert monitor.watched_symbols() == ["ZM"]
        assert_index_matches_source(monitor, source)
    finally:
        await monitor.stop()
    assert source.subscribed == set()
    assert monitor.watched_symbols() == []


@pytest.mark.asyncio
async def test_same_symbol_replacement_keeps_subscription():
    monitor, _, source, _, clock = build([make_alert("a", "AAPL", 100.0)])
    await monitor.start()
    try:
        monitor.handle_tick("AAPL", 90.0, clock.now)
        calls_before = list(source.calls)
        await monitor.add_alert(make_alert("a", "AAPL", 120.0))
        assert source.calls == calls_before
        assert monitor.get_alert("a").target_value == 120.0
        assert monitor.status().prices.get("AAPL").price == 90.0
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_removal_evicts_price_so_readd_starts_cold():
    monitor, _, _, _, clock = build([make_alert("eth", "ETH", 3000.0, "either")], cooldown_s=0)
    await monitor.start()
    try:
        monitor.handle_tick("ETH", 2900.0, clock.now)
        assert monitor.status().prices.get("ETH") is not None

        await monitor.remove_alert("eth")
        assert monitor.status().prices.get("ETH") is None
        # trailing tick after unsubscribe is a no-op and is not cached
        assert monitor.handle_tick("ETH", 2800.0, clock.now) == []
        assert monitor.status().prices.get("ETH") is None

        await monitor.add_alert(make_alert("eth", "ETH", 3000.0, "either"))
        assert monitor.handle_tick("ETH", 3100.0, clock.now) == []
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_reload_preserves_prices_of_kept_symbols():
    monitor, store, _, _, clock = build(
        [make_alert("eth", "ETH", 3000.0, "either"), make_alert("a", "AAPL")], cooldown_s=0
    )
    await monitor.start()
    try:
        monitor.handle_tick("ETH", 2900.0, clock.now)
        monitor.handle_tick("AAPL", 50.0, clock.now)
        del store.alerts["a"]
        await monitor.reload()

        assert monitor.status().prices.get("AAPL") is None
        assert monitor.status().prices.get("ETH").price == 2900.0
        # previous price survived, so the very next tick can detect a crossing
        assert len(monitor.handle_tick("ETH", 3100.0, clock.now)) == 1
        await monitor.drain()
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_reload_keeps_newer_in_memory_last_triggered():
    monitor, store, _, _, clock = build([make_alert("a", "AAPL", 100.0)])
    store.fail_last_triggered = True
    await monitor.start()
    try:
        assert len(monitor.handle_tick("AAPL", 101.0, clock.now)) == 1
        await monitor.drain()
        assert store.alerts["a"].last_triggered_at is None

        await monitor.reload()
        assert monitor.get_alert("a").last_triggered_at == utc_dt(clock.now)
        # still in cooldown after the reload
        assert monitor.handle_tick("AAPL", 102.0, clock.now) == []
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_add_disabled_alert_raises():
    monitor, _, source, _, _ = build()
    await monitor.start()
    try:
        with pytest.raises(ValueError):
            await monitor.add_alert(make_alert("off", "AAPL", enabled=False))
        assert monitor.watched_symbols() == []
        assert source.subscribed == set()
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_start_skips_disabled_and_fails_on_load_error():
    monitor, store, source, _, _ = build([make_alert("on", "AAPL"), make_alert("off", "MSFT", enabled=False)])
    await monitor.start()
    assert monitor.watched_symbols() == ["AAPL"]
    await monitor.stop()
    await monitor.stop()  # idempotent

    store.fail_fetch = True
    with pytest.raises(ConnectionError):
        await monitor.start()
    assert monitor.running is False


@pytest.mark.asyncio
async def test_persist_failure_does_not_undo_suppression():
    monitor, store, _, transport, clock = build([make_alert("a", "AAPL", 100.0)])
    store.fail_last_triggered = True
    await monitor.start()
    try:
        with capture_logs() as logs:
            assert len(monitor.handle_tick("AAPL", 101.0, clock.now)) == 1
            await monitor.drain()
        assert any(e["event"] == "persist_last_triggered_failed" for e in logs)
        assert len(transport.sent) == 1
        assert monitor.handle_tick("AAPL", 101.5, clock.now) == []
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_slow_persist_does_not_block_tick_path():
    monitor, store, _, transport, clock = build([make_alert("a", "AAPL", 100.0)])
    store.last_triggered_delay = 5.0
    await monitor.start()
    try:
        with capture_logs() as logs:
            assert len(monitor.handle_tick("AAPL", 101.0, clock.now)) == 1
            await monitor.drain()
        # bounded by persist_timeout_s
        assert any(e["event"] == "persist_last_triggered_failed" for e in logs)
        assert len(transport.sent) == 1
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_one_bad_alert_does_not_block_others(monkeypatch):
    good = make_alert("good", "AAPL", 100.0)
    bad = make_alert("bad", "AAPL", 100.0)
    monitor, _, _, transport, clock = build([bad, good])
    await monitor.start()
    original = monitor._evaluate

    def flaky(alert, *args):
        if alert.id == "bad":
            raise TypeError("corrupt record")
        return original(alert, *args)

    monkeypatch.setattr(monitor, "_evaluate", flaky)
    try:
        with capture_logs() as logs:
            fired = monitor.handle_tick("AAPL", 150.0, clock.now)
        assert [e.alert.id for e in fired] == ["good"]
        assert any(e["event"] == "alert_evaluation_failed" for e in logs)
        await monitor.drain()
        assert len(transport.sent) == 1
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_unknown_direction_never_triggers():
    monitor, _, _, _, clock = build([make_alert("x", "AAPL", 100.0, "sideways")])
    await monitor.start()
    try:
        with capture_logs() as logs:
            assert monitor.handle_tick("AAPL", 1000.0, clock.now) == []
        assert any(e["event"] == "unknown_alert_direction" for e in logs)
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_failing_transport_does_not_affect_trigger_path():
    ok = RecordingTransport("ok")
    broken = RecordingTransport("broken", fail=True)
    monitor, _, _, _, clock = build([make_alert("a", "AAPL", 100.0)], transports=[broken, ok])
    await monitor.start()
    try:
        assert len(monitor.handle_tick("AAPL", 100.0, clock.now)) == 1
        await monitor.drain()
        assert len(ok.sent) == 1
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_on_tick_and_status_snapshot():
    monitor, _, _, transport, clock = build([make_alert("a", "aapl", 100.0)])
    await monitor.start()
    try:
        monitor.on_tick(Tick(symbol="AAPL", px=99.0, size=10.0, ts=clock.now))
        st = monitor.status()
        assert st.running is True
        assert st.symbols == ["AAPL"]
        assert st.total_alerts == 1
        assert st.prices["AAPL"].price == 99.0
        assert st.prices["AAPL"].volume == 10.0
        assert st.connection["connected"] is True

        # snapshot is a copy
        st.prices["AAPL"].price = 1.0
        assert monitor.status().prices.get("AAPL").price == 99.0
        d = st.to_dict()
        assert d["prices"]["AAPL"]["price"] == 1.0
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_trigger_event_carries_alert_snapshot():
    alert = make_alert("a", "AAPL", 100.0, notes="n", prompt="p", user_id="owner")
    alert.last_triggered_at = utc_dt(1_600_000_000) - timedelta(days=1)
    monitor, _, _, transport, clock = build([alert])
    await monitor.start()
    try:
        monitor.handle_tick("AAPL", 99.0, clock.now)
        monitor.handle_tick("AAPL", 101.0, clock.now, volume=5.0)
        await monitor.drain()
        evt = transport.sent[0]
        assert evt.notes == "n" and evt.prompt == "p" and evt.user_id == "owner"
        assert evt.volume == 5.0
        assert evt.alert_type == "price_target"
        assert evt.alert.last_triggered_at == utc_dt(clock.now)
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_refresh_loop_reloads_periodically():
    store = FakeAlertStore([make_alert("a", "AAPL")])
    source = FakeTickSource()
    monitor = AlertMonitor(store, source, NotificationDispatcher([]), MonitorConfig(refresh_interval_s=0.01))
    await monitor.start()
    try:
        store.alerts["m"] = make_alert("m", "MSFT")
        for _ in range(100):
            if "MSFT" in source.subscribed:
                break
            await asyncio.sleep(0.01)
        assert monitor.watched_symbols() == ["AAPL", "MSFT"]
    finally:
        await monitor.stop()


async def gated_reload(monitor, store):
    """Start a reload whose store fetch has already snapshotted and now waits on store.fetch_gate."""
    store.fetch_gate = asyncio.Event()
    store.fetch_entered.clear()
    task = asyncio.create_task(monitor.reload())
    await store.fetch_entered.wait()
    return task


@pytest.mark.asyncio
async def test_add_during_reload_fetch_survives_the_swap():
    monitor, store, source, transport, clock = build([make_alert("a1", "AAPL", 100.0)])
    await monitor.start()
    try:
        reload = await gated_reload(monitor, store)
        b1 = make_alert("b1", "TSLA", 200.0)
        store.alerts["b1"] = b1.snapshot()
        await monitor.add_alert(b1)

        store.fetch_gate.set()
        await reload
        assert monitor.watched_symbols() == ["AAPL", "TSLA"]
        assert_index_matches_source(monitor, source)

        assert len(monitor.handle_tick("TSLA", 250.0, clock.now)) == 1
        await monitor.drain()
        assert [e.alert.id for e in transport.sent] == ["b1"]
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_remove_during_reload_fetch_is_not_undone():
    monitor, store, source, transport, clock = build([make_alert("a1", "AAPL"), make_alert("m1", "MSFT")])
    await monitor.start()
    try:
        reload = await gated_reload(monitor, store)
        del store.alerts["m1"]
        assert await monitor.remove_alert("m1") is True

        store.fetch_gate.set()
        await reload
        assert monitor.watched_symbols() == ["AAPL"]
        assert_index_matches_source(monitor, source)
        assert monitor.handle_tick("MSFT", 500.0, clock.now) == []
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_replacement_during_reload_fetch_wins_over_stale_copy():
    monitor, store, source, _, _ = build([make_alert("a1", "AAPL", 100.0)])
    await monitor.start()
    try:
        reload = await gated_reload(monitor, store)
        moved = make_alert("a1", "NVDA", 500.0)
        store.alerts["a1"] = moved.snapshot()
        await monitor.add_alert(moved)

        store.fetch_gate.set()
        await reload
        assert monitor.watched_symbols() == ["NVDA"]
        assert monitor.get_alert("a1").target_value == 500.0
        assert_index_matches_source(monitor, source)
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_add_during_start_fetch_is_indexed():
    monitor, store, source, _, _ = build([make_alert("a1", "AAPL")])
    store.fetch_gate = asyncio.Event()
    start = asyncio.create_task(monitor.start())
    await store.fetch_entered.wait()
    await monitor.add_alert(make_alert("e1", "ETH", 3000.0))

    store.fetch_gate.set()
    await start
    try:
        assert monitor.watched_symbols() == ["AAPL", "ETH"]
        assert_index_matches_source(monitor, source)
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_no_evaluation_while_or_after_unsubscribe_is_pending():
    monitor, _, source, transport, clock = build([make_alert("a", "AAPL", 100.0)])
    await monitor.start()
    try:
        handler = source.handlers["AAPL"]
        source.remove_gate = asyncio.Event()
        removal = asyncio.create_task(monitor.remove_alert("a"))
        await source.removing.wait()

        # the adapter may still deliver trades until the unsubscribe lands
        assert monitor.handle_tick("AAPL", 150.0, clock.now) == []
        handler.on_tick(Tick(symbol="AAPL", px=151.0, size=None, ts=clock.now))

        source.remove_gate.set()
        assert await removal is True
        assert monitor.handle_tick("AAPL", 152.0, clock.now) == []
        await monitor.drain()
        assert transport.sent == []
        assert monitor.status().prices.get("AAPL") is None
        assert_index_matches_source(monitor, source)
    finally:
        source.remove_gate = None
        await monitor.stop()


@pytest.mark.asyncio
async def test_add_waits_for_pending_unsubscribe_then_resubscribes():
    monitor, _, source, transport, clock = build([make_alert("a", "AAPL", 100.0)])
    await monitor.start()
    try:
        source.remove_gate = asyncio.Event()
        removal = asyncio.create_task(monitor.remove_alert("a"))
        await source.removing.wait()
        adding = asyncio.create_task(monitor.add_alert(make_alert("b", "AAPL", 120.0)))
        await asyncio.sleep(0)
        assert monitor.get_alert("b") is None  # queued behind the removal

        source.remove_gate.set()
        await asyncio.gather(removal, adding)
        assert source.calls[-2:] == [("unsubscribe", "AAPL"), ("subscribe", "AAPL")]
        assert_index_matches_source(monitor, source)

        fired = monitor.handle_tick("AAPL", 130.0, clock.now)
        assert [e.alert.id for e in fired] == ["b"]
        await monitor.drain()
    finally:
        source.remove_gate = None
        await monitor.stop()


@pytest.mark.asyncio
async def test_stop_twice_unsubscribes_once():
    monitor, _, source, _, clock = build([make_alert("a", "AAPL"), make_alert("m", "MSFT")])
    await monitor.start()
    await monitor.stop()
    await monitor.stop()
    assert monitor.running is False
    assert sorted(c for c in source.calls if c[0] == "unsubscribe") == [("unsubscribe", "AAPL"), ("unsubscribe", "MSFT")]
    assert source.subscribed == set()
    assert monitor.handle_tick("AAPL", 500.0, clock.now) == []
