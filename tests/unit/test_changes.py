import pytest
import pytest_asyncio

from pricewatch.alerts.changes import (
    ChangeEventError,
    Delete,
    Insert,
    ReconciliationFeed,
    Update,
    parse_change_event,
    sign_payload,
    verify_signature,
)
from pricewatch.alerts.monitor import AlertMonitor, MonitorConfig
from pricewatch.notify.dispatcher import NotificationDispatcher
from tests.helpers.fakes import FakeAlertStore, FakeTickSource


def rec(alert_id="a1", symbol="AAPL", enabled=True, **kw):
    return {"id": alert_id, "user_id": "u1", "symbol": symbol, "target_value": 100.0,
            "direction": "above", "enabled": enabled, **kw}


def test_parse_tagged_variants():
    ins = parse_change_event({"type": "INSERT", "table": "price_alerts", "record": rec(symbol="aapl")})
    assert isinstance(ins, Insert) and ins.record.symbol == "AAPL"

    upd = parse_change_event({"type": "update", "table": "price_alerts", "record": rec(),
                              "old_record": {"id": "a1", "symbol": "msft"}})
    assert isinstance(upd, Update) and upd.old_record.symbol == "MSFT"

    dele = parse_change_event({"type": "DELETE", "table": "price_alerts", "old_record": {"id": "a1"}})
    assert isinstance(dele, Delete) and dele.old_record.id == "a1"


@pytest.mark.parametrize("payload", [
    [],
    {"type": "INSERT", "table": "users", "record": rec()},
    {"type": "TRUNCATE", "table": "price_alerts"},
    {"type": "INSERT", "table": "price_alerts"},
    {"type": "INSERT", "table": "price_alerts", "record": rec(target_value=-1)},
    {"type": "DELETE", "table": "price_alerts"},
    {"type": "DELETE", "table": "price_alerts", "old_record": {"symbol": "AAPL"}},
])
def test_rejects_malformed(payload):
    with pytest.raises(ChangeEventError):
        parse_change_event(payload)


def test_signature():
    raw = b'{"type":"INSERT"}'
    sig = sign_payload(raw, "s3cret")
    assert sig.startswith("sha256=") and len(sig) == 7 + 64
    assert verify_signature(raw, sig, "s3cret")
    assert not verify_signature(raw + b" ", sig, "s3cret")
    assert not verify_signature(raw, sig, "other")
    assert not verify_signature(raw, None, "s3cret")


@pytest_asyncio.fixture
async def feed_env():
    source = FakeTickSource()
    monitor = AlertMonitor(FakeAlertStore(), source, NotificationDispatcher([]), MonitorConfig(refresh_interval_s=3600))
    await monitor.start()
    yield ReconciliationFeed(monitor), monitor, source
    await monitor.stop()


def ev(kind, **kw):
    return parse_change_event({"type": kind, "table": "price_alerts", **kw})


@pytest.mark.asyncio
async def test_insert_only_indexes_enabled(feed_env):
    feed, monitor, source = feed_env
    await feed.apply(ev("INSERT", record=rec("a1")))
    await feed.apply(ev("INSERT", record=rec("a2", "MSFT", enabled=False)))
    assert monitor.watched_symbols() == ["AAPL"]
    assert source.subscribed == {"AAPL"}


@pytest.mark.asyncio
async def test_update_moves_symbol_and_disable_removes(feed_env):
    feed, monitor, source = feed_env
    await feed.apply(ev("INSERT", record=rec("a1", "AAPL")))

    await feed.apply(ev("UPDATE", record=rec("a1", "MSFT"), old_record={"id": "a1", "symbol": "AAPL"}))
    assert monitor.watched_symbols() == ["MSFT"]
    assert source.subscribed == {"MSFT"}
    assert monitor.alert_count == 1

    await feed.apply(ev("UPDATE", record=rec("a1", "MSFT", enabled=False), old_record={"id": "a1"}))
    assert monitor.watched_symbols() == []
    assert source.subscribed == set()

    # update of an alert that was never indexed and stays disabled: nothing to do
    await feed.apply(ev("UPDATE", record=rec("a9", "TSLA", enabled=False), old_record={"id": "a9"}))
    assert monitor.alert_count == 0


@pytest.mark.asyncio
async def test_update_enabling_adds(feed_env):
    feed, monitor, _ = feed_env
    await feed.apply(ev("UPDATE", record=rec("a1", "NVDA"), old_record={"id": "a1", "symbol": "NVDA"}))
    assert monitor.get_alert("a1") is not None


@pytest.mark.asyncio
async def test_delete(feed_env):
    feed, monitor, source = feed_env
    await feed.apply(ev("INSERT", record=rec("a1")))
    await feed.apply(ev("DELETE", old_record={"id": "a1", "symbol": "AAPL"}))
    assert monitor.alert_count == 0
    assert source.subscribed == set()
