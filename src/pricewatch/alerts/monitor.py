from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from typing import Callable, Coroutine, Iterable, Optional, Protocol

import structlog

from pricewatch.alerts import rules
from pricewatch.alerts.models import Alert, MonitorStatus, PriceSample, TriggerEvent
from pricewatch.alerts.store import AlertStore
from pricewatch.ingest.tick_stream import TickHandler
from pricewatch.notify.dispatcher import NotificationDispatcher
from pricewatch.notify.ops import OpsReporter
from pricewatch.utils.time import utc_dt, utc_now_s
from pricewatch.utils.types import Tick, canonical_symbol

log = structlog.get_logger("monitor")


class TickSource(Protocol):
    async def register_handler(self, symbol: str, handler: TickHandler) -> None: ...

    async def remove_handler(self, symbol: str) -> None: ...

    def status(self) -> dict: ...


@dataclass(slots=True)
class MonitorConfig:
    cooldown_s: float = 300.0           # min seconds between notifications per alert
    refresh_interval_s: float = 300.0   # periodic reload from the store
    persist_timeout_s: float = 5.0      # last-triggered write, best effort


class AlertMonitor:
    """
    Owns the symbol → alerts index and the symbol → latest PriceSample cache,
    evaluates every tick against the alerts watching its symbol, and hands
    qualifying triggers to the dispatcher.

    Concurrency (single event loop):
      - index/cache reads and writes never span an await, so the tick path
        always sees a whole mutation or none of it
      - `_lock` serialises mutation sequences that also await the tick source
        (subscribe/unsubscribe), keeping its subscribed set equal to the
        index keys
      - notification and last-triggered persistence run as background tasks
        on a snapshot of the alert, after the synchronous section
    """

    def __init__(
        self,
        store: AlertStore,
        stream: TickSource,
        dispatcher: NotificationDispatcher,
        cfg: Optional[MonitorConfig] = None,
        *,
        ops: Optional[OpsReporter] = None,
        clock: Callable[[], float] = utc_now_s,
    ):
        self.store = store
        self.stream = stream
        self.dispatcher = dispatcher
        self.cfg = cfg or MonitorConfig()
        self.ops = ops
        self._clock = clock

        self._index: dict[str, list[Alert]] = {}
        self._prices: dict[str, PriceSample] = {}
        self._lock = asyncio.Lock()
        self._running = False
        self._refresh_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        # add/remove calls landing while a store fetch is in flight, replayed
        # over the fetched set so a stale snapshot cannot undo them
        self._generation = 0
        self._fetches = 0
        self._late: dict[str, tuple[int, Optional[Alert]]] = {}

    # ---------------------------- lifecycle ---------------------------- #

    async def start(self) -> None:
        """Load enabled alerts, subscribe their symbols, start periodic reload. Load failure propagates."""
        if self._running:
            return
        log.info("monitor_starting")
        await self.reload()
        self._refresh_task = asyncio.create_task(self._refresh_loop(), name="alert-refresh")
        self._running = True
        log.info("monitor_started", alerts=self.alert_count, symbols=len(self._index))

    async def stop(self) -> None:
        """Cancel periodic reload, unsubscribe everything, clear state. In-flight notifications finish."""
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        if not self._running and not self._index:
            return
        async with self._lock:
            symbols = list(self._index)
            self._index.clear()
            self._prices.clear()
            for sym in symbols:
                await self.stream.remove_handler(sym)
        self._running = False
        log.info("monitor_stopped", symbols=len(symbols))

    async def drain(self) -> None:
        """Wait for background notification/persistence tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---------------------------- mutations ---------------------------- #

    async def add_alert(self, alert: Alert) -> None:
        """
        Index an enabled alert (replacing any entry with the same id).
        The index write happens before the subscribe request for a new symbol.
        """
        if not alert.enabled:
            raise ValueError(f"alert {alert.id} is disabled and cannot be monitored")
        alert = alert.snapshot()
        sym = alert.symbol
        async with self._lock:
            self._note(alert.id, alert)
            old = self._pop_alert(alert.id)
            if old is not None:
                _keep_newer_trigger(alert, old[1])
            bucket = self._index.get(sym)
            if bucket is None:
                bucket = self._index[sym] = []
            bucket.append(alert)
            # same-symbol replacement keeps its subscription and price sample
            new_symbol = len(bucket) == 1 and (old is None or old[0] != sym)

            if old is not None and old[0] != sym and old[0] not in self._index:
                await self._release(old[0])
            if new_symbol:
                await self.stream.register_handler(sym, self)
                log.info("symbol_watch_started", symbol=sym)
        log.info("alert_added", alert_id=alert.id, symbol=sym, replaced=old is not None)

    async def remove_alert(self, alert_id: str) -> bool:
        """Drop an alert by id from whichever bucket holds it. False (and a warning) if unknown."""
        async with self._lock:
            self._note(alert_id, None)
            popped = self._pop_alert(alert_id)
            if popped is None:
                log.warning("alert_remove_missing", alert_id=alert_id)
                return False
            sym = popped[0]
            if sym not in self._index:
                await self._release(sym)
        log.info("alert_removed", alert_id=alert_id, symbol=sym)
        return True

    async def reload(self) -> None:
        """
        Replace the index with the store's enabled alerts. The fetch runs
        outside the lock; add_alert/remove_alert calls that finish while it
        is in flight are replayed over the fetched set.
        """
        self._fetches += 1
        try:
            since = self._generation
            alerts = await self.store.fetch_enabled_alerts()
            await self.replace_all(alerts, since=since)
        finally:
            self._fetches -= 1
            if not self._fetches:
                self._late.clear()

    async def replace_all(self, alerts: Iterable[Alert], *, since: Optional[int] = None) -> None:
        """
        Swap in a new alert set. Symbols that disappear are unsubscribed and
        evicted; new ones subscribed; price samples of kept symbols survive.
        With `since`, add/remove calls made after that generation win over
        what `alerts` says about the same ids.
        """
        async with self._lock:
            if since is not None:
                alerts = self._overlay(alerts, since)
            old_index = self._index
            previous = {a.id: a for bucket in old_index.values() for a in bucket}
            new_index = self._build_index(alerts, previous=previous)
            removed = [s for s in old_index if s not in new_index]
            added = [s for s in new_index if s not in old_index]

            self._index = new_index
            for sym in removed:
                self._prices.pop(sym, None)
            for sym in removed:
                await self.stream.remove_handler(sym)
            for sym in added:
                await self.stream.register_handler(sym, self)
        log.info(
            "alerts_reloaded",
            alerts=self.alert_count,
            symbols=len(new_index),
            added=added,
            removed=removed,
        )

    # ---------------------------- hot path ----------------------------- #

    def on_tick(self, tick: Tick) -> None:
        self.handle_tick(tick.symbol, tick.px, tick.ts, tick.size)

    def handle_tick(
        self,
        symbol: str,
        price: float,
        ts: float,
        volume: Optional[float] = None,
    ) -> list[TriggerEvent]:
        """
        Record the tick and evaluate the symbol's alerts. Returns the events
        handed to the dispatcher. Ticks for unwatched symbols are ignored
        and not cached.
        """
        sym = canonical_symbol(symbol)
        bucket = self._index.get(sym)
        if not bucket:
            log.debug("tick_unwatched_symbol", symbol=sym)
            return []

        now = self._clock()
        prev = self._prices.get(sym)
        prev_price = prev.price if prev is not None else None
        self._prices[sym] = PriceSample(
            price=float(price),
            previous_price=prev_price,
            ts=float(ts),
            volume=volume,
            updated_at=now,
        )

        fired: list[TriggerEvent] = []
        for alert in list(bucket):
            try:
                evt = self._evaluate(alert, float(price), prev_price, ts, volume, now)
            except Exception as e:
                log.warning("alert_evaluation_failed", alert_id=getattr(alert, "id", None), symbol=sym, err=str(e))
                continue
            if evt is not None:
                fired.append(evt)

        for evt in fired:
            self._spawn(self.dispatcher.notify(evt), f"notify-{evt.alert.id}")
            self._spawn(
                self._persist_last_triggered(evt.alert.id, evt.alert.last_triggered_at),
                f"persist-{evt.alert.id}",
            )
        return fired

    def _evaluate(
        self,
        alert: Alert,
        price: float,
        prev_price: Optional[float],
        ts: float,
        volume: Optional[float],
        now: float,
    ) -> Optional[TriggerEvent]:
        if rules.in_cooldown(alert.last_triggered_at, now, self.cfg.cooldown_s):
            log.debug("alert_in_cooldown", alert_id=alert.id)
            return None
        if not rules.should_trigger(alert.direction, price, alert.target_value, prev_price, alert_id=alert.id):
            return None

        # suppress re-triggers immediately; the store write may lag or fail
        alert.last_triggered_at = utc_dt(now)
        log.info(
            "alert_triggered",
            alert_id=alert.id,
            symbol=alert.symbol,
            direction=alert.direction,
            target=alert.target_value,
            price=price,
        )
        return TriggerEvent.for_alert(
            alert,
            price,
            utc_dt(ts),
            price_change=rules.price_change(price, prev_price),
            volume=volume,
        )

    # ---------------------------- queries ------------------------------ #

    @property
    def running(self) -> bool:
        return self._running

    @property
    def alert_count(self) -> int:
        return sum(len(b) for b in self._index.values())

    def watched_symbols(self) -> list[str]:
        return sorted(self._index)

    def alerts_for(self, symbol: str) -> list[Alert]:
        return [a.snapshot() for a in self._index.get(canonical_symbol(symbol), [])]

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        for bucket in self._index.values():
            for a in bucket:
                if a.id == alert_id:
                    return a.snapshot()
        return None

    def status(self) -> MonitorStatus:
        return MonitorStatus(
            running=self._running,
            symbols=self.watched_symbols(),
            total_alerts=self.alert_count,
            prices={s: dataclasses.replace(p) for s, p in self._prices.items()},
            connection=self.stream.status(),
        )

    # ---------------------------- internals ---------------------------- #

    def _build_index(
        self,
        alerts: Iterable[Alert],
        previous: Optional[dict[str, Alert]] = None,
    ) -> dict[str, list[Alert]]:
        index: dict[str, list[Alert]] = {}
        seen: set[str] = set()
        for alert in alerts:
            if not alert.enabled:
                log.warning("alert_disabled_skipped", alert_id=alert.id)
                continue
            if alert.id in seen:
                log.warning("alert_duplicate_skipped", alert_id=alert.id)
                continue
            seen.add(alert.id)
            a = alert.snapshot()
            if previous and a.id in previous:
                _keep_newer_trigger(a, previous[a.id])
            index.setdefault(a.symbol, []).append(a)
        return index

    def _note(self, alert_id: str, alert: Optional[Alert]) -> None:
        self._generation += 1
        if self._fetches:
            self._late[alert_id] = (self._generation, alert.snapshot() if alert is not None else None)

    def _overlay(self, alerts: Iterable[Alert], since: int) -> list[Alert]:
        """`alerts` with every id touched after generation `since` replaced by its latest state."""
        late = {aid: a for aid, (gen, a) in self._late.items() if gen > since}
        if not late:
            return list(alerts)
        log.info("alerts_reload_replayed", alert_ids=sorted(late))
        return [a for a in alerts if a.id not in late] + [a for a in late.values() if a is not None]

    def _pop_alert(self, alert_id: str) -> Optional[tuple[str, Alert]]:
        """Remove by id from any bucket; drops the bucket if it empties. Returns (symbol, alert)."""
        for sym, bucket in self._index.items():
            for i, a in enumerate(bucket):
                if a.id == alert_id:
                    del bucket[i]
                    if not bucket:
                        del self._index[sym]
                    return sym, a
        return None

    async def _release(self, symbol: str) -> None:
        self._prices.pop(symbol, None)
        await self.stream.remove_handler(symbol)
        log.info("symbol_watch_stopped", symbol=symbol)

    async def _persist_last_triggered(self, alert_id: str, ts) -> None:
        try:
            await asyncio.wait_for(
                self.store.update_last_triggered(alert_id, ts),
                timeout=self.cfg.persist_timeout_s,
            )
        except Exception as e:
            log.warning("persist_last_triggered_failed", alert_id=alert_id, err=str(e) or type(e).__name__)

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cfg.refresh_interval_s)
            log.debug("alert_refresh_tick")
            try:
                await self.reload()
            except Exception as e:
                log.error("alert_refresh_failed", err=str(e))
                if self.ops is not None:
                    await self.ops.error("periodic reload", str(e))

    def _spawn(self, coro: Coroutine, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.warning("background_task_failed", task=task.get_name(), err=str(task.exception()))


def _keep_newer_trigger(alert: Alert, previous: Alert) -> None:
    """In-memory last-triggered may be ahead of the store; never move it back."""
    prev_ts = previous.last_triggered_at
    if prev_ts is not None and (alert.last_triggered_at is None or alert.last_triggered_at < prev_ts):
        alert.last_triggered_at = prev_ts
