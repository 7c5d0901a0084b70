from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional, Protocol

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from pricewatch.ingest import parser
from pricewatch.utils.backoff import linear_backoff
from pricewatch.utils.types import Tick, canonical_symbol

if TYPE_CHECKING:
    from pricewatch.notify.ops import OpsReporter


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    GIVEN_UP = "given_up"


class TickHandler(Protocol):
    """Receives every trade for the symbols it is registered on, in arrival order."""

    def on_tick(self, tick: Tick) -> None:
        ...


@dataclass(slots=True)
class TickStreamConfig:
    stream_url: str
    api_key: str
    # reconnect behavior: attempt N waits N * reconnect_delay_s
    reconnect_delay_s: float = 5.0
    max_reconnect_attempts: int = 5
    # timeouts
    open_timeout_s: float = 10.0
    ping_interval_s: Optional[float] = 30.0


class TickStream:
    """
    Single upstream trade stream (Finnhub websocket protocol).

    Lifecycle:
      - connect() opens the socket; only the first attempt's failure is raised
      - on unexpected close, reconnect after attempt × base delay, up to
        max_reconnect_attempts, then stay GIVEN_UP until the process restarts
      - every (re)connect resends one subscribe frame per recorded symbol

    Subscription state is the desired state: subscribe() while disconnected
    records the symbol and the frame is sent on the next connect.

    Usage:
        stream = TickStream(TickStreamConfig(stream_url=..., api_key=...))
        await stream.connect()
        await stream.register_handler("AAPL", monitor)
        ...
        await stream.close()
    """

    def __init__(self, cfg: TickStreamConfig, ops: Optional["OpsReporter"] = None):
        self.cfg = cfg
        self._ops = ops
        self._log = structlog.get_logger("tick_stream")

        self._subscribed: set[str] = set()
        self._handlers: dict[str, TickHandler] = {}

        self._state = StreamState.DISCONNECTED
        self._attempts = 0
        self._ws = None
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._opened: Optional[asyncio.Future] = None

    # ---------------------------- public API ---------------------------- #

    async def connect(self) -> None:
        """Open the stream. Raises if the first attempt fails; later drops are retried internally."""
        if self._task is not None and not self._task.done():
            return
        self._stop.clear()
        self._opened = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run(), name="tick-stream")
        await self._opened

    async def close(self) -> None:
        """Stop reconnecting, close the socket and forget all subscriptions."""
        self._stop.set()
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                self._log.debug("ws_close_error", err=str(e))
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._ws = None
        self._state = StreamState.DISCONNECTED
        self._subscribed.clear()
        self._handlers.clear()
        self._log.info("tick_stream_closed_by_caller")

    async def subscribe(self, symbol: str) -> None:
        sym = canonical_symbol(symbol)
        if sym in self._subscribed:
            self._log.debug("already_subscribed", symbol=sym)
            return
        self._subscribed.add(sym)
        if not self.connected:
            self._log.warning("subscribe_deferred_not_connected", symbol=sym, state=self._state.value)
            return
        await self._send(parser.control_msg("subscribe", sym))
        self._log.info("subscribed", symbol=sym)

    async def unsubscribe(self, symbol: str) -> None:
        sym = canonical_symbol(symbol)
        if sym not in self._subscribed:
            self._log.debug("not_subscribed", symbol=sym)
            return
        self._subscribed.discard(sym)
        self._handlers.pop(sym, None)
        if not self.connected:
            self._log.warning("unsubscribe_deferred_not_connected", symbol=sym, state=self._state.value)
            return
        await self._send(parser.control_msg("unsubscribe", sym))
        self._log.info("unsubscribed", symbol=sym)

    async def register_handler(self, symbol: str, handler: TickHandler) -> None:
        """One handler per symbol (last registration wins); subscribes if needed."""
        sym = canonical_symbol(symbol)
        self._handlers[sym] = handler
        if sym not in self._subscribed:
            await self.subscribe(sym)

    async def remove_handler(self, symbol: str) -> None:
        sym = canonical_symbol(symbol)
        self._handlers.pop(sym, None)
        await self.unsubscribe(sym)

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is StreamState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    def subscribed_symbols(self) -> list[str]:
        return sorted(self._subscribed)

    def status(self) -> dict:
        return {
            "state": self._state.value,
            "connected": self.connected,
            "subscribed": self.subscribed_symbols(),
            "reconnect_attempts": self._attempts,
        }

    # --------------------------- core internals ------------------------- #

    async def _run(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    await self._session()
                except Exception as e:
                    if self._opened is not None and not self._opened.done():
                        self._state = StreamState.DISCONNECTED
                        self._log.error("tick_stream_connect_failed", err=str(e))
                        self._opened.set_exception(e)
                        return
                    self._log.warning("tick_stream_error", err=str(e))
                finally:
                    self._ws = None
                    if self._state is not StreamState.GIVEN_UP:
                        self._state = StreamState.DISCONNECTED

                if self._stop.is_set():
                    break

                if self._attempts >= self.cfg.max_reconnect_attempts:
                    await self._give_up()
                    return

                self._attempts += 1
                delay = linear_backoff(self._attempts, self.cfg.reconnect_delay_s)
                self._state = StreamState.RECONNECTING
                self._log.info(
                    "tick_stream_reconnect_scheduled",
                    attempt=self._attempts,
                    max_attempts=self.cfg.max_reconnect_attempts,
                    delay_s=delay,
                )
                if await self._wait_stop(delay):
                    break
        finally:
            if self._opened is not None and not self._opened.done():
                self._opened.set_exception(ConnectionError("tick stream closed before opening"))
            self._log.info("tick_stream_loop_exit", state=self._state.value)

    async def _session(self) -> None:
        """One connection: open, resubscribe, then read until closed."""
        self._state = StreamState.CONNECTING
        self._log.info("tick_stream_connecting", url=self.cfg.stream_url, attempt=self._attempts)
        async with ws_connect(
            f"{self.cfg.stream_url}?token={self.cfg.api_key}",
            open_timeout=self.cfg.open_timeout_s,
            ping_interval=self.cfg.ping_interval_s,
        ) as ws:
            self._ws = ws
            self._state = StreamState.CONNECTED
            self._attempts = 0
            self._log.info("tick_stream_connected")

            await self._resubscribe()

            if self._opened is not None and not self._opened.done():
                self._opened.set_result(None)

            await self._stream_loop(ws)

    async def _stream_loop(self, ws) -> None:
        while not self._stop.is_set():
            try:
                raw = await ws.recv()
            except ConnectionClosed as e:
                code = e.rcvd.code if e.rcvd is not None else None
                self._log.warning("tick_stream_closed", code=code, reason=str(e))
                return

            try:
                msg = json.loads(raw)
            except ValueError as e:
                self._log.warning("ws_json_error", err=str(e))
                continue

            if parser.is_ping(msg):
                await self._send({"type": "pong"})
                continue

            try:
                ticks = parser.parse_trades(msg)
            except Exception as e:
                self._log.warning("parse_trade_error", err=str(e), snippet=str(msg)[:200])
                continue
            for tick in ticks:
                self._dispatch(tick)

    def _dispatch(self, tick: Tick) -> None:
        handler = self._handlers.get(tick.symbol)
        if handler is None:
            return
        try:
            handler.on_tick(tick)
        except Exception as e:
            self._log.warning("tick_handler_error", symbol=tick.symbol, err=str(e))

    async def _resubscribe(self) -> None:
        symbols = sorted(self._subscribed)
        if not symbols:
            return
        self._log.info("tick_stream_resubscribing", count=len(symbols))
        for sym in symbols:
            await self._send(parser.control_msg("subscribe", sym))

    async def _send(self, msg: dict) -> bool:
        ws = self._ws
        if ws is None or not self.connected:
            self._log.warning("ws_send_not_open", type=msg.get("type"), symbol=msg.get("symbol"))
            return False
        try:
            await ws.send(json.dumps(msg))
            return True
        except ConnectionClosed as e:
            # symbol stays recorded; the next connect resends it
            self._log.warning("ws_send_failed", type=msg.get("type"), err=str(e))
            return False

    async def _give_up(self) -> None:
        self._state = StreamState.GIVEN_UP
        self._log.error("tick_stream_give_up", attempts=self._attempts)
        if self._ops is not None:
            await self._ops.error(
                "tick stream",
                f"gave up after {self._attempts} reconnect attempts; restart required",
            )

    async def _wait_stop(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
