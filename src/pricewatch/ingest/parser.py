from __future__ import annotations

import math
from typing import Any, Optional

import structlog

from pricewatch.utils.time import utc_now_s
from pricewatch.utils.types import Tick, canonical_symbol

log = structlog.get_logger("parser")

def parse_trades(m: Any) -> list[Tick]:
    """
    Return the Ticks carried by `m` if it is a trade message; else [].

    Finnhub trade message shape:
      {"type": "trade",
       "data": [{"s": "BINANCE:BTCUSDT", "p": 45012.5, "t": 1700000000123, "v": 0.015}, ...]}
      - "s"  symbol
      - "p"  last price
      - "t"  epoch millis
      - "v"  volume (may be absent)
    Records missing a symbol or price are skipped, as are records whose
    price, volume or time is not a finite number. One bad record never
    costs the rest of its batch.
    """
    if not isinstance(m, dict) or m.get("type") != "trade":
        return []
    data = m.get("data")
    if not isinstance(data, list):
        return []

    ticks: list[Tick] = []
    for rec in data:
        if not isinstance(rec, dict):
            continue
        sym = rec.get("s")
        px = rec.get("p")
        if not sym or px is None:
            continue
        try:
            tick = _tick(sym, px, rec.get("v"), rec.get("t"))
        except (TypeError, ValueError) as e:
            log.warning("trade_record_malformed", err=str(e), snippet=str(rec)[:200])
            continue
        ticks.append(tick)
    return ticks

def _tick(sym: Any, px: Any, vol: Any, ts: Any) -> Tick:
    price = _finite(px)
    if price <= 0:
        raise ValueError(f"non-positive price {price}")
    return Tick(
        symbol=canonical_symbol(sym),
        px=price,
        size=_finite(vol) if vol is not None else None,
        ts=_epoch_s(ts),
    )

def _finite(v: Any) -> float:
    # bools are ints to float(); not a number on the wire
    if isinstance(v, bool):
        raise TypeError(f"expected a number, got {v!r}")
    out = float(v)
    if not math.isfinite(out):
        raise ValueError(f"non-finite value {v!r}")
    return out

def is_ping(m: Any) -> bool:
    return isinstance(m, dict) and m.get("type") == "ping"

def control_msg(action: str, symbol: str) -> dict:
    """Subscribe/unsubscribe frame: {"type": "subscribe", "symbol": "AAPL"}."""
    if action not in ("subscribe", "unsubscribe"):
        raise ValueError(f"unknown control action: {action}")
    return {"type": action, "symbol": canonical_symbol(symbol)}

def _epoch_s(ts: Optional[float]) -> float:
    # normalize timestamp to epoch seconds
    if ts is None:
        return utc_now_s()
    ts = _finite(ts)
    if ts > 1e12:  # ms → s
        return ts / 1e3
    return ts
