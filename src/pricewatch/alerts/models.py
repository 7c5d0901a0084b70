from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from pricewatch.utils.time import iso_utc, parse_ts
from pricewatch.utils.types import canonical_symbol


@dataclass(slots=True)
class Alert:
    """
    Working copy of a stored alert record.

    `direction` is kept as the raw stored string: values outside
    above/below/either are carried through and simply never trigger.
    """
    id: str
    user_id: str
    symbol: str
    target_value: float
    direction: str = "above"
    alert_type: Optional[str] = None
    enabled: bool = True
    last_triggered_at: Optional[datetime] = None
    notes: Optional[str] = None
    prompt: Optional[str] = None  # free-text context attached to notifications
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.symbol = canonical_symbol(self.symbol)

    @classmethod
    def from_record(cls, rec: Mapping[str, Any]) -> "Alert":
        """Build from a store/change-event record; raises ValueError on malformed input."""
        alert_id = rec.get("id")
        if not alert_id:
            raise ValueError("alert record missing id")
        symbol = rec.get("symbol")
        if not symbol:
            raise ValueError(f"alert {alert_id} missing symbol")
        try:
            target = float(rec.get("target_value"))
        except (TypeError, ValueError):
            raise ValueError(f"alert {alert_id} has non-numeric target_value") from None
        if not target > 0:
            raise ValueError(f"alert {alert_id} target_value must be positive")

        return cls(
            id=str(alert_id),
            user_id=str(rec.get("user_id") or ""),
            symbol=str(symbol),
            target_value=target,
            direction=str(rec.get("direction") or "above"),
            alert_type=rec.get("alert_type"),
            enabled=bool(rec.get("enabled", True)),
            last_triggered_at=parse_ts(rec.get("last_triggered_at")),
            notes=rec.get("notes"),
            prompt=rec.get("prompt"),
            created_at=parse_ts(rec.get("created_at")),
            updated_at=parse_ts(rec.get("updated_at")),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "symbol": self.symbol,
            "target_value": self.target_value,
            "direction": self.direction,
            "alert_type": self.alert_type,
            "enabled": self.enabled,
            "last_triggered_at": iso_utc(self.last_triggered_at),
            "notes": self.notes,
            "prompt": self.prompt,
            "created_at": iso_utc(self.created_at),
            "updated_at": iso_utc(self.updated_at),
        }

    def snapshot(self) -> "Alert":
        return dataclasses.replace(self)


@dataclass(slots=True)
class PriceSample:
    """Latest observed tick for one symbol, plus the price before it."""
    price: float
    previous_price: Optional[float]
    ts: float  # tick time, epoch seconds
    volume: Optional[float]
    updated_at: float  # local receive time, epoch seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "price": self.price,
            "previous_price": self.previous_price,
            "ts": self.ts,
            "volume": self.volume,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True, frozen=True)
class PriceChange:
    change: float
    change_pct: float
    previous_price: float


@dataclass(slots=True)
class TriggerEvent:
    """Normalized notification payload handed to the dispatcher."""
    alert: Alert
    symbol: str
    current_price: float
    target_price: float
    direction: str
    timestamp: datetime
    price_change: Optional[PriceChange] = None
    volume: Optional[float] = None
    alert_type: Optional[str] = None
    notes: Optional[str] = None
    prompt: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def for_alert(
        cls,
        alert: Alert,
        price: float,
        timestamp: datetime,
        *,
        price_change: Optional[PriceChange] = None,
        volume: Optional[float] = None,
        alert_type: Optional[str] = None,
    ) -> "TriggerEvent":
        snap = alert.snapshot()
        return cls(
            alert=snap,
            symbol=snap.symbol,
            current_price=float(price),
            target_price=snap.target_value,
            direction=snap.direction,
            timestamp=timestamp,
            price_change=price_change,
            volume=volume,
            alert_type=alert_type if alert_type is not None else snap.alert_type,
            notes=snap.notes,
            prompt=snap.prompt,
            user_id=snap.user_id,
        )


@dataclass(slots=True)
class MonitorStatus:
    running: bool
    symbols: list[str]
    total_alerts: int
    prices: dict[str, PriceSample] = field(default_factory=dict)
    connection: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "symbols": list(self.symbols),
            "total_alerts": self.total_alerts,
            "prices": {s: p.to_dict() for s, p in self.prices.items()},
            "connection": dict(self.connection),
        }
