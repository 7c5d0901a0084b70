from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

import structlog

from pricewatch.alerts.models import Alert

log = structlog.get_logger("changes")

ALERTS_TABLE = "price_alerts"


class ChangeEventError(ValueError):
    """Change event rejected at the boundary (malformed, wrong table, unknown type)."""


@dataclass(frozen=True, slots=True)
class AlertRef:
    id: str
    symbol: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Insert:
    record: Alert


@dataclass(frozen=True, slots=True)
class Update:
    record: Alert
    old_record: Optional[AlertRef] = None


@dataclass(frozen=True, slots=True)
class Delete:
    old_record: AlertRef


ChangeEvent = Union[Insert, Update, Delete]


def parse_change_event(payload: Any, *, table: str = ALERTS_TABLE) -> ChangeEvent:
    """
    Validate a database change notification:
      {"type": "INSERT"|"UPDATE"|"DELETE", "table": ..., "record": {...}, "old_record": {...}}
    """
    if not isinstance(payload, Mapping):
        raise ChangeEventError("change event must be a JSON object")
    if payload.get("table") != table:
        raise ChangeEventError(f"change event not for {table} table")

    kind = str(payload.get("type") or "").upper()
    record = payload.get("record")
    old_record = payload.get("old_record")

    if kind == "INSERT":
        return Insert(record=_alert(record))
    if kind == "UPDATE":
        return Update(record=_alert(record), old_record=_ref(old_record) if old_record else None)
    if kind == "DELETE":
        if not old_record:
            raise ChangeEventError("DELETE event missing old_record")
        return Delete(old_record=_ref(old_record))
    raise ChangeEventError(f"unknown change event type: {payload.get('type')!r}")


def sign_payload(raw: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(raw: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 over the raw body, header format "sha256=<hex>", constant-time compare."""
    if not signature:
        log.warning("webhook_signature_missing")
        return False
    ok = hmac.compare_digest(signature.strip().encode("utf-8"), sign_payload(raw, secret).encode("utf-8"))
    if not ok:
        log.warning("webhook_signature_invalid")
    return ok


def _alert(record: Any) -> Alert:
    if not isinstance(record, Mapping):
        raise ChangeEventError("change event missing record")
    try:
        return Alert.from_record(record)
    except ValueError as e:
        raise ChangeEventError(str(e)) from e


def _ref(record: Any) -> AlertRef:
    if not isinstance(record, Mapping) or not record.get("id"):
        raise ChangeEventError("old_record missing id")
    sym = record.get("symbol")
    return AlertRef(id=str(record["id"]), symbol=str(sym).upper() if sym else None)


class ReconciliationFeed:
    """
    Push side of reconciliation: applies validated change events to the
    monitor as deltas. Disabled records are never left in the index.
    The monitor's periodic reload is the poll side.
    """

    def __init__(self, monitor):
        self.monitor = monitor

    async def apply(self, event: ChangeEvent) -> None:
        if isinstance(event, Insert):
            rec = event.record
            log.info("change_insert", alert_id=rec.id, symbol=rec.symbol, enabled=rec.enabled)
            if rec.enabled:
                await self.monitor.add_alert(rec)
        elif isinstance(event, Update):
            rec = event.record
            log.info("change_update", alert_id=rec.id, symbol=rec.symbol, enabled=rec.enabled)
            if event.old_record is not None and event.old_record.id != rec.id:
                await self._remove_quiet(event.old_record.id)
            if rec.enabled:
                # replaces the indexed copy in one step, even across symbols
                await self.monitor.add_alert(rec)
            else:
                await self._remove_quiet(rec.id)
        elif isinstance(event, Delete):
            log.info("change_delete", alert_id=event.old_record.id, symbol=event.old_record.symbol)
            await self.monitor.remove_alert(event.old_record.id)
        else:
            raise ChangeEventError(f"unsupported change event: {type(event).__name__}")

    async def _remove_quiet(self, alert_id: str) -> None:
        # an update for an alert that was disabled before is not an anomaly
        if self.monitor.get_alert(alert_id) is not None:
            await self.monitor.remove_alert(alert_id)
