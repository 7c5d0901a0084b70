# src/storage/redis_alerts.py
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import structlog
from redis.asyncio import Redis

from pricewatch.alerts.models import Alert
from pricewatch.alerts.store import AlertNotFound
from pricewatch.utils.time import iso_utc

log = structlog.get_logger("redis_alerts")

PREFIX = "pricewatch"

# fields a caller may set; id and timestamps are owned by the store
WRITABLE = ("user_id", "symbol", "target_value", "direction", "alert_type", "enabled", "notes", "prompt")


def alert_key(alert_id: str) -> str:
    # pricewatch:alert:{ID}
    return f"{PREFIX}:alert:{alert_id}"


def index_key() -> str:
    # sorted set of ids scored by created_at epoch
    return f"{PREFIX}:alerts"


class RedisAlertStore:
    """
    One hash per alert, field values JSON-encoded, plus a sorted-set index
    for newest-first listing. Writers HSET only the fields they own, so a
    trigger timestamp and a user edit landing together both survive.
    """

    def __init__(self, r: Redis):
        self.r = r

    async def fetch_enabled_alerts(self) -> list[Alert]:
        return [a for a in await self._all() if a.enabled]

    async def fetch_alerts_by_owner(self, user_id: str) -> list[Alert]:
        return [a for a in await self._all() if a.user_id == user_id]

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        rec = _decode(await self.r.hgetall(alert_key(alert_id)))
        if rec is None:
            return None
        return Alert.from_record(rec)

    async def insert_alert(self, fields: Mapping[str, Any]) -> Alert:
        now = datetime.now(timezone.utc)
        rec = {k: fields[k] for k in WRITABLE if k in fields}
        rec.update(id=str(uuid.uuid4()), created_at=iso_utc(now), updated_at=iso_utc(now), last_triggered_at=None)
        alert = Alert.from_record(rec)  # validates before anything is written
        await self.r.hset(alert_key(alert.id), mapping=_encode(alert.to_record()))
        await self.r.zadd(index_key(), {alert.id: now.timestamp()})
        log.info("alert_created", alert_id=alert.id, symbol=alert.symbol)
        return alert

    async def update_alert(self, alert_id: str, fields: Mapping[str, Any]) -> Alert:
        rec = await self._record(alert_id)
        changed = [k for k in WRITABLE if k in fields]
        rec.update({k: fields[k] for k in changed})
        rec["updated_at"] = iso_utc(datetime.now(timezone.utc))
        alert = Alert.from_record(rec)
        # write back the normalized values of the edited fields only
        out = alert.to_record()
        await self.r.hset(alert_key(alert_id), mapping=_encode({k: out[k] for k in (*changed, "updated_at")}))
        log.info("alert_updated", alert_id=alert_id, fields=changed)
        return alert

    async def delete_alert(self, alert_id: str) -> None:
        removed = await self.r.delete(alert_key(alert_id))
        await self.r.zrem(index_key(), alert_id)
        if not removed:
            raise AlertNotFound(alert_id)
        log.info("alert_deleted", alert_id=alert_id)

    async def update_last_triggered(self, alert_id: str, ts: datetime) -> None:
        key = alert_key(alert_id)
        if not await self.r.exists(key):
            raise AlertNotFound(alert_id)
        await self.r.hset(key, mapping=_encode({
            "last_triggered_at": iso_utc(ts),
            "updated_at": iso_utc(datetime.now(timezone.utc)),
        }))

    # ---------- helpers ----------

    async def _record(self, alert_id: str) -> dict[str, Any]:
        rec = _decode(await self.r.hgetall(alert_key(alert_id)))
        if rec is None:
            raise AlertNotFound(alert_id)
        return rec

    async def _all(self) -> list[Alert]:
        ids = await self.r.zrevrange(index_key(), 0, -1)
        if not ids:
            return []
        p = self.r.pipeline(transaction=False)
        for alert_id in ids:
            p.hgetall(alert_key(_s(alert_id)))
        raws = await p.execute()

        out: list[Alert] = []
        for alert_id, raw in zip(ids, raws):
            try:
                rec = _decode(raw)
                if rec is None:
                    # index entry without a record; skip
                    continue
                out.append(Alert.from_record(rec))
            except ValueError as e:
                log.warning("alert_record_malformed", alert_id=_s(alert_id), err=str(e))
        return out


def _encode(rec: Mapping[str, Any]) -> dict[str, str]:
    return {k: json.dumps(v) for k, v in rec.items()}


def _decode(raw: Optional[Mapping[Any, Any]]) -> Optional[dict[str, Any]]:
    """
    Hash → record. A hash without an id is treated as absent: a trigger
    timestamp racing a delete can leave just its own two fields behind.
    """
    if not raw:
        return None
    rec = {_s(k): json.loads(_s(v)) for k, v in raw.items()}
    if "id" not in rec:
        return None
    return rec


def _s(v: Any) -> str:
    return v.decode("utf-8") if isinstance(v, (bytes, bytearray)) else str(v)
