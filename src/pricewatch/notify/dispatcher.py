from __future__ import annotations

import asyncio
from typing import Sequence

import structlog

from pricewatch.alerts.models import TriggerEvent
from pricewatch.notify.transports import Transport

log = structlog.get_logger("dispatcher")


class NotificationDispatcher:
    """
    Fans one trigger event out to every transport and returns once all have
    settled. A failing or slow transport never affects the others, and no
    exception reaches the caller.
    """

    def __init__(self, transports: Sequence[Transport]):
        self.transports = list(transports)

    @property
    def names(self) -> list[str]:
        return [t.name for t in self.transports]

    async def start(self) -> None:
        for t in self.transports:
            await t.start()

    async def stop(self) -> None:
        for t in self.transports:
            try:
                await t.stop()
            except Exception as e:
                log.warning("transport_stop_failed", transport=t.name, err=str(e))

    async def notify(self, evt: TriggerEvent) -> dict[str, bool]:
        """Returns {transport name: delivered}."""
        if not self.transports:
            log.warning("notify_no_transports", symbol=evt.symbol)
            return {}
        results = await asyncio.gather(*(self._send_one(t, evt) for t in self.transports))
        delivered = dict(zip(self.names, results))
        log.info("alert_notification_dispatched", symbol=evt.symbol, alert_id=evt.alert.id, results=delivered)
        return delivered

    async def _send_one(self, transport: Transport, evt: TriggerEvent) -> bool:
        try:
            await transport.send_alert(evt)
            return True
        except Exception as e:
            log.warning(
                "notify_transport_failed",
                transport=transport.name,
                symbol=evt.symbol,
                alert_id=evt.alert.id,
                err=str(e),
            )
            return False
