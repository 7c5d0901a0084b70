from __future__ import annotations

from typing import Any, Optional

import structlog

from pricewatch.notify import formatting
from pricewatch.notify.transports import DiscordTransport

log = structlog.get_logger("ops")


class OpsReporter:
    """
    Operational notifications (status changes, faults needing an operator)
    sent to a debug Discord channel. Built once in main and handed to the
    components that report; without a transport it only logs.
    Never raises.
    """

    def __init__(self, transport: Optional[DiscordTransport] = None):
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return self.transport is not None

    async def start(self) -> None:
        if self.transport is not None:
            await self.transport.start()

    async def stop(self) -> None:
        if self.transport is not None:
            await self.transport.stop()

    async def status(self, snapshot: dict[str, Any]) -> None:
        if self.transport is None:
            return
        try:
            await self.transport.send_embed(formatting.discord_status_embed(snapshot))
        except Exception as e:
            log.warning("ops_status_failed", err=str(e))

    async def error(self, context: str, message: str) -> None:
        log.error("ops_error", context=context, message=message)
        if self.transport is None:
            return
        try:
            await self.transport.send_embed(formatting.discord_error_embed(context, message))
        except Exception as e:
            log.warning("ops_error_report_failed", err=str(e))
