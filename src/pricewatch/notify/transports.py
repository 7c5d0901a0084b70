from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Protocol

import aiohttp
import structlog

from pricewatch.alerts.models import TriggerEvent
from pricewatch.notify import formatting
from pricewatch.notify.ratelimit import WindowRateLimiter

log = structlog.get_logger("notifier")

MAX_TIMEOUT_S = 10.0


class TransportError(RuntimeError):
    def __init__(self, transport: str, status: int, body: str = ""):
        super().__init__(f"{transport} webhook returned {status}: {body[:200]}")
        self.transport = transport
        self.status = status


class Transport(Protocol):
    name: str

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def send_alert(self, evt: TriggerEvent) -> None: ...


# --------- HTTP webhook base ----------

class WebhookTransport(ABC):
    """
    POSTs a JSON payload per alert. Waits on its own rate limiter before each
    send, single attempt, raises TransportError on non-2xx.
    """
    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        limiter: WindowRateLimiter,
        timeout_s: float = MAX_TIMEOUT_S,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        if not url:
            raise ValueError(f"{self.name} webhook url is required")
        self.url = url
        self.limiter = limiter
        self.timeout_s = min(float(timeout_s), MAX_TIMEOUT_S)
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def stop(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    @abstractmethod
    def payload_for(self, evt: TriggerEvent) -> dict[str, Any]:
        """Request body for one alert."""

    async def send_alert(self, evt: TriggerEvent) -> None:
        await self.post(self.payload_for(evt))
        log.info("notification_sent", transport=self.name, symbol=evt.symbol, alert_id=evt.alert.id)

    async def post(self, payload: dict[str, Any]) -> None:
        if self._session is None:
            await self.start()
        await self.limiter.acquire()
        async with self._session.post(self.url, json=payload) as resp:
            if 200 <= resp.status < 300:
                return
            detail = await _maybe_text(resp)
            raise TransportError(self.name, resp.status, detail)


class DiscordTransport(WebhookTransport):
    """Discord webhook: 30 requests per minute per webhook."""
    name = "discord"
    username = "Price Alert Bot"

    def __init__(self, url: str, *, timeout_s: float = MAX_TIMEOUT_S, session=None,
                 limiter: Optional[WindowRateLimiter] = None):
        super().__init__(
            url,
            limiter=limiter or WindowRateLimiter(30, 60.0, name="discord"),
            timeout_s=timeout_s,
            session=session,
        )

    def payload_for(self, evt: TriggerEvent) -> dict[str, Any]:
        return {"username": self.username, "embeds": [formatting.discord_embed(evt)]}

    async def send_embed(self, embed: dict[str, Any]) -> None:
        await self.post({"username": self.username, "embeds": [embed]})


class TeamsTransport(WebhookTransport):
    """Teams incoming webhook; allows ~4 rps, we stay at 2."""
    name = "teams"

    def __init__(self, url: str, *, timeout_s: float = MAX_TIMEOUT_S, session=None,
                 limiter: Optional[WindowRateLimiter] = None):
        super().__init__(
            url,
            limiter=limiter or WindowRateLimiter(2, 1.0, name="teams"),
            timeout_s=timeout_s,
            session=session,
        )

    def payload_for(self, evt: TriggerEvent) -> dict[str, Any]:
        return formatting.teams_card(evt)


class TelegramTransport(WebhookTransport):
    """Bot API sendMessage to one chat; plain text body."""
    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str, *, timeout_s: float = MAX_TIMEOUT_S,
                 session=None, limiter: Optional[WindowRateLimiter] = None, tz_name: str = "UTC"):
        super().__init__(
            f"https://api.telegram.org/bot{bot_token}/sendMessage",
            limiter=limiter or WindowRateLimiter(20, 60.0, name="telegram"),
            timeout_s=timeout_s,
            session=session,
        )
        self.chat_id = chat_id
        self.tz_name = tz_name

    def payload_for(self, evt: TriggerEvent) -> dict[str, Any]:
        return {"chat_id": self.chat_id, "text": formatting.alert_text(evt, self.tz_name)}


# --------- console ----------

class ConsoleTransport:
    name = "console"

    def __init__(self, format_fn: Optional[Callable[[TriggerEvent], str]] = None):
        self._format_fn = format_fn or formatting.alert_text

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def send_alert(self, evt: TriggerEvent) -> None:
        print(self._format_fn(evt), flush=True)


async def _maybe_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return await resp.text()
    except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError):
        return "<no body>"
