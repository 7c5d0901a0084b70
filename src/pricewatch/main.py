# src/pricewatch/main.py
import asyncio
import sys
from contextlib import asynccontextmanager

import structlog
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from redis.asyncio import Redis

from pricewatch.alerts.changes import ReconciliationFeed
from pricewatch.alerts.monitor import AlertMonitor, MonitorConfig
from pricewatch.api.app import Services, create_app
from pricewatch.config import ConfigError, Settings, settings_from_env
from pricewatch.ingest.tick_stream import TickStream, TickStreamConfig
from pricewatch.notify.dispatcher import NotificationDispatcher
from pricewatch.notify.ops import OpsReporter
from pricewatch.notify.transports import (
    ConsoleTransport,
    DiscordTransport,
    TeamsTransport,
    TelegramTransport,
)
from pricewatch.utils.logging import configure_logging
from storage.redis_alerts import RedisAlertStore

log = structlog.get_logger("main")

EXIT_STARTUP_FAILED = 1
EXIT_BAD_CONFIG = 2


def build_transports(settings: Settings) -> list:
    """Discord always; Teams, Telegram and console when configured."""
    timeout = settings.notify_timeout_s
    transports = [DiscordTransport(settings.discord_webhook_url, timeout_s=timeout)]
    if settings.teams_webhook_url:
        transports.append(TeamsTransport(settings.teams_webhook_url, timeout_s=timeout))
    if settings.telegram_enabled:
        transports.append(
            TelegramTransport(settings.telegram_bot_token, settings.telegram_chat_id, timeout_s=timeout)
        )
    if settings.console_notifications:
        transports.append(ConsoleTransport())
    return transports


def build_ops(settings: Settings) -> OpsReporter:
    if not settings.discord_debug_webhook_url:
        return OpsReporter(None)
    return OpsReporter(DiscordTransport(settings.discord_debug_webhook_url, timeout_s=settings.notify_timeout_s))


def build_app(settings: Settings) -> FastAPI:
    """Wire every component; startup and shutdown run in the app lifespan."""
    redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    store = RedisAlertStore(redis_client)

    ops = build_ops(settings)
    dispatcher = NotificationDispatcher(build_transports(settings))
    stream = TickStream(
        TickStreamConfig(
            stream_url=settings.finnhub_ws_url,
            api_key=settings.finnhub_api_key,
            reconnect_delay_s=settings.ws_reconnect_delay_s,
            max_reconnect_attempts=settings.ws_reconnect_attempts,
        ),
        ops=ops,
    )
    monitor = AlertMonitor(
        store,
        stream,
        dispatcher,
        MonitorConfig(
            cooldown_s=settings.alert_cooldown_s,
            refresh_interval_s=settings.refresh_interval_s,
        ),
        ops=ops,
    )

    async def shutdown() -> None:
        # each step independent of the others
        for step, fn in (
            ("monitor_stop", monitor.stop),
            ("monitor_drain", monitor.drain),
            ("stream_close", stream.close),
            ("dispatcher_stop", dispatcher.stop),
            ("ops_stop", ops.stop),
            ("redis_close", redis_client.aclose),
        ):
            try:
                await fn()
            except Exception as e:
                log.warning("shutdown_step_failed", step=step, err=str(e))
        log.info("pricewatch_stopped")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await ops.start()
        await dispatcher.start()
        try:
            # connect first so the initial subscribe frames go straight out
            await stream.connect()
            await monitor.start()
        except Exception as e:
            log.error("startup_failed", err=str(e))
            await ops.error("startup", str(e))
            await shutdown()
            raise
        await ops.status({**monitor.status().to_dict(), "event": "started"})
        log.info("pricewatch_started", host=settings.host, port=settings.port, transports=dispatcher.names)
        try:
            yield
        finally:
            log.info("pricewatch_stopping")
            await ops.status({**monitor.status().to_dict(), "event": "stopping"})
            await shutdown()

    services = Services(
        settings=settings,
        store=store,
        monitor=monitor,
        dispatcher=dispatcher,
        feed=ReconciliationFeed(monitor),
    )
    return create_app(services, lifespan=lifespan)


async def main(settings: Settings) -> int:
    server = uvicorn.Server(
        uvicorn.Config(
            build_app(settings),
            host=settings.host,
            port=settings.port,
            lifespan="on",
            log_config=None,
            access_log=False,
        )
    )
    await server.serve()
    # lifespan startup failure leaves the server unstarted
    return 0 if server.started else EXIT_STARTUP_FAILED


def run() -> None:
    load_dotenv()
    try:
        settings = settings_from_env()
    except ConfigError as e:
        configure_logging()
        log.error("config_invalid", problems=e.problems)
        sys.exit(EXIT_BAD_CONFIG)

    configure_logging(settings.log_level, json_output=settings.log_json)
    log.info("config_loaded", **settings.summary())
    try:
        code = asyncio.run(main(settings))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
