from __future__ import annotations

import time
from dataclasses import dataclass, field

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from pricewatch.alerts.changes import ChangeEventError, ReconciliationFeed
from pricewatch.alerts.monitor import AlertMonitor
from pricewatch.alerts.store import AlertNotFound, AlertStore
from pricewatch.config import Settings
from pricewatch.notify.dispatcher import NotificationDispatcher
from pricewatch.notify.ratelimit import KeyedWindowLimiter

log = structlog.get_logger("api")

# inbound change events, per client address
WEBHOOK_MAX_CALLS = 50
WEBHOOK_WINDOW_S = 60.0


@dataclass(slots=True)
class Services:
    """Everything the routes touch; built once in main (or a test) and stored on app.state."""
    settings: Settings
    store: AlertStore
    monitor: AlertMonitor
    dispatcher: NotificationDispatcher
    feed: ReconciliationFeed
    started_at: float = field(default_factory=time.monotonic)
    webhook_limiter: KeyedWindowLimiter = field(
        default_factory=lambda: KeyedWindowLimiter(WEBHOOK_MAX_CALLS, WEBHOOK_WINDOW_S)
    )

    def uptime_s(self) -> float:
        return time.monotonic() - self.started_at


def create_app(services: Services, lifespan=None) -> FastAPI:
    from pricewatch.api.alerts import router as alerts_router
    from pricewatch.api.status import router as status_router

    app = FastAPI(
        title="Price Alert Monitor",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None if services.settings.is_production else "/docs",
    )
    app.state.services = services

    app.include_router(alerts_router, prefix="/api")
    app.include_router(status_router, prefix="/api")

    @app.get("/health")
    async def health():
        conn = services.monitor.stream.status()
        healthy = services.monitor.running and conn.get("connected", False)
        return {
            "status": "healthy" if healthy else "degraded",
            "monitor_running": services.monitor.running,
            "connection": conn.get("state"),
            "uptime_s": round(services.uptime_s(), 2),
        }

    _install_error_handlers(app, production=services.settings.is_production)
    return app


def _error(status: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message, "status": status, **extra})


def _install_error_handlers(app: FastAPI, *, production: bool) -> None:
    @app.exception_handler(HTTPException)
    async def _http(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail, "status": exc.status_code},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(p) for p in e.get("loc", ())[1:]), "message": e.get("msg")}
            for e in exc.errors()
        ]
        return _error(400, "validation failed", details=details)

    @app.exception_handler(AlertNotFound)
    async def _not_found(request: Request, exc: AlertNotFound):
        return _error(404, "alert not found", alert_id=exc.alert_id)

    @app.exception_handler(ChangeEventError)
    async def _bad_event(request: Request, exc: ChangeEventError):
        return _error(400, str(exc))

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        log.error("request_failed", method=request.method, path=request.url.path, err=str(exc), exc_info=exc)
        return _error(500, "internal server error" if production else str(exc))
