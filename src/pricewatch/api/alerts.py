"""
Alerts API

Endpoints:
    GET    /api/alerts              → caller's alerts
    POST   /api/alerts              → create alert (monitored at once if enabled)
    GET    /api/alerts/symbols      → symbols currently watched
    POST   /api/alerts/webhook      → database change event (push reconciliation)
    PUT    /api/alerts/{id}         → update alert
    DELETE /api/alerts/{id}         → delete alert
    POST   /api/alerts/{id}/test    → send a synthetic notification for one alert
"""
from __future__ import annotations

import json
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from pricewatch.alerts.changes import parse_change_event, verify_signature
from pricewatch.alerts.models import Alert, TriggerEvent
from pricewatch.api.app import Services
from pricewatch.api.deps import get_services, require_user
from pricewatch.api.schemas import CreateAlertRequest, UpdateAlertRequest

log = structlog.get_logger("api.alerts")

router = APIRouter(prefix="/alerts", tags=["Alerts"])

SIGNATURE_HEADERS = ("x-webhook-signature", "x-supabase-signature")
TEST_VOLUME = 123456


async def _owned_alert(svc: Services, alert_id: str, user_id: str) -> Alert:
    alert = await svc.store.get_alert(alert_id)
    if alert is None or alert.user_id != user_id:
        # someone else's alert looks the same as a missing one
        raise HTTPException(404, "alert not found")
    return alert


@router.get("")
async def list_alerts(user_id: str = Depends(require_user), svc: Services = Depends(get_services)):
    alerts = await svc.store.fetch_alerts_by_owner(user_id)
    return {"count": len(alerts), "alerts": [a.to_record() for a in alerts]}


@router.post("", status_code=201)
async def create_alert(
    body: CreateAlertRequest,
    user_id: str = Depends(require_user),
    svc: Services = Depends(get_services),
):
    alert = await svc.store.insert_alert({**body.model_dump(), "user_id": user_id})
    if alert.enabled:
        await svc.monitor.add_alert(alert)
    return {"message": "Alert created", "alert": alert.to_record()}


@router.get("/symbols")
async def watched_symbols(svc: Services = Depends(get_services)):
    symbols = svc.monitor.watched_symbols()
    return {"count": len(symbols), "symbols": symbols}


@router.post("/webhook")
async def change_event(request: Request, svc: Services = Depends(get_services)):
    """
    Change notification from the record store. Signed with HMAC-SHA256 over the
    raw body when a secret is configured.
    """
    client = request.client.host if request.client else "unknown"
    if not svc.webhook_limiter.allow(client):
        retry = max(1, int(svc.webhook_limiter.retry_after(client)))
        raise HTTPException(429, "too many requests", headers={"Retry-After": str(retry)})

    raw = await request.body()
    settings = svc.settings
    if settings.verify_webhook_signature and settings.webhook_secret:
        signature = next((request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None)
        if not verify_signature(raw, signature, settings.webhook_secret):
            raise HTTPException(401, "invalid webhook signature")

    try:
        payload = json.loads(raw)
    except ValueError:
        raise HTTPException(400, "body is not valid JSON") from None

    event = parse_change_event(payload)
    await svc.feed.apply(event)
    log.info("change_event_applied", kind=type(event).__name__, client=client)
    return {"received": True, "type": type(event).__name__.upper()}


@router.put("/{alert_id}")
async def update_alert(
    alert_id: str,
    body: UpdateAlertRequest,
    user_id: str = Depends(require_user),
    svc: Services = Depends(get_services),
):
    await _owned_alert(svc, alert_id, user_id)
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(400, "no fields to update")

    alert = await svc.store.update_alert(alert_id, fields)
    if alert.enabled:
        await svc.monitor.add_alert(alert)
    elif svc.monitor.get_alert(alert_id) is not None:
        await svc.monitor.remove_alert(alert_id)
    return {"message": "Alert updated", "alert": alert.to_record()}


@router.delete("/{alert_id}")
async def delete_alert(
    alert_id: str,
    user_id: str = Depends(require_user),
    svc: Services = Depends(get_services),
):
    await _owned_alert(svc, alert_id, user_id)
    await svc.store.delete_alert(alert_id)
    if svc.monitor.get_alert(alert_id) is not None:
        await svc.monitor.remove_alert(alert_id)
    return {"message": "Alert deleted", "id": alert_id}


@router.post("/{alert_id}/test")
async def test_alert(
    alert_id: str,
    user_id: str = Depends(require_user),
    svc: Services = Depends(get_services),
):
    """Synthetic trigger straight to the dispatcher; no cooldown, nothing persisted."""
    alert = await _owned_alert(svc, alert_id, user_id)
    price = alert.target_value - 1 if alert.direction == "below" else alert.target_value + 1
    evt = TriggerEvent.for_alert(
        alert,
        price,
        datetime.now(timezone.utc),
        volume=TEST_VOLUME,
        alert_type=f"{alert.alert_type or 'Price Alert'} (TEST)",
    )
    results = await svc.dispatcher.notify(evt)
    log.info("test_alert_sent", alert_id=alert_id, results=results)
    return {"message": "Test notification sent", "test_price": price, "results": results}
