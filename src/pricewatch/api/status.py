"""
Status API

Endpoints:
    GET  /api/status           → monitor + connection snapshot
    POST /api/status/refresh   → reload alerts from the store now
    GET  /api/status/prices    → latest price per watched symbol
    GET  /api/status/metrics   → uptime, memory, counts
"""
from __future__ import annotations

import resource
import sys

from fastapi import APIRouter, Depends

from pricewatch.api.app import Services
from pricewatch.api.deps import get_services
from pricewatch.utils.time import format_uptime

router = APIRouter(prefix="/status", tags=["Status"])


@router.get("")
async def status(svc: Services = Depends(get_services)):
    snap = svc.monitor.status().to_dict()
    snap["transports"] = svc.dispatcher.names
    snap["uptime"] = format_uptime(svc.uptime_s())
    return snap


@router.post("/refresh")
async def refresh(svc: Services = Depends(get_services)):
    await svc.monitor.reload()
    st = svc.monitor.status()
    return {"message": "Alerts refreshed", "total_alerts": st.total_alerts, "symbols": st.symbols}


@router.get("/prices")
async def prices(svc: Services = Depends(get_services)):
    st = svc.monitor.status()
    return {"count": len(st.prices), "prices": {s: p.to_dict() for s, p in st.prices.items()}}


@router.get("/metrics")
async def metrics(svc: Services = Depends(get_services)):
    uptime = svc.uptime_s()
    st = svc.monitor.status()
    return {
        "uptime_s": round(uptime, 2),
        "uptime": format_uptime(uptime),
        "memory": {"max_rss_mb": _max_rss_mb()},
        "alerts": {"total": st.total_alerts, "symbols": len(st.symbols)},
        "connection": {
            "state": st.connection.get("state"),
            "subscribed": len(st.connection.get("subscribed", ())),
            "reconnect_attempts": st.connection.get("reconnect_attempts", 0),
        },
        "transports": svc.dispatcher.names,
    }


def _max_rss_mb() -> float:
    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # kilobytes on Linux, bytes on macOS
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return round(rss / divisor, 1)
