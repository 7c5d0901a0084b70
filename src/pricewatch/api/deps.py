from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, Request

from pricewatch.api.app import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity from the x-user-id header; authentication happens upstream."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(400, "x-user-id header is required")
    return x_user_id.strip()
