from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog

from pricewatch.alerts.models import PriceChange
from pricewatch.utils.time import epoch_s

log = structlog.get_logger("rules")

def should_trigger(
    direction: str,
    price: float,
    target: float,
    previous_price: Optional[float] = None,
    *,
    alert_id: Optional[str] = None,
) -> bool:
    """
    Threshold semantics per direction:
      - "above"  → price >= target
      - "below"  → price <= target
      - "either" → previous and current price sit on opposite sides of target
                   (>= counts as the upper side); needs a previous price
    Unknown directions never fire.
    """
    if direction == "above":
        return price >= target
    if direction == "below":
        return price <= target
    if direction == "either":
        if previous_price is None:
            return False
        crossed = (previous_price >= target) != (price >= target)
        if crossed:
            log.debug("either_crossed", alert_id=alert_id, target=target, prev=previous_price, price=price)
        return crossed
    log.warning("unknown_alert_direction", alert_id=alert_id, direction=direction)
    return False

def in_cooldown(last_triggered_at: Optional[datetime], now_s: float, cooldown_s: float) -> bool:
    """True while fewer than cooldown_s seconds have passed since the last trigger."""
    if last_triggered_at is None or cooldown_s <= 0:
        return False
    return (now_s - epoch_s(last_triggered_at)) < cooldown_s

def price_change(price: float, previous_price: Optional[float]) -> Optional[PriceChange]:
    """Signed move vs the previous sample, rounded to cents / 0.01%. None without a usable previous price."""
    if not previous_price:
        return None
    change = price - previous_price
    return PriceChange(
        change=round(change, 2),
        change_pct=round(change / previous_price * 100.0, 2),
        previous_price=previous_price,
    )
