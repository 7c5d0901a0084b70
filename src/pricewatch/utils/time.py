from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional

# --- wall-clock helpers ---

def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()

def utc_dt(ts: float | int) -> datetime:
    """Epoch seconds -> timezone-aware UTC datetime."""
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)

def epoch_s(dt: datetime) -> float:
    """Convert aware datetime -> epoch seconds."""
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return dt.timestamp()

def iso_utc(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string with explicit UTC offset, or None."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat()

def parse_ts(value) -> Optional[datetime]:
    """
    Best-effort timestamp normalization for stored records.
    Accepts aware/naive datetimes, ISO strings (with "Z"), and epoch seconds/millis.
    Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts > 1e11:  # ms → s
            ts = ts / 1e3
        return utc_dt(ts)
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

def format_uptime(seconds: float) -> str:
    """1d 2h 3m 4s style; "0s" for sub-second uptimes."""
    s = int(seconds)
    days, rem = divmod(s, 86_400)
    hours, rem = divmod(rem, 3_600)
    minutes, secs = divmod(rem, 60)
    parts = [f"{v}{u}" for v, u in ((days, "d"), (hours, "h"), (minutes, "m"), (secs, "s")) if v > 0]
    return " ".join(parts) or "0s"
