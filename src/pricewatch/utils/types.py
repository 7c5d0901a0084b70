from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

# ---- ingest-level primitives ----

@dataclass(slots=True)
class Tick:
    symbol: str
    px: float
    size: Optional[float]  # trade volume, absent on some feeds
    ts: float  # epoch seconds


def canonical_symbol(symbol: str) -> str:
    """Index key for a ticker: trimmed, upper-cased."""
    return str(symbol).strip().upper()


# ---- alerting domain ----

Direction = Literal["above", "below", "either"]
