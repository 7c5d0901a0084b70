from __future__ import annotations

def linear_backoff(attempt: int, base: float) -> float:
    """Reconnect delay that grows with the attempt count: attempt × base (attempt >= 1)."""
    return max(1, int(attempt)) * float(base)
