from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Protocol

from pricewatch.alerts.models import Alert


class AlertNotFound(LookupError):
    def __init__(self, alert_id: str):
        super().__init__(f"alert {alert_id} not found")
        self.alert_id = alert_id


class AlertStore(Protocol):
    """
    System of record for alerts. The monitor only reads enabled alerts and
    writes last-triggered timestamps; the HTTP layer does the rest.
    """

    async def fetch_enabled_alerts(self) -> list[Alert]:
        """All enabled alerts, newest first."""
        ...

    async def fetch_alerts_by_owner(self, user_id: str) -> list[Alert]:
        ...

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        ...

    async def insert_alert(self, fields: Mapping[str, Any]) -> Alert:
        """Assigns id and created/updated timestamps."""
        ...

    async def update_alert(self, alert_id: str, fields: Mapping[str, Any]) -> Alert:
        """Raises AlertNotFound if absent."""
        ...

    async def delete_alert(self, alert_id: str) -> None:
        """Raises AlertNotFound if absent."""
        ...

    async def update_last_triggered(self, alert_id: str, ts: datetime) -> None:
        ...
