"""In-process alert buffer for the integrity monitor."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from integrity import FindingCategory, Severity

logger = logging.getLogger("app.alerts")

DEFAULT_CAPACITY = 100


class AlertCategory(Enum):
    INCONSISTENCY = "inconsistency"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Alert:
    category: AlertCategory
    severity: Severity
    title: str
    message: str
    equipment_id: Optional[str] = None
    equipment_name: Optional[str] = None
    finding_category: Optional[FindingCategory] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resolved: bool = False


class AlertStore:
    """Newest-first list of alerts, truncated to ``capacity`` entries.

    Not durable and not shared between processes.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._alerts: list[Alert] = []
        self._lock = threading.Lock()

    def create(self, alert: Alert) -> Alert:
        with self._lock:
            self._alerts.insert(0, alert)
            del self._alerts[self.capacity:]
        logger.info("alert [%s] %s", alert.severity.value.upper(), alert.title)
        return alert

    def resolve(self, alert_id: str) -> bool:
        with self._lock:
            for alert in self._alerts:
                if alert.id == alert_id:
                    alert.resolved = True
                    logger.info("alert resolved: %s", alert.title)
                    return True
        return False

    def get(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            return next((a for a in self._alerts if a.id == alert_id), None)

    def list_active(self) -> list[Alert]:
        with self._lock:
            return [a for a in self._alerts if not a.resolved]

    def list_all(self) -> list[Alert]:
        with self._lock:
            return list(self._alerts)

    def counts_by_severity(self) -> dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        for alert in self.list_active():
            counts[alert.severity.value] += 1
        return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)
