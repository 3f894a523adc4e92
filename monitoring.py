"""Periodic integrity monitor.

``MonitorScheduler`` owns one interval job on an APScheduler scheduler. Each
tick runs the integrity check, turns mismatches into alerts, optionally
corrects them, and scans for low availability and overdue loans.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

import crud
from alerts import Alert, AlertCategory, AlertStore
from config import config
from integrity import (
    SEVERITY_BY_CATEGORY,
    Corrector,
    FindingCategory,
    IntegrityChecker,
    IntegrityFinding,
    InventoryStore,
    Severity,
)

logger = logging.getLogger("app.monitoring")

JOB_ID = "integrity-monitor"


@dataclass(frozen=True)
class MonitorConfig:
    enabled: bool = True
    interval_minutes: int = 30
    notify_admins: bool = True
    auto_correct: bool = False
    low_availability_percent: float = 10.0

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        return cls(
            enabled=config.MONITOR_ENABLED,
            interval_minutes=config.MONITOR_INTERVAL_MINUTES,
            notify_admins=config.MONITOR_NOTIFY_ADMINS,
            auto_correct=config.MONITOR_AUTO_CORRECT,
            low_availability_percent=config.LOW_AVAILABILITY_PERCENT,
        )


class MonitorScheduler:
    STOPPED = "stopped"
    RUNNING = "running"

    def __init__(
        self,
        store: InventoryStore,
        alerts: AlertStore,
        *,
        monitor_config: Optional[MonitorConfig] = None,
        checker: Optional[IntegrityChecker] = None,
        corrector: Optional[Corrector] = None,
        scheduler=None,
        clock: Callable[[], datetime] = crud.utcnow,
    ):
        self.store = store
        self.alerts = alerts
        self.config = monitor_config or MonitorConfig()
        self.clock = clock
        self.checker = checker or IntegrityChecker(store)
        self.corrector = corrector or Corrector(store, self.checker, clock=clock)
        self.scheduler = scheduler if scheduler is not None else BackgroundScheduler(daemon=True)

        self.state = self.STOPPED
        self.last_tick_at: Optional[datetime] = None
        self._job = None
        self._state_lock = threading.Lock()
        self._tick_lock = threading.Lock()

    # ---------- lifecycle ----------
    def start(self) -> bool:
        """Run one check now and arm the interval job. No-op when already running."""
        with self._state_lock:
            if not self.config.enabled or self.state == self.RUNNING:
                return False
            self.state = self.RUNNING
            self._job = self.scheduler.add_job(
                self.tick,
                "interval",
                minutes=self.config.interval_minutes,
                id=JOB_ID,
                replace_existing=True,
            )
            if not getattr(self.scheduler, "running", True):
                self.scheduler.start()

        logger.info("integrity monitor started interval_minutes=%s", self.config.interval_minutes)
        self.tick()
        return True

    def stop(self) -> bool:
        with self._state_lock:
            if self.state != self.RUNNING:
                return False
            if self._job is not None:
                self._job.remove()
                self._job = None
            self.state = self.STOPPED
        logger.info("integrity monitor stopped")
        return True

    def shutdown(self) -> None:
        self.stop()
        if getattr(self.scheduler, "running", False):
            self.scheduler.shutdown(wait=False)

    def update_config(self, **changes) -> MonitorConfig:
        changes = {k: v for k, v in changes.items() if v is not None}
        old = self.config
        self.config = replace(self.config, **changes)

        if self.state == self.RUNNING:
            if not self.config.enabled:
                self.stop()
            elif self.config.interval_minutes != old.interval_minutes:
                self.stop()
                self.start()
        return self.config

    def status(self) -> dict:
        return {
            "state": self.state,
            "enabled": self.config.enabled,
            "interval_minutes": self.config.interval_minutes,
            "notify_admins": self.config.notify_admins,
            "auto_correct": self.config.auto_correct,
            "last_tick_at": self.last_tick_at,
            "active_alerts": len(self.alerts.list_active()),
        }

    # ---------- tick ----------
    def tick(self) -> list[Alert]:
        """One check-and-alert cycle. Returns the alerts it raised.

        Overlapping calls (timer vs. manual) are skipped, not queued.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("integrity check already in progress; tick skipped")
            return []

        raised: list[Alert] = []
        try:
            self.last_tick_at = self.clock()
            findings = self.checker.check()

            for finding in findings:
                if not finding.mismatch:
                    continue
                severity = SEVERITY_BY_CATEGORY[finding.category]
                alert = self._raise(
                    category=AlertCategory.INCONSISTENCY,
                    severity=severity,
                    title="Data inconsistency detected",
                    message=finding.message,
                    equipment_id=finding.equipment_id,
                    equipment_name=finding.name,
                    finding_category=finding.category,
                )
                raised.append(alert)
                if self.config.auto_correct and severity is not Severity.CRITICAL:
                    raised.extend(self._auto_correct(finding, alert))

            raised.extend(self._scan_warnings())
        except Exception as exc:
            logger.exception("integrity monitor tick failed")
            raised.append(
                self._raise(
                    category=AlertCategory.ERROR,
                    severity=SEVERITY_BY_CATEGORY[FindingCategory.MONITOR_ERROR],
                    title="Monitoring system error",
                    message=f"Error during integrity check: {exc}",
                    finding_category=FindingCategory.MONITOR_ERROR,
                )
            )
        finally:
            self._tick_lock.release()
        return raised

    def _auto_correct(self, finding: IntegrityFinding, alert: Alert) -> list[Alert]:
        raised: list[Alert] = []
        for record in self.corrector.correct([finding]):
            raised.append(
                self._raise(
                    category=AlertCategory.WARNING,
                    severity=SEVERITY_BY_CATEGORY[FindingCategory.AUTO_CORRECTION],
                    title="Auto-correction applied",
                    message=(
                        f'Corrected available quantity of "{record.name}": '
                        f"{record.previous_available} -> {record.new_available}"
                    ),
                    equipment_id=record.equipment_id,
                    equipment_name=record.name,
                    finding_category=FindingCategory.AUTO_CORRECTION,
                )
            )

            # 書き戻した後の値で再チェック
            try:
                snapshot = self.store.get_equipment(record.equipment_id)
                recheck = self.checker.check_one(snapshot) if snapshot else None
            except Exception:
                logger.exception("could not re-check equipment_id=%s after correction", record.equipment_id)
                continue
            if recheck is not None and not recheck.mismatch:
                self.alerts.resolve(alert.id)
            else:
                logger.warning("equipment_id=%s still inconsistent after correction", record.equipment_id)
        return raised

    def _scan_warnings(self) -> list[Alert]:
        raised: list[Alert] = []
        for item in self.store.low_availability(self.config.low_availability_percent):
            raised.append(
                self._raise(
                    category=AlertCategory.WARNING,
                    severity=SEVERITY_BY_CATEGORY[FindingCategory.LOW_AVAILABILITY],
                    title="Low equipment availability",
                    message=f'Equipment "{item.name}" has only {item.percentage:.1f}% availability',
                    equipment_id=item.equipment_id,
                    equipment_name=item.name,
                    finding_category=FindingCategory.LOW_AVAILABILITY,
                )
            )

        overdue = self.store.overdue_loans(self.clock())
        if overdue:
            raised.append(
                self._raise(
                    category=AlertCategory.WARNING,
                    severity=SEVERITY_BY_CATEGORY[FindingCategory.OVERDUE_LOANS],
                    title="Overdue loans detected",
                    message=f"{len(overdue)} overdue loan(s) need attention",
                    finding_category=FindingCategory.OVERDUE_LOANS,
                )
            )
        return raised

    def _raise(self, **fields) -> Alert:
        alert = self.alerts.create(Alert(created_at=self.clock(), **fields))
        if self.config.notify_admins:
            try:
                sent = self.store.notify_admins(
                    f"[{alert.severity.value.upper()}] {alert.title}",
                    alert.message,
                )
                logger.info("notified %s administrator(s)", sent)
            except Exception:
                logger.exception("could not notify administrators about alert %s", alert.id)
        return alert
