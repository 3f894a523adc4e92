from datetime import datetime, timezone

import pytest

from alerts import AlertCategory, AlertStore
from integrity import FindingCategory, LowAvailability, OverdueLoan, Severity
from monitoring import JOB_ID, MonitorConfig, MonitorScheduler

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeJob:
    def __init__(self, scheduler, job_id):
        self.scheduler = scheduler
        self.id = job_id

    def remove(self):
        self.scheduler.removed.append(self.id)


class FakeScheduler:
    def __init__(self):
        self.jobs = []
        self.removed = []
        self.running = False
        self.shutdown_called = False

    def add_job(self, func, trigger, **kwargs):
        self.jobs.append((func, trigger, kwargs))
        return FakeJob(self, kwargs.get("id"))

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False
        self.shutdown_called = True


@pytest.fixture()
def scheduler():
    return FakeScheduler()


@pytest.fixture()
def make_monitor(fake_store, scheduler):
    def _make(**cfg):
        return MonitorScheduler(
            fake_store,
            AlertStore(),
            monitor_config=MonitorConfig(**cfg),
            scheduler=scheduler,
            clock=lambda: FIXED_NOW,
        )

    return _make


# ---------- lifecycle ----------
def test_start_arms_one_interval_job_and_checks_immediately(make_monitor, scheduler, fake_store):
    fake_store.add("a", "Scale", 10, 10, loans=[(3, 0)])
    monitor = make_monitor(interval_minutes=15)

    assert monitor.start() is True
    assert monitor.state == MonitorScheduler.RUNNING
    assert scheduler.running is True
    assert len(scheduler.jobs) == 1
    _, trigger, kwargs = scheduler.jobs[0]
    assert trigger == "interval"
    assert kwargs["minutes"] == 15
    assert kwargs["id"] == JOB_ID

    # 起動時に1回チェックする
    assert monitor.last_tick_at == FIXED_NOW
    assert len(monitor.alerts.list_active()) == 1


def test_start_twice_is_a_noop(make_monitor, scheduler):
    monitor = make_monitor()
    assert monitor.start() is True
    assert monitor.start() is False
    assert len(scheduler.jobs) == 1


def test_start_when_disabled_does_nothing(make_monitor, scheduler):
    monitor = make_monitor(enabled=False)
    assert monitor.start() is False
    assert monitor.state == MonitorScheduler.STOPPED
    assert scheduler.jobs == []


def test_stop_removes_job(make_monitor, scheduler):
    monitor = make_monitor()
    monitor.start()

    assert monitor.stop() is True
    assert monitor.state == MonitorScheduler.STOPPED
    assert scheduler.removed == [JOB_ID]
    assert monitor.stop() is False


def test_shutdown_stops_scheduler(make_monitor, scheduler):
    monitor = make_monitor()
    monitor.start()
    monitor.shutdown()

    assert monitor.state == MonitorScheduler.STOPPED
    assert scheduler.shutdown_called is True


def test_interval_change_restarts_running_monitor(make_monitor, scheduler):
    monitor = make_monitor(interval_minutes=30)
    monitor.start()

    monitor.update_config(interval_minutes=5)

    assert monitor.state == MonitorScheduler.RUNNING
    assert scheduler.removed == [JOB_ID]
    assert [kw["minutes"] for _, _, kw in scheduler.jobs] == [30, 5]


def test_disabling_running_monitor_stops_it(make_monitor):
    monitor = make_monitor()
    monitor.start()

    monitor.update_config(enabled=False)

    assert monitor.state == MonitorScheduler.STOPPED
    assert monitor.status()["enabled"] is False


def test_update_config_ignores_none_values(make_monitor):
    monitor = make_monitor(notify_admins=True)
    cfg = monitor.update_config(notify_admins=None, auto_correct=True)
    assert cfg.notify_admins is True
    assert cfg.auto_correct is True


def test_status_reports_config_and_alerts(make_monitor, fake_store):
    fake_store.add("a", "Scale", 10, 10, loans=[(3, 0)])
    monitor = make_monitor(interval_minutes=45)
    monitor.tick()

    status = monitor.status()
    assert status["state"] == "stopped"
    assert status["interval_minutes"] == 45
    assert status["last_tick_at"] == FIXED_NOW
    assert status["active_alerts"] == 1


# ---------- tick ----------
def test_tick_raises_one_alert_per_mismatch(make_monitor, fake_store):
    fake_store.add("a", "Scale", 10, 10, loans=[(3, 0)])
    fake_store.add("b", "Beaker", 5, 5)
    monitor = make_monitor(notify_admins=False)

    raised = monitor.tick()

    assert len(raised) == 1
    alert = raised[0]
    assert alert.category is AlertCategory.INCONSISTENCY
    assert alert.severity is Severity.HIGH
    assert alert.title == "Data inconsistency detected"
    assert alert.equipment_id == "a"
    assert alert.equipment_name == "Scale"
    assert alert.finding_category is FindingCategory.COUNT_MISMATCH
    assert alert.created_at == FIXED_NOW


def test_tick_with_consistent_inventory_raises_nothing(make_monitor, fake_store):
    fake_store.add("a", "Scale", 10, 7, loans=[(3, 0)])
    monitor = make_monitor()
    assert monitor.tick() == []
    assert fake_store.notifications == []


def test_outstanding_above_total_is_critical(make_monitor, fake_store):
    fake_store.add("a", "Scale", 2, 0, loans=[(5, 0)])
    monitor = make_monitor()

    alert = monitor.tick()[0]
    assert alert.severity is Severity.CRITICAL
    assert alert.finding_category is FindingCategory.OUTSTANDING_EXCEEDS_TOTAL


def test_tick_failure_becomes_error_alert(make_monitor, fake_store):
    def boom():
        raise RuntimeError("database is locked")

    fake_store.list_equipment = boom
    monitor = make_monitor(notify_admins=False)

    raised = monitor.tick()

    assert len(raised) == 1
    alert = raised[0]
    assert alert.category is AlertCategory.ERROR
    assert alert.severity is Severity.HIGH
    assert alert.title == "Monitoring system error"
    assert "database is locked" in alert.message
    # 次の tick も動く
    fake_store.list_equipment = lambda: []
    assert monitor.tick() == []


def test_auto_correct_fixes_non_critical_mismatch(make_monitor, fake_store):
    fake_store.add("a", "Scale", 10, 10, loans=[(3, 0)])
    monitor = make_monitor(auto_correct=True)

    monitor.tick()

    assert fake_store.equipment["a"].available_quantity == 7
    assert len(fake_store.corrections) == 1


def test_auto_correct_raises_low_alert_and_resolves_after_recheck(make_monitor, fake_store):
    fake_store.add("a", "Scale", 10, 10, loans=[(3, 0)])
    monitor = make_monitor(auto_correct=True)

    inconsistency, applied = monitor.tick()

    assert inconsistency.title == "Data inconsistency detected"
    assert inconsistency.resolved is True
    assert applied.category is AlertCategory.WARNING
    assert applied.severity is Severity.LOW
    assert applied.title == "Auto-correction applied"
    assert applied.finding_category is FindingCategory.AUTO_CORRECTION
    assert "10 -> 7" in applied.message
    assert monitor.alerts.list_active() == [applied]


def test_inconsistency_alert_stays_active_when_recheck_still_fails(make_monitor, fake_store):
    fake_store.add("a", "Scale", 10, 10, loans=[(3, 0)])
    monitor = make_monitor(auto_correct=True)
    # 書き戻し直後に別の貸出が入った
    original_update = fake_store.update_available

    def update_then_lend(equipment_id, **kwargs):
        written = original_update(equipment_id, **kwargs)
        fake_store.loans[equipment_id].append((1, 0))
        return written

    fake_store.update_available = update_then_lend

    inconsistency, applied = monitor.tick()

    assert applied.title == "Auto-correction applied"
    assert inconsistency.resolved is False


def test_auto_correct_leaves_critical_mismatch_alone(make_monitor, fake_store):
    fake_store.add("a", "Scale", 10, 12, loans=[])
    monitor = make_monitor(auto_correct=True)

    alert = monitor.tick()[0]

    assert alert.severity is Severity.CRITICAL
    assert fake_store.equipment["a"].available_quantity == 12
    assert fake_store.corrections == []


def test_without_auto_correct_nothing_is_written(make_monitor, fake_store):
    fake_store.add("a", "Scale", 10, 10, loans=[(3, 0)])
    monitor = make_monitor(auto_correct=False)

    monitor.tick()

    assert fake_store.equipment["a"].available_quantity == 10


def test_admins_are_notified_with_severity_prefix(make_monitor, fake_store):
    fake_store.add("a", "Scale", 10, 10, loans=[(3, 0)])
    monitor = make_monitor(notify_admins=True)

    monitor.tick()

    assert len(fake_store.notifications) == 1
    subject, content = fake_store.notifications[0]
    assert subject == "[HIGH] Data inconsistency detected"
    assert "Scale" in content


def test_notification_failure_does_not_drop_alert(make_monitor, fake_store):
    fake_store.add("a", "Scale", 10, 10, loans=[(3, 0)])
    fake_store.fail_notify = True
    monitor = make_monitor(notify_admins=True)

    raised = monitor.tick()

    assert len(raised) == 1
    assert len(monitor.alerts.list_active()) == 1


def test_low_availability_and_overdue_warnings(make_monitor, fake_store):
    fake_store.low = [LowAvailability("a", "Scale", 0, 10, 0.0)]
    fake_store.overdue = [
        OverdueLoan("l1", "a", "u1", 2),
        OverdueLoan("l2", "a", "u2", 1),
    ]
    monitor = make_monitor(notify_admins=False)

    raised = monitor.tick()

    assert [a.finding_category for a in raised] == [
        FindingCategory.LOW_AVAILABILITY,
        FindingCategory.OVERDUE_LOANS,
    ]
    low, overdue = raised
    assert low.category is AlertCategory.WARNING
    assert low.severity is Severity.MEDIUM
    assert low.message == 'Equipment "Scale" has only 0.0% availability'
    assert overdue.severity is Severity.HIGH
    assert overdue.message == "2 overdue loan(s) need attention"


def test_overlapping_tick_is_skipped(make_monitor, fake_store):
    fake_store.add("a", "Scale", 10, 10, loans=[(3, 0)])
    monitor = make_monitor()

    monitor._tick_lock.acquire()
    try:
        assert monitor.tick() == []
    finally:
        monitor._tick_lock.release()
    assert len(monitor.alerts) == 0


def test_monitor_config_from_env(monkeypatch):
    import config as config_module

    monkeypatch.setattr(config_module.config, "MONITOR_INTERVAL_MINUTES", 12)
    monkeypatch.setattr(config_module.config, "MONITOR_AUTO_CORRECT", True)

    cfg = MonitorConfig.from_env()
    assert cfg.interval_minutes == 12
    assert cfg.auto_correct is True
