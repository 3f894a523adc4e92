from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from alerts import Alert as MonitorAlert
from dependencies import get_current_profile, get_monitor, require_admin
from integrity import CorrectionRecord, IntegrityFinding, generate_integrity_report
from models import Alert, Correction, Finding, IntegrityReport, MonitorConfigUpdate, MonitorStatus
from monitoring import MonitorScheduler

router = APIRouter()


def _finding_to_schema(f: IntegrityFinding) -> Finding:
    return Finding(
        equipment_id=f.equipment_id,
        name=f.name,
        total_quantity=f.total_quantity,
        available_quantity=f.available_quantity,
        outstanding=f.outstanding,
        mismatch=f.mismatch,
        category=f.category.value,
        message=f.message,
    )


def _correction_to_schema(c: CorrectionRecord) -> Correction:
    return Correction(
        equipment_id=c.equipment_id,
        name=c.name,
        previous_available=c.previous_available,
        new_available=c.new_available,
        corrected_at=c.corrected_at,
    )


def _alert_to_schema(a: MonitorAlert) -> Alert:
    return Alert(
        id=a.id,
        category=a.category.value,
        severity=a.severity.value,
        title=a.title,
        message=a.message,
        equipment_id=a.equipment_id,
        equipment_name=a.equipment_name,
        created_at=a.created_at,
        resolved=a.resolved,
    )


# -----------------------
# API
# -----------------------
@router.get("/integrity/check", response_model=list[Finding], dependencies=[Depends(require_admin)])
def check_api(monitor: MonitorScheduler = Depends(get_monitor)):
    return [_finding_to_schema(f) for f in monitor.checker.check()]


@router.post("/integrity/correct", response_model=list[Correction], dependencies=[Depends(require_admin)])
def correct_api(monitor: MonitorScheduler = Depends(get_monitor)):
    return [_correction_to_schema(c) for c in monitor.corrector.correct()]


@router.get("/integrity/report", response_model=IntegrityReport, dependencies=[Depends(require_admin)])
def report_api(
    auto_correct: bool = False,
    monitor: MonitorScheduler = Depends(get_monitor),
):
    report = generate_integrity_report(
        monitor.checker,
        monitor.corrector,
        auto_correct=auto_correct,
        clock=monitor.clock,
    )
    corrections = report.get("corrections")
    return IntegrityReport(
        timestamp=report["timestamp"],
        total_equipment=report["total_equipment"],
        inconsistent_equipment=report["inconsistent_equipment"],
        findings=[_finding_to_schema(f) for f in report["findings"]],
        corrections=[_correction_to_schema(c) for c in corrections] if corrections is not None else None,
    )


@router.get("/alerts", response_model=list[Alert], dependencies=[Depends(require_admin)])
def list_alerts_api(
    active_only: bool = True,
    monitor: MonitorScheduler = Depends(get_monitor),
):
    items = monitor.alerts.list_active() if active_only else monitor.alerts.list_all()
    return [_alert_to_schema(a) for a in items]


@router.post("/alerts/{alert_id}/resolve", dependencies=[Depends(require_admin)])
def resolve_alert_api(
    alert_id: str,
    monitor: MonitorScheduler = Depends(get_monitor),
):
    return {"resolved": monitor.alerts.resolve(alert_id)}


@router.get("/monitor", response_model=MonitorStatus, dependencies=[Depends(require_admin)])
def monitor_status_api(monitor: MonitorScheduler = Depends(get_monitor)):
    return MonitorStatus(**monitor.status())


@router.post("/monitor/start", response_model=MonitorStatus, dependencies=[Depends(require_admin)])
def monitor_start_api(monitor: MonitorScheduler = Depends(get_monitor)):
    monitor.start()
    return MonitorStatus(**monitor.status())


@router.post("/monitor/stop", response_model=MonitorStatus, dependencies=[Depends(require_admin)])
def monitor_stop_api(monitor: MonitorScheduler = Depends(get_monitor)):
    monitor.stop()
    return MonitorStatus(**monitor.status())


@router.post("/monitor/tick", response_model=list[Alert], dependencies=[Depends(require_admin)])
def monitor_tick_api(monitor: MonitorScheduler = Depends(get_monitor)):
    return [_alert_to_schema(a) for a in monitor.tick()]


@router.patch("/monitor/config", response_model=MonitorStatus, dependencies=[Depends(require_admin)])
def monitor_config_api(
    body: MonitorConfigUpdate,
    monitor: MonitorScheduler = Depends(get_monitor),
):
    monitor.update_config(**body.model_dump(exclude_unset=True))
    return MonitorStatus(**monitor.status())


# -----------------------
# UI: /ui/integrity
# -----------------------
@router.get("/ui/integrity", response_class=HTMLResponse)
def integrity_ui(
    request: Request,
    show_all: bool = False,
    monitor: MonitorScheduler = Depends(get_monitor),
):
    findings = monitor.checker.check()
    alerts = monitor.alerts.list_all() if show_all else monitor.alerts.list_active()

    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "integrity.html",
        {
            "profile": get_current_profile(request),
            "findings": findings,
            "inconsistencies": [f for f in findings if f.mismatch],
            "alerts": alerts,
            "severity_counts": monitor.alerts.counts_by_severity(),
            "status": monitor.status(),
            "show_all": show_all,
        },
    )


@router.post("/ui/integrity/check")
def integrity_check_ui(monitor: MonitorScheduler = Depends(get_monitor)):
    monitor.tick()
    return RedirectResponse(url="/ui/integrity", status_code=303)


@router.post("/ui/integrity/correct")
def integrity_correct_ui(monitor: MonitorScheduler = Depends(get_monitor)):
    monitor.corrector.correct()
    return RedirectResponse(url="/ui/integrity", status_code=303)


@router.post("/ui/integrity/alerts/{alert_id}/resolve")
def resolve_alert_ui(alert_id: str, monitor: MonitorScheduler = Depends(get_monitor)):
    monitor.alerts.resolve(alert_id)
    return RedirectResponse(url="/ui/integrity", status_code=303)


@router.post("/ui/integrity/monitor")
def monitor_settings_ui(
    action: str = Form("save"),
    interval_minutes: Optional[int] = Form(None),
    notify_admins: Optional[str] = Form(None),
    auto_correct: Optional[str] = Form(None),
    monitor: MonitorScheduler = Depends(get_monitor),
):
    if action == "start":
        monitor.start()
    elif action == "stop":
        monitor.stop()
    else:
        monitor.update_config(
            interval_minutes=interval_minutes if interval_minutes and interval_minutes > 0 else None,
            notify_admins=notify_admins == "on",
            auto_correct=auto_correct == "on",
        )
    return RedirectResponse(url="/ui/integrity", status_code=303)
