"""Inventory reconciliation.

For every equipment row the stored ``available_quantity`` should equal
``total_quantity`` minus the units still out on open (active/overdue) loans.
``IntegrityChecker`` recomputes that figure per equipment and reports each
row as a finding; ``Corrector`` overwrites the stored value for mismatched
rows and appends a ``correction`` movement to the audit trail.

Both work against an inventory store (``SqlInventoryStore`` in production,
a fake in tests) so neither touches the ORM directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

import crud
from orm import EquipmentORM, LoanORM

logger = logging.getLogger("app.integrity")


class FindingCategory(Enum):
    """What kind of discrepancy a finding (or monitor alert) describes."""
    CONSISTENT = "consistent"
    COUNT_MISMATCH = "count_mismatch"
    AVAILABLE_EXCEEDS_TOTAL = "available_exceeds_total"
    OUTSTANDING_EXCEEDS_TOTAL = "outstanding_exceeds_total"
    NEGATIVE_AVAILABLE = "negative_available"
    AUTO_CORRECTION = "auto_correction"
    LOW_AVAILABILITY = "low_availability"
    OVERDUE_LOANS = "overdue_loans"
    MONITOR_ERROR = "monitor_error"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_BY_CATEGORY: dict[FindingCategory, Severity] = {
    FindingCategory.CONSISTENT: Severity.LOW,
    FindingCategory.COUNT_MISMATCH: Severity.HIGH,
    FindingCategory.AVAILABLE_EXCEEDS_TOTAL: Severity.CRITICAL,
    FindingCategory.OUTSTANDING_EXCEEDS_TOTAL: Severity.CRITICAL,
    FindingCategory.NEGATIVE_AVAILABLE: Severity.CRITICAL,
    FindingCategory.AUTO_CORRECTION: Severity.LOW,
    FindingCategory.LOW_AVAILABILITY: Severity.MEDIUM,
    FindingCategory.OVERDUE_LOANS: Severity.HIGH,
    FindingCategory.MONITOR_ERROR: Severity.HIGH,
}


@dataclass(frozen=True)
class EquipmentSnapshot:
    id: str
    name: str
    total_quantity: int
    available_quantity: int
    version: int


@dataclass(frozen=True)
class IntegrityFinding:
    equipment_id: str
    name: str
    total_quantity: int
    available_quantity: int
    outstanding: int
    mismatch: bool
    category: FindingCategory
    message: str
    version: int = 0

    @property
    def expected_available(self) -> int:
        return self.total_quantity - self.outstanding


@dataclass(frozen=True)
class CorrectionRecord:
    equipment_id: str
    name: str
    previous_available: int
    new_available: int
    corrected_at: datetime


@dataclass
class LowAvailability:
    equipment_id: str
    name: str
    available_quantity: int
    total_quantity: int
    percentage: float


@dataclass
class OverdueLoan:
    loan_id: str
    equipment_id: str
    user_id: str
    outstanding: int
    due_at: Optional[datetime] = None


class InventoryStore(Protocol):
    def list_equipment(self) -> list[EquipmentSnapshot]: ...

    def get_equipment(self, equipment_id: str) -> Optional[EquipmentSnapshot]: ...

    def open_loan_quantities(self, equipment_id: str) -> list[tuple[int, int]]: ...

    def update_available(self, equipment_id: str, *, expected_version: int, new_available: int) -> bool: ...

    def record_correction(self, record: CorrectionRecord) -> None: ...

    def notify_admins(self, subject: str, content: str) -> int: ...

    def low_availability(self, threshold_percent: float) -> list[LowAvailability]: ...

    def overdue_loans(self, now: datetime) -> list[OverdueLoan]: ...


def classify(available: int, outstanding: int, total: int) -> FindingCategory:
    if available + outstanding == total:
        return FindingCategory.CONSISTENT
    if available < 0:
        return FindingCategory.NEGATIVE_AVAILABLE
    if outstanding > total:
        return FindingCategory.OUTSTANDING_EXCEEDS_TOTAL
    if available > total:
        return FindingCategory.AVAILABLE_EXCEEDS_TOTAL
    return FindingCategory.COUNT_MISMATCH


def _finding_message(name: str, available: int, outstanding: int, total: int, mismatch: bool) -> str:
    if not mismatch:
        return "OK"
    return (
        f'Equipment "{name}": available ({available}) + outstanding ({outstanding}) '
        f"!= total ({total})"
    )


class IntegrityChecker:
    """Recompute outstanding units per equipment and compare with the stored count."""

    def __init__(self, store: InventoryStore):
        self.store = store

    def check_one(self, equipment: EquipmentSnapshot) -> IntegrityFinding:
        pairs = self.store.open_loan_quantities(equipment.id)
        outstanding = sum(lent - returned for lent, returned in pairs)
        category = classify(equipment.available_quantity, outstanding, equipment.total_quantity)
        mismatch = category is not FindingCategory.CONSISTENT
        return IntegrityFinding(
            equipment_id=equipment.id,
            name=equipment.name,
            total_quantity=equipment.total_quantity,
            available_quantity=equipment.available_quantity,
            outstanding=outstanding,
            mismatch=mismatch,
            category=category,
            message=_finding_message(
                equipment.name,
                equipment.available_quantity,
                outstanding,
                equipment.total_quantity,
                mismatch,
            ),
            version=equipment.version,
        )

    def check(self) -> list[IntegrityFinding]:
        findings: list[IntegrityFinding] = []
        for equipment in self.store.list_equipment():
            try:
                findings.append(self.check_one(equipment))
            except Exception:
                # 1件の失敗で全体を止めない
                logger.exception("could not load loans for equipment_id=%s; skipped", equipment.id)
                continue

        findings.sort(key=lambda f: (not f.mismatch, f.name.casefold()))
        mismatched = sum(1 for f in findings if f.mismatch)
        logger.info("integrity check: equipment=%s mismatched=%s", len(findings), mismatched)
        return findings


class Corrector:
    """Rewrite available_quantity for mismatched findings."""

    def __init__(
        self,
        store: InventoryStore,
        checker: Optional[IntegrityChecker] = None,
        clock: Callable[[], datetime] = crud.utcnow,
    ):
        self.store = store
        self.checker = checker or IntegrityChecker(store)
        self.clock = clock

    def correct(self, findings: Optional[list[IntegrityFinding]] = None) -> list[CorrectionRecord]:
        if findings is None:
            findings = self.checker.check()

        corrections: list[CorrectionRecord] = []
        for finding in findings:
            if not finding.mismatch:
                continue

            new_available = finding.expected_available
            if new_available < 0:
                logger.warning(
                    "refusing to write negative available=%s for equipment_id=%s (outstanding=%s total=%s)",
                    new_available,
                    finding.equipment_id,
                    finding.outstanding,
                    finding.total_quantity,
                )
                continue

            try:
                written = self.store.update_available(
                    finding.equipment_id,
                    expected_version=finding.version,
                    new_available=new_available,
                )
            except Exception:
                logger.exception("could not correct equipment_id=%s; skipped", finding.equipment_id)
                continue

            if not written:
                logger.warning(
                    "equipment_id=%s changed since it was checked; correction skipped",
                    finding.equipment_id,
                )
                continue

            record = CorrectionRecord(
                equipment_id=finding.equipment_id,
                name=finding.name,
                previous_available=finding.available_quantity,
                new_available=new_available,
                corrected_at=self.clock(),
            )
            try:
                self.store.record_correction(record)
            except Exception:
                logger.exception("could not record correction for equipment_id=%s", finding.equipment_id)

            logger.info(
                "corrected equipment_id=%s available %s -> %s",
                record.equipment_id,
                record.previous_available,
                record.new_available,
            )
            corrections.append(record)

        if not corrections:
            logger.info("no inconsistencies corrected")
        return corrections


def generate_integrity_report(
    checker: IntegrityChecker,
    corrector: Optional[Corrector] = None,
    *,
    auto_correct: bool = False,
    clock: Callable[[], datetime] = crud.utcnow,
) -> dict:
    findings = checker.check()
    inconsistent = [f for f in findings if f.mismatch]
    report = {
        "timestamp": clock(),
        "total_equipment": len(findings),
        "inconsistent_equipment": len(inconsistent),
        "findings": findings,
    }
    if inconsistent and auto_correct and corrector is not None:
        logger.warning("found %s inconsistencies; correcting", len(inconsistent))
        report["corrections"] = corrector.correct(inconsistent)
    return report


def _snapshot(e: EquipmentORM) -> EquipmentSnapshot:
    return EquipmentSnapshot(
        id=e.id,
        name=e.name,
        total_quantity=e.total_quantity,
        available_quantity=e.available_quantity,
        version=e.version,
    )


class SqlInventoryStore:
    """InventoryStore over the SQLAlchemy session factory, one short session per call."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def list_equipment(self) -> list[EquipmentSnapshot]:
        with self.session_factory() as db:
            rows = db.execute(select(EquipmentORM)).scalars().all()
            return [_snapshot(e) for e in rows]

    def get_equipment(self, equipment_id: str) -> Optional[EquipmentSnapshot]:
        with self.session_factory() as db:
            e = db.get(EquipmentORM, equipment_id)
            return _snapshot(e) if e else None

    def open_loan_quantities(self, equipment_id: str) -> list[tuple[int, int]]:
        with self.session_factory() as db:
            rows = db.execute(
                select(LoanORM.quantity_lent, LoanORM.quantity_returned).where(
                    LoanORM.equipment_id == equipment_id,
                    LoanORM.status.in_(crud.OPEN_LOAN_STATUSES),
                )
            ).all()
            return [(r[0], r[1]) for r in rows]

    def update_available(self, equipment_id: str, *, expected_version: int, new_available: int) -> bool:
        with self.session_factory() as db:
            written = crud.set_available_if_version(
                db,
                equipment_id,
                expected_version=expected_version,
                new_available=new_available,
            )
            db.commit()
            return written

    def record_correction(self, record: CorrectionRecord) -> None:
        with self.session_factory() as db:
            crud.record_movement(
                db,
                equipment_id=record.equipment_id,
                movement_type="correction",
                previous_quantity=record.previous_available,
                new_quantity=record.new_available,
                performed_by="system",
                notes="automatic inconsistency correction",
            )
            db.commit()

    def notify_admins(self, subject: str, content: str) -> int:
        with self.session_factory() as db:
            return crud.notify_admins(db, subject=subject, content=content, kind="system")

    def low_availability(self, threshold_percent: float) -> list[LowAvailability]:
        with self.session_factory() as db:
            outstanding = (
                select(func.coalesce(func.sum(LoanORM.quantity_lent - LoanORM.quantity_returned), 0))
                .where(
                    LoanORM.equipment_id == EquipmentORM.id,
                    LoanORM.status.in_(crud.OPEN_LOAN_STATUSES),
                )
                .scalar_subquery()
            )
            rows = db.execute(
                select(EquipmentORM, outstanding).where(
                    EquipmentORM.total_quantity > 0,
                    EquipmentORM.is_active.is_(True),
                )
            ).all()

            result: list[LowAvailability] = []
            for e, out in rows:
                percentage = e.available_quantity * 100.0 / e.total_quantity
                if percentage < threshold_percent and int(out or 0) > 0:
                    result.append(
                        LowAvailability(
                            equipment_id=e.id,
                            name=e.name,
                            available_quantity=e.available_quantity,
                            total_quantity=e.total_quantity,
                            percentage=percentage,
                        )
                    )
            return result

    def overdue_loans(self, now: datetime) -> list[OverdueLoan]:
        with self.session_factory() as db:
            rows = db.execute(
                select(LoanORM).where(crud.overdue_condition(now)).order_by(LoanORM.due_at.asc())
            ).scalars().all()
            return [
                OverdueLoan(
                    loan_id=l.id,
                    equipment_id=l.equipment_id,
                    user_id=l.user_id,
                    outstanding=l.quantity_lent - l.quantity_returned,
                    due_at=l.due_at,
                )
                for l in rows
            ]
