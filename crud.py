from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from typing import Optional
from uuid import uuid4

from sqlalchemy import select, delete, func, or_, and_, update
from sqlalchemy.orm import Session

from config import config
from models import (
    Equipment,
    EquipmentIn,
    EquipmentUpdate,
    Loan,
    LoanGroup,
    LoanIn,
    Movement,
    Notification,
    Profile,
    ProfileIn,
    ProfileUpdate,
    ValidationResult,
)
from orm import EquipmentORM, LoanORM, MovementORM, NotificationORM, ProfileORM
from security import check_password, hash_password

logger = logging.getLogger("app.crud")

OPEN_LOAN_STATUSES = ("active", "overdue")

ALLOWED_SORTS = {
    "name": EquipmentORM.name,
    "serial_number": EquipmentORM.serial_number,
    "available_quantity": EquipmentORM.available_quantity,
    "status": EquipmentORM.status,
    "location": EquipmentORM.location,
    "updated_at": EquipmentORM.updated_at,
}


class OperationRejected(ValueError):
    """The request is well formed but breaks an inventory rule."""


class ConcurrentUpdateError(RuntimeError):
    """The equipment row changed between read and conditional write."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_naive_utc(value: datetime) -> datetime:
    # SQLite の DateTime は tzinfo を保持しない
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

def persist(db: Session, *, commit: bool) -> None:
    if commit:
        db.commit()
    else:
        db.flush()

def _equipment_to_schema(e: EquipmentORM) -> Equipment:
    return Equipment(
        id=e.id,
        name=e.name,
        serial_number=e.serial_number,
        description=e.description,
        brand=e.brand,
        model=e.model,
        location=e.location,
        total_quantity=e.total_quantity,
        available_quantity=e.available_quantity,
        status=e.status,  # type: ignore
        is_active=e.is_active,
        version=e.version,
        created_at=e.created_at,
        updated_at=e.updated_at,
    )

def _loan_to_schema(l: LoanORM) -> Loan:
    return Loan(
        id=l.id,
        user_id=l.user_id,
        equipment_id=l.equipment_id,
        quantity_lent=l.quantity_lent,
        quantity_returned=l.quantity_returned,
        status=l.status,  # type: ignore
        loaned_at=l.loaned_at,
        due_at=l.due_at,
        returned_at=l.returned_at,
        notes=l.notes,
        lent_by=l.lent_by,
        returned_by=l.returned_by,
    )

def _profile_to_schema(p: ProfileORM) -> Profile:
    return Profile(
        id=p.id,
        email=p.email,
        first_name=p.first_name,
        last_name=p.last_name,
        student_id=p.student_id,
        career=p.career,
        phone=p.phone,
        rfid=p.rfid,
        role=p.role,  # type: ignore
        is_active=p.is_active,
        created_at=p.created_at,
        updated_at=p.updated_at,
    )

def _movement_to_schema(m: MovementORM) -> Movement:
    return Movement(
        id=m.id,
        equipment_id=m.equipment_id,
        movement_type=m.movement_type,
        quantity=m.quantity,
        previous_quantity=m.previous_quantity,
        new_quantity=m.new_quantity,
        loan_id=m.loan_id,
        performed_by=m.performed_by,
        notes=m.notes,
        created_at=m.created_at,
    )

def _notification_to_schema(n: NotificationORM) -> Notification:
    return Notification(
        id=n.id,
        recipient_id=n.recipient_id,
        kind=n.kind,  # type: ignore
        subject=n.subject,
        content=n.content,
        sent_by=n.sent_by,
        sent_at=n.sent_at,
        state=n.state,  # type: ignore
    )


# ---------- Equipment ----------
def serial_number_exists(db: Session, serial_number: str, exclude_equipment_id: Optional[str] = None) -> bool:
    stmt = select(EquipmentORM).where(EquipmentORM.serial_number == serial_number)
    if exclude_equipment_id:
        stmt = stmt.where(EquipmentORM.id != exclude_equipment_id)
    return db.execute(stmt).first() is not None


def get_equipment(db: Session, equipment_id: str) -> Optional[Equipment]:
    row = db.get(EquipmentORM, equipment_id)
    return _equipment_to_schema(row) if row else None


def create_equipment(db: Session, body: EquipmentIn, *, commit: bool = True) -> Equipment:
    now = utcnow()
    e = EquipmentORM(
        id=str(uuid4()),
        name=body.name,
        serial_number=body.serial_number,
        description=body.description,
        brand=body.brand,
        model=body.model,
        location=body.location,
        total_quantity=body.total_quantity,
        available_quantity=body.total_quantity,
        status="available",
        is_active=True,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(e)
    persist(db, commit=commit)
    if commit:
        db.refresh(e)
    return _equipment_to_schema(e)


def set_available_if_version(
    db: Session,
    equipment_id: str,
    *,
    expected_version: int,
    new_available: int,
    total_quantity: Optional[int] = None,
) -> bool:
    """Conditional write of available_quantity keyed on the row version.

    Returns False when another writer bumped the version first.
    """
    values = {
        "available_quantity": new_available,
        "version": expected_version + 1,
        "updated_at": utcnow(),
    }
    if total_quantity is not None:
        values["total_quantity"] = total_quantity
    result = db.execute(
        update(EquipmentORM)
        .where(EquipmentORM.id == equipment_id, EquipmentORM.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def record_movement(
    db: Session,
    *,
    equipment_id: str,
    movement_type: str,
    previous_quantity: int,
    new_quantity: int,
    performed_by: str,
    loan_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> None:
    db.add(
        MovementORM(
            id=str(uuid4()),
            equipment_id=equipment_id,
            movement_type=movement_type,
            quantity=new_quantity - previous_quantity,
            previous_quantity=previous_quantity,
            new_quantity=new_quantity,
            loan_id=loan_id,
            performed_by=performed_by,
            notes=notes,
            created_at=utcnow(),
        )
    )


def _shift_available(
    db: Session,
    e: EquipmentORM,
    delta: int,
    *,
    movement_type: str,
    performed_by: str,
    loan_id: Optional[str] = None,
    notes: Optional[str] = None,
    total_quantity: Optional[int] = None,
) -> None:
    previous = e.available_quantity
    new_available = previous + delta
    if not set_available_if_version(
        db,
        e.id,
        expected_version=e.version,
        new_available=new_available,
        total_quantity=total_quantity,
    ):
        db.rollback()
        raise ConcurrentUpdateError(f"equipment {e.id} was modified concurrently")
    # 次の読み取りで新しい version を取り直す
    db.expire(e, ["available_quantity", "total_quantity", "version", "updated_at"])
    record_movement(
        db,
        equipment_id=e.id,
        movement_type=movement_type,
        previous_quantity=previous,
        new_quantity=new_available,
        performed_by=performed_by,
        loan_id=loan_id,
        notes=notes,
    )


def update_equipment(
    db: Session,
    equipment_id: str,
    body: EquipmentUpdate,
    *,
    performed_by: str = "system",
    commit: bool = True,
) -> Optional[Equipment]:
    e = db.get(EquipmentORM, equipment_id)
    if not e:
        return None

    data = body.model_dump(exclude_unset=True)
    new_total = data.pop("total_quantity", None)

    # total を変えたら available も同じ差分だけずらす
    if new_total is not None and new_total != e.total_quantity:
        delta = new_total - e.total_quantity
        if e.available_quantity + delta < 0:
            raise OperationRejected(
                f"Cannot reduce total to {new_total}: {e.total_quantity - e.available_quantity} unit(s) are on loan"
            )
        _shift_available(
            db,
            e,
            delta,
            movement_type="adjustment",
            performed_by=performed_by,
            notes=f"total {e.total_quantity} -> {new_total}",
            total_quantity=new_total,
        )

    for k, v in data.items():
        setattr(e, k, v)
    e.updated_at = utcnow()

    persist(db, commit=commit)
    if commit:
        db.refresh(e)
    return _equipment_to_schema(e)


def delete_equipment(db: Session, equipment_id: str, *, commit: bool = True) -> bool:
    e = db.get(EquipmentORM, equipment_id)
    if not e:
        return False

    # 貸出履歴は消さないので、履歴がある備品は削除不可
    used = db.execute(
        select(func.count()).select_from(LoanORM).where(LoanORM.equipment_id == equipment_id)
    ).scalar_one()
    if int(used) > 0:
        raise OperationRejected("Equipment has loan history; deactivate it instead")

    db.execute(delete(MovementORM).where(MovementORM.equipment_id == equipment_id))
    db.execute(delete(EquipmentORM).where(EquipmentORM.id == equipment_id))
    persist(db, commit=commit)
    return True


def build_equipment_query(q: str | None, status: str | None, only_available: bool = False):
    stmt = select(EquipmentORM)

    if q:
        like = f"%{q}%"
        stmt = stmt.where(
            or_(
                EquipmentORM.name.ilike(like),
                EquipmentORM.description.ilike(like),
                EquipmentORM.serial_number.ilike(like),
                EquipmentORM.brand.ilike(like),
                EquipmentORM.model.ilike(like),
            )
        )
    if status:
        stmt = stmt.where(EquipmentORM.status == status)

    if only_available:
        stmt = stmt.where(EquipmentORM.available_quantity > 0, EquipmentORM.is_active.is_(True))

    return stmt

def equipment_meta(
    db: Session,
    *,
    q: str | None,
    status: str | None,
    only_available: bool = False,
    limit: int,
    offset: int,
) -> dict:
    if limit < 1:
        limit = 1
    if limit > 500:
        limit = 500
    if offset < 0:
        offset = 0

    total = count_equipment_filtered(db, q=q, status=status, only_available=only_available)
    total_pages = max(1, (total + limit - 1) // limit)

    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "total_pages": total_pages,
    }

def count_equipment_filtered(db: Session, *, q: str | None, status: str | None, only_available: bool = False) -> int:
    stmt = build_equipment_query(q, status, only_available)
    count_stmt = select(func.count()).select_from(stmt.subquery())
    return int(db.execute(count_stmt).scalar_one())

def list_equipment_filtered(
    db: Session,
    *,
    q: str | None,
    status: str | None,
    only_available: bool = False,
    sort: str,
    order: str,
    limit: int,
    offset: int,
) -> list[Equipment]:
    stmt = build_equipment_query(q, status, only_available)

    col = ALLOWED_SORTS.get(sort, EquipmentORM.name)
    desc = (order or "").lower() == "desc"
    stmt = stmt.order_by(col.desc() if desc else col.asc())

    stmt = stmt.limit(limit).offset(offset)
    rows = db.execute(stmt).scalars().all()
    return [_equipment_to_schema(e) for e in rows]

def list_movements(db: Session, equipment_id: str, *, limit: int = 200) -> list[Movement]:
    stmt = (
        select(MovementORM)
        .where(MovementORM.equipment_id == equipment_id)
        .order_by(MovementORM.created_at.desc())
        .limit(limit)
    )
    return [_movement_to_schema(m) for m in db.execute(stmt).scalars().all()]

def bulk_import_equipment(db: Session, rows: list[dict[str, str]]) -> dict:
    """
    rows: [{"name": "...", "serial_number": "...", "total_quantity": "3", ...}]
    """
    created = 0
    skipped = 0
    errors: list[str] = []

    try:
        for idx, r in enumerate(rows, start=1):
            name = (r.get("name") or "").strip()
            serial_number = (r.get("serial_number") or "").strip()
            raw_total = (r.get("total_quantity") or "").strip() or "1"

            if not name or not serial_number:
                errors.append(f"row {idx}: name/serial_number is empty")
                continue

            try:
                total_quantity = int(raw_total)
            except ValueError:
                errors.append(f"row {idx}: total_quantity is not an integer")
                continue
            if total_quantity < 0:
                errors.append(f"row {idx}: total_quantity is negative")
                continue

            if serial_number_exists(db, serial_number):
                skipped += 1
                continue

            body = EquipmentIn(
                name=name,
                serial_number=serial_number,
                description=(r.get("description") or "").strip() or None,
                brand=(r.get("brand") or "").strip() or None,
                model=(r.get("model") or "").strip() or None,
                location=(r.get("location") or "").strip() or None,
                total_quantity=total_quantity,
            )
            create_equipment(db, body, commit=False)
            created += 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    return {"created": created, "skipped": skipped, "errors": errors}


# ---------- Profile ----------
def email_exists(db: Session, email: str) -> bool:
    return db.execute(select(ProfileORM.id).where(ProfileORM.email == email)).first() is not None

def student_id_exists(db: Session, student_id: str, exclude_profile_id: Optional[str] = None) -> bool:
    stmt = select(ProfileORM.id).where(ProfileORM.student_id == student_id)
    if exclude_profile_id:
        stmt = stmt.where(ProfileORM.id != exclude_profile_id)
    return db.execute(stmt).first() is not None


def register_profile(db: Session, body: ProfileIn, *, role: str = "normal", commit: bool = True) -> Profile:
    email = body.email.strip().lower()
    student_id = body.student_id.strip()
    if not email or not body.password or not body.first_name.strip() or not student_id:
        raise OperationRejected("email, password, first name and student id are required")
    if email_exists(db, email):
        raise OperationRejected("email is already registered")
    if student_id_exists(db, student_id):
        raise OperationRejected("student id is already registered")

    now = utcnow()
    p = ProfileORM(
        id=str(uuid4()),
        email=email,
        password_hash=hash_password(body.password),
        first_name=body.first_name.strip(),
        last_name=body.last_name.strip(),
        student_id=student_id,
        career=body.career,
        phone=body.phone,
        role=role,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(p)
    persist(db, commit=commit)
    if commit:
        db.refresh(p)
    return _profile_to_schema(p)


def authenticate(db: Session, email: str, password: str) -> Optional[Profile]:
    email = (email or "").strip().lower()
    p = db.execute(select(ProfileORM).where(ProfileORM.email == email)).scalar_one_or_none()
    if not p or not check_password(password, p.password_hash):
        return None
    return _profile_to_schema(p)


def get_profile(db: Session, profile_id: str) -> Optional[Profile]:
    row = db.get(ProfileORM, profile_id)
    return _profile_to_schema(row) if row else None


def list_profiles(
    db: Session,
    *,
    q: str | None = None,
    role: str | None = None,
    active: bool | None = None,
) -> list[Profile]:
    stmt = select(ProfileORM)
    if q:
        like = f"%{q}%"
        stmt = stmt.where(
            or_(
                ProfileORM.first_name.ilike(like),
                ProfileORM.last_name.ilike(like),
                ProfileORM.student_id.ilike(like),
                ProfileORM.email.ilike(like),
            )
        )
    if role:
        stmt = stmt.where(ProfileORM.role == role)
    if active is not None:
        stmt = stmt.where(ProfileORM.is_active.is_(active))
    stmt = stmt.order_by(ProfileORM.first_name.asc(), ProfileORM.last_name.asc())
    return [_profile_to_schema(p) for p in db.execute(stmt).scalars().all()]


def update_profile(db: Session, profile_id: str, body: ProfileUpdate, *, commit: bool = True) -> Optional[Profile]:
    p = db.get(ProfileORM, profile_id)
    if not p:
        return None

    data = body.model_dump(exclude_unset=True)
    if data.get("student_id") and student_id_exists(db, data["student_id"], exclude_profile_id=profile_id):
        raise OperationRejected("student id is already registered")

    for k, v in data.items():
        setattr(p, k, v)
    p.updated_at = utcnow()

    persist(db, commit=commit)
    if commit:
        db.refresh(p)
    return _profile_to_schema(p)


def toggle_profile_active(db: Session, profile_id: str, *, commit: bool = True) -> Optional[Profile]:
    p = db.get(ProfileORM, profile_id)
    if not p:
        return None
    p.is_active = not p.is_active
    p.updated_at = utcnow()
    persist(db, commit=commit)
    if commit:
        db.refresh(p)
    return _profile_to_schema(p)


def list_admin_ids(db: Session) -> list[str]:
    rows = db.execute(
        select(ProfileORM.id).where(ProfileORM.role == "admin", ProfileORM.is_active.is_(True))
    ).all()
    return [r[0] for r in rows]


# ---------- Loan ----------
def validate_loan_operation(db: Session, equipment_id: str, quantity: int) -> ValidationResult:
    e = db.get(EquipmentORM, equipment_id)
    if not e:
        return ValidationResult(is_valid=False, message=f"Equipment not found (id: {equipment_id})")

    if quantity <= 0:
        return ValidationResult(is_valid=False, message="Requested quantity must be greater than 0")

    if not e.is_active or e.status != "available":
        return ValidationResult(
            is_valid=False,
            message=f"Equipment is not available for loan (status: {e.status})",
            available=e.available_quantity,
        )

    if quantity > e.available_quantity:
        return ValidationResult(
            is_valid=False,
            message=(
                f"Not enough quantity available. Available: {e.available_quantity}, "
                f"requested: {quantity}"
            ),
            available=e.available_quantity,
        )

    return ValidationResult(is_valid=True, message="Operation is valid", available=e.available_quantity)


def create_loan(db: Session, body: LoanIn, *, now: Optional[datetime] = None, commit: bool = True) -> Loan:
    borrower = db.get(ProfileORM, body.user_id)
    if not borrower or not borrower.is_active:
        raise OperationRejected("Borrower not found or inactive")

    check = validate_loan_operation(db, body.equipment_id, body.quantity)
    if not check.is_valid:
        raise OperationRejected(check.message)

    now = as_naive_utc(now or utcnow())
    due_at = as_naive_utc(body.due_at) if body.due_at else now + timedelta(days=config.DEFAULT_LOAN_DAYS)

    loan = LoanORM(
        id=str(uuid4()),
        user_id=body.user_id,
        equipment_id=body.equipment_id,
        quantity_lent=body.quantity,
        quantity_returned=0,
        status="active",
        loaned_at=now,
        due_at=due_at,
        returned_at=None,
        notes=body.notes,
        lent_by=body.lent_by,
        created_at=now,
        updated_at=now,
    )
    db.add(loan)

    e = db.get(EquipmentORM, body.equipment_id)
    _shift_available(
        db,
        e,
        -body.quantity,
        movement_type="loan",
        performed_by=body.lent_by or "system",
        loan_id=loan.id,
    )

    persist(db, commit=commit)
    logger.info("loan created loan_id=%s equipment_id=%s quantity=%s", loan.id, loan.equipment_id, body.quantity)
    return _loan_to_schema(loan)


def get_loan(db: Session, loan_id: str) -> Optional[Loan]:
    row = db.get(LoanORM, loan_id)
    return _loan_to_schema(row) if row else None


def validate_return_operation(db: Session, loan_id: str, quantity: int) -> ValidationResult:
    loan = db.get(LoanORM, loan_id)
    if not loan:
        return ValidationResult(is_valid=False, message="Loan not found")

    pending = loan.quantity_lent - loan.quantity_returned

    if quantity <= 0:
        return ValidationResult(is_valid=False, message="Quantity to return must be greater than 0", pending=pending)

    if quantity > pending:
        return ValidationResult(
            is_valid=False,
            message=f"Cannot return more than was lent. Pending: {pending}, trying to return: {quantity}",
            pending=pending,
        )

    return ValidationResult(is_valid=True, message="Operation is valid", pending=pending)


def _apply_return(
    db: Session,
    loan: LoanORM,
    quantity: int,
    *,
    returned_by: Optional[str],
    notes: Optional[str],
    now: datetime,
) -> None:
    loan.quantity_returned += quantity
    loan.returned_by = returned_by
    if notes:
        loan.notes = notes
    if loan.quantity_returned >= loan.quantity_lent:
        loan.status = "returned"
        loan.returned_at = now
    loan.updated_at = now

    e = db.get(EquipmentORM, loan.equipment_id)
    _shift_available(
        db,
        e,
        quantity,
        movement_type="return",
        performed_by=returned_by or "system",
        loan_id=loan.id,
    )


def return_loan(
    db: Session,
    loan_id: str,
    quantity: int,
    *,
    returned_by: Optional[str] = None,
    notes: Optional[str] = None,
    commit: bool = True,
) -> Loan:
    check = validate_return_operation(db, loan_id, quantity)
    if not check.is_valid:
        raise OperationRejected(check.message)

    loan = db.get(LoanORM, loan_id)
    _apply_return(db, loan, quantity, returned_by=returned_by, notes=notes, now=as_naive_utc(utcnow()))
    persist(db, commit=commit)
    logger.info("loan returned loan_id=%s quantity=%s status=%s", loan.id, quantity, loan.status)
    return _loan_to_schema(loan)


def return_user_equipment(
    db: Session,
    user_id: str,
    equipment_id: str,
    quantity: int,
    *,
    returned_by: Optional[str] = None,
    commit: bool = True,
) -> list[Loan]:
    """Spread a return over the user's open loans of one equipment, oldest first."""
    if quantity <= 0:
        raise OperationRejected("Quantity to return must be greater than 0")

    loans = db.execute(
        select(LoanORM)
        .where(
            LoanORM.user_id == user_id,
            LoanORM.equipment_id == equipment_id,
            LoanORM.status.in_(OPEN_LOAN_STATUSES),
        )
        .order_by(LoanORM.loaned_at.asc())
    ).scalars().all()

    pending_total = sum(l.quantity_lent - l.quantity_returned for l in loans)
    if quantity > pending_total:
        raise OperationRejected(
            f"Cannot return more than was lent. Pending: {pending_total}, trying to return: {quantity}"
        )

    now = as_naive_utc(utcnow())
    remaining = quantity
    touched: list[LoanORM] = []
    for loan in loans:
        if remaining <= 0:
            break
        pending = loan.quantity_lent - loan.quantity_returned
        if pending <= 0:
            continue
        part = min(remaining, pending)
        _apply_return(db, loan, part, returned_by=returned_by, notes=None, now=now)
        touched.append(loan)
        remaining -= part

    persist(db, commit=commit)
    return [_loan_to_schema(l) for l in touched]


def list_loans(
    db: Session,
    *,
    user_id: str | None = None,
    equipment_id: str | None = None,
    status: str | None = None,
    limit: int = 500,
) -> list[Loan]:
    stmt = select(LoanORM)
    if user_id:
        stmt = stmt.where(LoanORM.user_id == user_id)
    if equipment_id:
        stmt = stmt.where(LoanORM.equipment_id == equipment_id)
    if status:
        stmt = stmt.where(LoanORM.status == status)
    stmt = stmt.order_by(LoanORM.loaned_at.desc()).limit(limit)
    return [_loan_to_schema(l) for l in db.execute(stmt).scalars().all()]


def group_user_loans(db: Session, user_id: str) -> list[LoanGroup]:
    rows = db.execute(
        select(LoanORM, EquipmentORM.name)
        .join(EquipmentORM, EquipmentORM.id == LoanORM.equipment_id)
        .where(LoanORM.user_id == user_id)
        .order_by(EquipmentORM.name.asc(), LoanORM.loaned_at.asc())
    ).all()

    groups: dict[str, LoanGroup] = {}
    for loan, equipment_name in rows:
        g = groups.get(loan.equipment_id)
        if g is None:
            g = LoanGroup(
                equipment_id=loan.equipment_id,
                equipment_name=equipment_name,
                loans=[],
                total_lent=0,
                total_returned=0,
                total_pending=0,
            )
            groups[loan.equipment_id] = g
        g.loans.append(_loan_to_schema(loan))
        g.total_lent += loan.quantity_lent
        g.total_returned += loan.quantity_returned
        g.total_pending += loan.quantity_lent - loan.quantity_returned
    return list(groups.values())


def mark_overdue_loans(db: Session, *, now: Optional[datetime] = None, commit: bool = True) -> int:
    now = as_naive_utc(now or utcnow())
    result = db.execute(
        update(LoanORM)
        .where(LoanORM.status == "active", LoanORM.due_at.is_not(None), LoanORM.due_at < now)
        .values(status="overdue", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    persist(db, commit=commit)
    if result.rowcount:
        logger.info("marked %s loan(s) overdue", result.rowcount)
    return int(result.rowcount or 0)


def overdue_condition(now: datetime):
    now = as_naive_utc(now)
    return or_(
        LoanORM.status == "overdue",
        and_(LoanORM.status == "active", LoanORM.due_at.is_not(None), LoanORM.due_at < now),
    )


# ---------- Notification ----------
def create_notification(
    db: Session,
    *,
    recipient_id: str,
    subject: str,
    content: str,
    kind: str = "general",
    sent_by: Optional[str] = None,
    commit: bool = True,
) -> Notification:
    n = NotificationORM(
        id=str(uuid4()),
        recipient_id=recipient_id,
        kind=kind,
        subject=subject,
        content=content,
        sent_by=sent_by,
        sent_at=as_naive_utc(utcnow()),
        state="sent",
    )
    db.add(n)
    persist(db, commit=commit)
    return _notification_to_schema(n)


def notify_admins(db: Session, *, subject: str, content: str, kind: str = "system") -> int:
    admin_ids = list_admin_ids(db)
    for admin_id in admin_ids:
        create_notification(db, recipient_id=admin_id, subject=subject, content=content, kind=kind, commit=False)
    db.commit()
    return len(admin_ids)


def list_notifications(db: Session, user_id: str, *, unread_only: bool = False) -> list[Notification]:
    stmt = select(NotificationORM).where(NotificationORM.recipient_id == user_id)
    if unread_only:
        stmt = stmt.where(NotificationORM.state != "read")
    stmt = stmt.order_by(NotificationORM.sent_at.desc())
    return [_notification_to_schema(n) for n in db.execute(stmt).scalars().all()]


def count_unread(db: Session, user_id: str) -> int:
    return int(
        db.execute(
            select(func.count())
            .select_from(NotificationORM)
            .where(NotificationORM.recipient_id == user_id, NotificationORM.state != "read")
        ).scalar_one()
    )


def mark_notification_read(db: Session, notification_id: str, user_id: str, *, commit: bool = True) -> bool:
    n = db.get(NotificationORM, notification_id)
    if not n or n.recipient_id != user_id:
        return False
    n.state = "read"
    persist(db, commit=commit)
    return True


def delete_notification(db: Session, notification_id: str, user_id: str, *, commit: bool = True) -> bool:
    result = db.execute(
        delete(NotificationORM).where(
            NotificationORM.id == notification_id,
            NotificationORM.recipient_id == user_id,
        )
    )
    persist(db, commit=commit)
    return result.rowcount > 0


# ---------- Dashboard ----------
def dashboard_stats(db: Session, user_id: Optional[str] = None, *, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()

    def _count(stmt) -> int:
        return int(db.execute(stmt).scalar_one())

    equipment_count = select(func.count()).select_from(EquipmentORM)
    loan_count = select(func.count()).select_from(LoanORM)
    stats = {
        "equipment_available": _count(
            equipment_count.where(EquipmentORM.available_quantity > 0, EquipmentORM.is_active.is_(True))
        ),
        "equipment_on_loan": _count(
            equipment_count.where(
                EquipmentORM.available_quantity < EquipmentORM.total_quantity,
                EquipmentORM.is_active.is_(True),
            )
        ),
        "equipment_inactive": _count(equipment_count.where(EquipmentORM.is_active.is_(False))),
        "active_loans": _count(loan_count.where(LoanORM.status == "active")),
        "overdue_loans": _count(loan_count.where(overdue_condition(now))),
        "unread_notifications": count_unread(db, user_id) if user_id else 0,
    }
    return stats
