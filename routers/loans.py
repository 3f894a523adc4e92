import logging
from datetime import datetime
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

import crud
from access import BECARIO_ROLES
from dependencies import get_current_profile, get_db, require_becario, require_profile
from filter_helpers import blank_to_none, normalize_loan_status
from models import Loan, LoanGroup, LoanIn, Profile, ReturnIn, ValidationResult

logger = logging.getLogger("app")

router = APIRouter()


def _loans_url(**params) -> str:
    params = {k: v for k, v in params.items() if v}
    return "/ui/loans" + (f"?{urlencode(params)}" if params else "")


def _ensure_can_view(profile: Profile, user_id: Optional[str]) -> None:
    # 一般ユーザーは自分の貸出だけ
    if profile.role not in BECARIO_ROLES and user_id != profile.id:
        raise HTTPException(status_code=403, detail="not allowed to view other users' loans")


# -----------------------
# API: /loans
# -----------------------
@router.get("/loans", response_model=list[Loan])
def list_loans_api(
    user_id: Optional[str] = None,
    equipment_id: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    profile: Profile = Depends(require_profile),
):
    user_id = blank_to_none(user_id)
    if profile.role not in BECARIO_ROLES:
        user_id = profile.id
    return crud.list_loans(
        db,
        user_id=user_id,
        equipment_id=blank_to_none(equipment_id),
        status=normalize_loan_status(status),
    )


@router.post("/loans", response_model=Loan, status_code=201)
def create_loan_api(
    body: LoanIn,
    db: Session = Depends(get_db),
    profile: Profile = Depends(require_becario),
):
    if body.lent_by is None:
        body = body.model_copy(update={"lent_by": profile.id})
    try:
        return crud.create_loan(db, body)
    except crud.OperationRejected as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except crud.ConcurrentUpdateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.get("/loans/validate", response_model=ValidationResult)
def validate_loan_api(
    equipment_id: str,
    quantity: int,
    db: Session = Depends(get_db),
):
    return crud.validate_loan_operation(db, equipment_id, quantity)


@router.post("/loans/mark-overdue", dependencies=[Depends(require_becario)])
def mark_overdue_api(db: Session = Depends(get_db)):
    return {"marked": crud.mark_overdue_loans(db)}


@router.get("/loans/{loan_id}", response_model=Loan)
def get_loan_api(
    loan_id: str,
    db: Session = Depends(get_db),
    profile: Profile = Depends(require_profile),
):
    loan = crud.get_loan(db, loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="loan not found")
    _ensure_can_view(profile, loan.user_id)
    return loan


@router.get("/loans/{loan_id}/validate-return", response_model=ValidationResult)
def validate_return_api(
    loan_id: str,
    quantity: int,
    db: Session = Depends(get_db),
):
    return crud.validate_return_operation(db, loan_id, quantity)


@router.post("/loans/{loan_id}/return", response_model=Loan)
def return_loan_api(
    loan_id: str,
    body: ReturnIn,
    db: Session = Depends(get_db),
    profile: Profile = Depends(require_becario),
):
    if not crud.get_loan(db, loan_id):
        raise HTTPException(status_code=404, detail="loan not found")
    try:
        return crud.return_loan(
            db, loan_id, body.quantity, returned_by=body.returned_by or profile.id, notes=body.notes
        )
    except crud.OperationRejected as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except crud.ConcurrentUpdateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.get("/users/{user_id}/loans/summary", response_model=list[LoanGroup])
def user_loan_summary_api(
    user_id: str,
    db: Session = Depends(get_db),
    profile: Profile = Depends(require_profile),
):
    _ensure_can_view(profile, user_id)
    if not crud.get_profile(db, user_id):
        raise HTTPException(status_code=404, detail="user not found")
    return crud.group_user_loans(db, user_id)


@router.post("/users/{user_id}/equipment/{equipment_id}/return", response_model=list[Loan])
def return_user_equipment_api(
    user_id: str,
    equipment_id: str,
    body: ReturnIn,
    db: Session = Depends(get_db),
    profile: Profile = Depends(require_becario),
):
    try:
        return crud.return_user_equipment(
            db, user_id, equipment_id, body.quantity, returned_by=body.returned_by or profile.id
        )
    except crud.OperationRejected as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except crud.ConcurrentUpdateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


# -----------------------
# UI: /ui/loans
# -----------------------
@router.get("/ui/loans", response_class=HTMLResponse)
def loans_ui(
    request: Request,
    q: Optional[str] = None,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
):
    crud.mark_overdue_loans(db)

    user_id = blank_to_none(user_id)
    selected_user = crud.get_profile(db, user_id) if user_id else None
    users = crud.list_profiles(db, q=q, active=True) if q else []

    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "loans.html",
        {
            "loans": crud.list_loans(db, user_id=user_id, status=normalize_loan_status(status)),
            "groups": crud.group_user_loans(db, user_id) if selected_user else [],
            "selected_user": selected_user,
            "users": users,
            "available_equipment": crud.list_equipment_filtered(
                db,
                q=None,
                status=None,
                only_available=True,
                sort="name",
                order="asc",
                limit=500,
                offset=0,
            ),
            "profile": get_current_profile(request),
            "q": q or "",
            "status": status or "",
            "error": error,
        },
    )


@router.post("/ui/loans")
def create_loan_ui(
    request: Request,
    user_id: str = Form(...),
    equipment_id: str = Form(...),
    quantity: int = Form(1),
    due_date: Optional[str] = Form(None),
    notes: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    profile = get_current_profile(request)
    try:
        due_at = datetime.fromisoformat(due_date) if due_date else None
    except ValueError:
        return RedirectResponse(
            url=_loans_url(user_id=user_id, error=f"Invalid due date: {due_date}"), status_code=303
        )
    body = LoanIn(
        user_id=user_id,
        equipment_id=equipment_id,
        quantity=quantity,
        due_at=due_at,
        notes=blank_to_none(notes),
        lent_by=profile.id if profile else None,
    )
    try:
        crud.create_loan(db, body)
    except (crud.OperationRejected, crud.ConcurrentUpdateError) as exc:
        return RedirectResponse(url=_loans_url(user_id=user_id, error=str(exc)), status_code=303)
    return RedirectResponse(url=_loans_url(user_id=user_id), status_code=303)


@router.post("/ui/loans/{loan_id}/return")
def return_loan_ui(
    request: Request,
    loan_id: str,
    quantity: int = Form(...),
    notes: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    profile = get_current_profile(request)
    loan = crud.get_loan(db, loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="loan not found")
    try:
        crud.return_loan(
            db,
            loan_id,
            quantity,
            returned_by=profile.id if profile else None,
            notes=blank_to_none(notes),
        )
    except (crud.OperationRejected, crud.ConcurrentUpdateError) as exc:
        return RedirectResponse(url=_loans_url(user_id=loan.user_id, error=str(exc)), status_code=303)
    return RedirectResponse(url=_loans_url(user_id=loan.user_id), status_code=303)


@router.post("/ui/loans/return-partial")
def return_partial_ui(
    request: Request,
    user_id: str = Form(...),
    equipment_id: str = Form(...),
    quantity: int = Form(...),
    db: Session = Depends(get_db),
):
    profile = get_current_profile(request)
    try:
        crud.return_user_equipment(
            db, user_id, equipment_id, quantity, returned_by=profile.id if profile else None
        )
    except (crud.OperationRejected, crud.ConcurrentUpdateError) as exc:
        return RedirectResponse(url=_loans_url(user_id=user_id, error=str(exc)), status_code=303)
    return RedirectResponse(url=_loans_url(user_id=user_id), status_code=303)
