import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

import crud
from dependencies import get_current_profile, get_db
from filter_helpers import blank_to_none, normalize_active, normalize_role
from models import ProfileUpdate

logger = logging.getLogger("app")

router = APIRouter()


@router.get("/ui/users", response_class=HTMLResponse)
def users_ui(
    request: Request,
    q: Optional[str] = None,
    role: Optional[str] = None,
    active: Optional[str] = None,
    db: Session = Depends(get_db),
):
    users = crud.list_profiles(
        db,
        q=blank_to_none(q),
        role=normalize_role(role),
        active=normalize_active(active),
    )
    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "users.html",
        {
            "users": users,
            "profile": get_current_profile(request),
            "q": q or "",
            "role": role or "",
            "active": active or "",
        },
    )


@router.get("/ui/users/{user_id}/edit", response_class=HTMLResponse)
def edit_user_ui(request: Request, user_id: str, db: Session = Depends(get_db)):
    user = crud.get_profile(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="user not found")

    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "user_edit.html",
        {"user": user, "profile": get_current_profile(request)},
    )


@router.post("/ui/users/{user_id}/edit")
def update_user_ui(
    user_id: str,
    first_name: str = Form(...),
    last_name: str = Form(...),
    student_id: str = Form(...),
    career: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    rfid: Optional[str] = Form(None),
    role: str = Form("normal"),
    is_active: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    edit_url = f"/ui/users/{user_id}/edit"
    if not first_name.strip() or not last_name.strip() or not student_id.strip():
        return RedirectResponse(url=edit_url, status_code=303)

    body = ProfileUpdate(
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        student_id=student_id.strip(),
        career=blank_to_none(career),
        phone=blank_to_none(phone),
        rfid=blank_to_none(rfid),
        role=normalize_role(role) or "normal",  # type: ignore[arg-type]
        is_active=is_active == "on",
    )
    try:
        crud.update_profile(db, user_id, body)
    except crud.OperationRejected as exc:
        logger.warning("user update rejected user_id=%s: %s", user_id, exc)
        return RedirectResponse(url=edit_url, status_code=303)
    return RedirectResponse(url="/ui/users", status_code=303)


@router.post("/ui/users/{user_id}/toggle-active")
def toggle_user_active_ui(
    user_id: str,
    db: Session = Depends(get_db),
):
    crud.toggle_profile_active(db, user_id)
    return RedirectResponse(url="/ui/users", status_code=303)
