import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

import crud
from access import SESSION_USER_KEY
from dependencies import get_current_profile, get_db
from filter_helpers import blank_to_none
from models import ProfileIn

logger = logging.getLogger("app")

router = APIRouter()


@router.get("/login", response_class=HTMLResponse)
def login_ui(request: Request):
    templates = request.app.state.templates
    return templates.TemplateResponse(request, "login.html", {"error": None})


@router.post("/login", response_class=HTMLResponse)
def login_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    db: Session = Depends(get_db),
):
    profile = crud.authenticate(db, email, password)
    if not profile:
        logger.info("login failed email=%s", email)
        templates = request.app.state.templates
        return templates.TemplateResponse(
            request,
            "login.html",
            {"error": "Invalid email or password"},
            status_code=401,
        )

    request.session[SESSION_USER_KEY] = profile.id
    return RedirectResponse(url="/ui/dashboard", status_code=303)


@router.get("/register", response_class=HTMLResponse)
def register_ui(request: Request):
    templates = request.app.state.templates
    return templates.TemplateResponse(request, "register.html", {"error": None})


@router.post("/register", response_class=HTMLResponse)
def register_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    first_name: str = Form(...),
    last_name: str = Form(...),
    student_id: str = Form(...),
    career: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    body = ProfileIn(
        email=email,
        password=password,
        first_name=first_name,
        last_name=last_name,
        student_id=student_id,
        career=blank_to_none(career),
        phone=blank_to_none(phone),
    )
    try:
        profile = crud.register_profile(db, body)
    except crud.OperationRejected as exc:
        templates = request.app.state.templates
        return templates.TemplateResponse(
            request,
            "register.html",
            {"error": str(exc)},
            status_code=400,
        )

    request.session[SESSION_USER_KEY] = profile.id
    return RedirectResponse(url="/ui/dashboard", status_code=303)


@router.get("/logout")
def logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/login", status_code=303)


@router.get("/unauthorized", response_class=HTMLResponse)
def unauthorized_ui(request: Request):
    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "unauthorized.html",
        {"profile": get_current_profile(request)},
        status_code=403,
    )


@router.get("/ui/dashboard", response_class=HTMLResponse)
def dashboard_ui(request: Request, db: Session = Depends(get_db)):
    profile = get_current_profile(request)
    user_id = profile.id if profile else None

    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "dashboard.html",
        {
            "profile": profile,
            "stats": crud.dashboard_stats(db, user_id),
            "recent_loans": crud.list_loans(db, limit=5),
            "recent_notifications": crud.list_notifications(db, user_id, unread_only=True)[:5] if user_id else [],
        },
    )


@router.get("/ui/profile", response_class=HTMLResponse)
def profile_ui(request: Request, db: Session = Depends(get_db)):
    profile = get_current_profile(request)
    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "profile.html",
        {
            "profile": profile,
            "groups": crud.group_user_loans(db, profile.id) if profile else [],
        },
    )
