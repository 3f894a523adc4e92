from collections.abc import Generator
from typing import Optional

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from access import BECARIO_ROLES
from db import SessionLocal
from models import Profile


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_profile(request: Request) -> Optional[Profile]:
    # access.enforce_access がセットする
    return getattr(request.state, "profile", None)


def require_profile(request: Request) -> Profile:
    profile = get_current_profile(request)
    if profile is None:
        raise HTTPException(status_code=401, detail="login required")
    if not profile.is_active:
        raise HTTPException(status_code=403, detail="account is inactive")
    return profile


def require_becario(request: Request) -> Profile:
    profile = require_profile(request)
    if profile.role not in BECARIO_ROLES:
        raise HTTPException(status_code=403, detail="becario or admin role required")
    return profile


def require_admin(request: Request) -> Profile:
    profile = require_profile(request)
    if profile.role != "admin":
        raise HTTPException(status_code=403, detail="admin role required")
    return profile


def get_monitor(request: Request):
    return request.app.state.monitor
