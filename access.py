import logging
import re
from typing import Optional

from fastapi import Request
from fastapi.responses import RedirectResponse

import crud
from models import Profile

logger = logging.getLogger("app.access")

PROTECTED_PREFIXES = (
    "/ui/dashboard",
    "/ui/equipment",
    "/ui/loans",
    "/ui/users",
    "/ui/notifications",
    "/ui/integrity",
    "/ui/profile",
)
AUTH_PREFIXES = ("/login", "/register")
ADMIN_PREFIXES = ("/ui/users", "/ui/integrity")
BECARIO_ROLES = ("becario", "admin")

# 備品の作成・編集画面
_BECARIO_PAGE = re.compile(r"^/ui/equipment/(new|import|[^/]+/edit)/?$")
_BECARIO_POST_PREFIXES = ("/ui/equipment", "/ui/loans")

SESSION_USER_KEY = "user_id"


def _has_prefix(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path == p or path.startswith(p + "/") for p in prefixes)


def resolve_access(path: str, method: str, profile: Optional[Profile]) -> Optional[str]:
    """Return the URL to redirect to, or None when the request may proceed."""
    is_protected = _has_prefix(path, PROTECTED_PREFIXES)

    if profile is None:
        return "/login" if is_protected else None

    if _has_prefix(path, AUTH_PREFIXES):
        return "/ui/dashboard"

    if not is_protected:
        return None

    if not profile.is_active:
        return "/unauthorized"

    if _has_prefix(path, ADMIN_PREFIXES) and profile.role != "admin":
        return "/unauthorized"

    needs_becario = bool(_BECARIO_PAGE.match(path)) or (
        method.upper() == "POST" and _has_prefix(path, _BECARIO_POST_PREFIXES)
    )
    if needs_becario and profile.role not in BECARIO_ROLES:
        return "/unauthorized"

    return None


def load_session_profile(request: Request) -> Optional[Profile]:
    user_id = request.session.get(SESSION_USER_KEY)
    if not user_id:
        return None
    db = request.app.state.session_factory()
    try:
        return crud.get_profile(db, user_id)
    finally:
        db.close()


async def enforce_access(request: Request, call_next):
    profile = load_session_profile(request)
    request.state.profile = profile

    target = resolve_access(request.url.path, request.method, profile)
    if target and target != request.url.path:
        logger.info(
            "access redirect path=%s role=%s -> %s",
            request.url.path,
            profile.role if profile else "anonymous",
            target,
        )
        return RedirectResponse(url=target, status_code=303)
    return await call_next(request)
