from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

import crud
from dependencies import get_db, require_profile
from models import Notification, Profile

router = APIRouter()


@router.get("/notifications", response_model=list[Notification])
def list_notifications_api(
    unread_only: bool = False,
    profile: Profile = Depends(require_profile),
    db: Session = Depends(get_db),
):
    return crud.list_notifications(db, profile.id, unread_only=unread_only)


@router.get("/notifications/unread-count")
def unread_count_api(
    profile: Profile = Depends(require_profile),
    db: Session = Depends(get_db),
):
    return {"unread": crud.count_unread(db, profile.id)}


@router.post("/notifications/{notification_id}/read", status_code=204)
def mark_read_api(
    notification_id: str,
    profile: Profile = Depends(require_profile),
    db: Session = Depends(get_db),
):
    if not crud.mark_notification_read(db, notification_id, profile.id):
        raise HTTPException(status_code=404, detail="notification not found")
    return None


@router.delete("/notifications/{notification_id}", status_code=204)
def delete_notification_api(
    notification_id: str,
    profile: Profile = Depends(require_profile),
    db: Session = Depends(get_db),
):
    if not crud.delete_notification(db, notification_id, profile.id):
        raise HTTPException(status_code=404, detail="notification not found")
    return None


@router.get("/ui/notifications", response_class=HTMLResponse)
def notifications_ui(
    request: Request,
    unread_only: bool = False,
    profile: Profile = Depends(require_profile),
    db: Session = Depends(get_db),
):
    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "notifications.html",
        {
            "profile": profile,
            "notifications": crud.list_notifications(db, profile.id, unread_only=unread_only),
            "unread_only": unread_only,
        },
    )


@router.post("/ui/notifications/{notification_id}/read")
def mark_read_ui(
    notification_id: str,
    profile: Profile = Depends(require_profile),
    db: Session = Depends(get_db),
):
    crud.mark_notification_read(db, notification_id, profile.id)
    return RedirectResponse(url="/ui/notifications", status_code=303)


@router.post("/ui/notifications/{notification_id}/delete")
def delete_notification_ui(
    notification_id: str,
    profile: Profile = Depends(require_profile),
    db: Session = Depends(get_db),
):
    crud.delete_notification(db, notification_id, profile.id)
    return RedirectResponse(url="/ui/notifications", status_code=303)
