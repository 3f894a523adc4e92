import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

import crud
from csv_utils import csv_bytes_to_rows, equipment_to_csv_response
from dependencies import get_current_profile, get_db
from filter_helpers import (
    blank_to_none,
    normalize_order,
    normalize_sort,
    normalize_status,
)
from models import EquipmentIn, EquipmentUpdate

logger = logging.getLogger("app")

router = APIRouter()
PAGE_SIZE = 50
EXPORT_LIMIT = 20000


def _actor(request: Request) -> str:
    profile = get_current_profile(request)
    return profile.id if profile else "system"


@router.get("/ui/equipment", response_class=HTMLResponse)
def equipment_ui(
    request: Request,
    q: Optional[str] = None,
    status: Optional[str] = None,
    sort: str = "name",
    order: str = "asc",
    page: int = 1,
    db: Session = Depends(get_db),
):
    if page < 1:
        page = 1

    status = normalize_status(status)
    sort = normalize_sort(sort)
    order = normalize_order(order)

    meta = crud.equipment_meta(
        db,
        q=q,
        status=status,
        limit=PAGE_SIZE,
        offset=(page - 1) * PAGE_SIZE,
    )
    total = meta["total"]
    total_pages = meta["total_pages"]
    if page > total_pages:
        page = total_pages

    offset = (page - 1) * PAGE_SIZE
    items = crud.list_equipment_filtered(
        db,
        q=q,
        status=status,
        sort=sort,
        order=order,
        limit=PAGE_SIZE,
        offset=offset,
    )

    profile = get_current_profile(request)
    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "equipment.html",
        {
            "equipment": items,
            "profile": profile,
            "can_edit": bool(profile and profile.role in ("becario", "admin")),
            "q": q or "",
            "status": status or "",
            "sort": sort,
            "order": order,
            "page": page,
            "total_pages": total_pages,
            "total": total,
            "page_size": PAGE_SIZE,
        },
    )


@router.get("/ui/equipment/new", response_class=HTMLResponse)
def new_equipment_ui(request: Request):
    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "equipment_edit.html",
        {"equipment": None, "profile": get_current_profile(request)},
    )


@router.post("/ui/equipment")
def create_equipment_ui(
    name: str = Form(...),
    serial_number: str = Form(...),
    description: Optional[str] = Form(None),
    brand: Optional[str] = Form(None),
    model: Optional[str] = Form(None),
    location: Optional[str] = Form(None),
    total_quantity: int = Form(1),
    db: Session = Depends(get_db),
):
    if crud.serial_number_exists(db, serial_number) or total_quantity < 0:
        return RedirectResponse(url="/ui/equipment", status_code=303)

    body = EquipmentIn(
        name=name,
        serial_number=serial_number,
        description=blank_to_none(description),
        brand=blank_to_none(brand),
        model=blank_to_none(model),
        location=blank_to_none(location),
        total_quantity=total_quantity,
    )
    crud.create_equipment(db, body)
    return RedirectResponse(url="/ui/equipment", status_code=303)


@router.get("/ui/equipment/{equipment_id}/edit", response_class=HTMLResponse)
def edit_equipment_ui(request: Request, equipment_id: str, db: Session = Depends(get_db)):
    equipment = crud.get_equipment(db, equipment_id)
    if not equipment:
        raise HTTPException(status_code=404, detail="equipment not found")

    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "equipment_edit.html",
        {
            "equipment": equipment,
            "movements": crud.list_movements(db, equipment_id, limit=20),
            "profile": get_current_profile(request),
        },
    )


@router.post("/ui/equipment/{equipment_id}/edit")
def update_equipment_ui(
    request: Request,
    equipment_id: str,
    name: str = Form(...),
    serial_number: str = Form(...),
    description: Optional[str] = Form(None),
    brand: Optional[str] = Form(None),
    model: Optional[str] = Form(None),
    location: Optional[str] = Form(None),
    total_quantity: int = Form(...),
    status: str = Form("available"),
    is_active: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    edit_url = f"/ui/equipment/{equipment_id}/edit"
    if crud.serial_number_exists(db, serial_number, exclude_equipment_id=equipment_id):
        return RedirectResponse(url=edit_url, status_code=303)

    body = EquipmentUpdate(
        name=name,
        serial_number=serial_number,
        description=blank_to_none(description),
        brand=blank_to_none(brand),
        model=blank_to_none(model),
        location=blank_to_none(location),
        total_quantity=total_quantity,
        status=normalize_status(status) or "available",  # type: ignore[arg-type]
        is_active=is_active == "on",
    )
    try:
        crud.update_equipment(db, equipment_id, body, performed_by=_actor(request))
    except (crud.OperationRejected, crud.ConcurrentUpdateError) as exc:
        logger.warning("equipment update rejected equipment_id=%s: %s", equipment_id, exc)
        return RedirectResponse(url=edit_url, status_code=303)
    return RedirectResponse(url="/ui/equipment", status_code=303)


@router.post("/ui/equipment/{equipment_id}/delete")
def delete_equipment_ui(
    equipment_id: str,
    db: Session = Depends(get_db),
):
    try:
        crud.delete_equipment(db, equipment_id)
    except crud.OperationRejected as exc:
        logger.warning("equipment delete rejected equipment_id=%s: %s", equipment_id, exc)
    return RedirectResponse(url="/ui/equipment", status_code=303)


@router.get("/ui/equipment/import", response_class=HTMLResponse)
def import_ui(request: Request):
    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "import.html",
        {"result": None},
    )


@router.post("/ui/equipment/import", response_class=HTMLResponse)
async def import_ui_post(
    request: Request,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    data = await file.read()
    rows, err = csv_bytes_to_rows(data)

    templates = request.app.state.templates
    if err:
        return templates.TemplateResponse(
            request,
            "import.html",
            {"result": {"error": err}},
        )

    result = crud.bulk_import_equipment(db, rows)
    return templates.TemplateResponse(
        request,
        "import.html",
        {"result": result},
    )


@router.get("/ui/equipment/export")
def export_equipment(
    q: Optional[str] = None,
    status: Optional[str] = None,
    sort: str = "name",
    order: str = "asc",
    db: Session = Depends(get_db),
):
    items = crud.list_equipment_filtered(
        db,
        q=q,
        status=normalize_status(status),
        sort=normalize_sort(sort),
        order=normalize_order(order),
        limit=EXPORT_LIMIT,
        offset=0,
    )
    return equipment_to_csv_response(items, filename="equipment_export.csv")
