from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

import crud
from dependencies import get_db, require_becario
from filter_helpers import (
    normalize_limit,
    normalize_offset,
    normalize_order,
    normalize_sort,
    normalize_status,
)
from models import Equipment, EquipmentIn, EquipmentMeta, EquipmentUpdate, Movement

router = APIRouter()


@router.get("/equipment", response_model=list[Equipment])
def list_equipment_api(
    q: Optional[str] = None,
    status: Optional[str] = None,
    only_available: bool = False,
    sort: str = "name",
    order: str = "asc",
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return crud.list_equipment_filtered(
        db,
        q=q,
        status=normalize_status(status),
        only_available=only_available,
        sort=normalize_sort(sort),
        order=normalize_order(order),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )


@router.get("/equipment/meta", response_model=EquipmentMeta)
def equipment_meta_api(
    q: Optional[str] = None,
    status: Optional[str] = None,
    only_available: bool = False,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    meta = crud.equipment_meta(
        db,
        q=q,
        status=normalize_status(status),
        only_available=only_available,
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )
    return EquipmentMeta(**meta)


@router.post(
    "/equipment",
    response_model=Equipment,
    status_code=201,
    dependencies=[Depends(require_becario)],
)
def create_equipment_api(
    body: EquipmentIn,
    db: Session = Depends(get_db),
):
    if crud.serial_number_exists(db, body.serial_number):
        raise HTTPException(status_code=409, detail="serial_number already exists")
    return crud.create_equipment(db, body)


@router.get("/equipment/{equipment_id}", response_model=Equipment)
def get_equipment_api(
    equipment_id: str,
    db: Session = Depends(get_db),
):
    equipment = crud.get_equipment(db, equipment_id)
    if not equipment:
        raise HTTPException(status_code=404, detail="equipment not found")
    return equipment


@router.patch(
    "/equipment/{equipment_id}",
    response_model=Equipment,
    dependencies=[Depends(require_becario)],
)
def update_equipment_api(
    equipment_id: str,
    body: EquipmentUpdate,
    db: Session = Depends(get_db),
):
    equipment = crud.get_equipment(db, equipment_id)
    if not equipment:
        raise HTTPException(status_code=404, detail="equipment not found")

    if body.serial_number and crud.serial_number_exists(db, body.serial_number, exclude_equipment_id=equipment_id):
        raise HTTPException(status_code=409, detail="serial_number already exists")

    try:
        updated = crud.update_equipment(db, equipment_id, body)
    except crud.OperationRejected as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except crud.ConcurrentUpdateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if not updated:
        raise HTTPException(status_code=404, detail="equipment not found")
    return updated


@router.delete(
    "/equipment/{equipment_id}",
    status_code=204,
    dependencies=[Depends(require_becario)],
)
def delete_equipment_api(
    equipment_id: str,
    db: Session = Depends(get_db),
):
    try:
        ok = crud.delete_equipment(db, equipment_id)
    except crud.OperationRejected as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if not ok:
        raise HTTPException(status_code=404, detail="equipment not found")
    return None


@router.get("/equipment/{equipment_id}/movements", response_model=list[Movement])
def list_movements_api(
    equipment_id: str,
    db: Session = Depends(get_db),
):
    if not crud.get_equipment(db, equipment_id):
        raise HTTPException(status_code=404, detail="equipment not found")
    return crud.list_movements(db, equipment_id)
