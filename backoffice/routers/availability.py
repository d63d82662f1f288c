from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backoffice.core.permissions import Actor
from backoffice.core.router_guard import require_actor
from backoffice.db import get_db
from backoffice.route_logging import OperationRoute
from backoffice.schemas import AvailabilitySlotCreateRequest
from backoffice.services import availability_service


router = APIRouter(prefix='/availability', tags=['Availability'], route_class=OperationRoute)


@router.post('')
def add_slot(payload: AvailabilitySlotCreateRequest, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    slot = availability_service.add_slot(
        db,
        teacher_id=payload.teacher_id,
        weekday=payload.weekday,
        start_time=payload.start_time,
        end_time=payload.end_time,
        title=payload.title,
        actor=actor,
    )
    return {'success': True, 'slot': slot}


@router.delete('/{slot_id}')
def delete_slot(slot_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return availability_service.delete_slot(db, slot_id, actor)
