from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backoffice.core.permissions import Actor
from backoffice.core.router_guard import require_actor
from backoffice.db import get_db
from backoffice.route_logging import OperationRoute
from backoffice.schemas import DeleteClassesRequest, TemplateSaveRequest
from backoffice.services import template_service


router = APIRouter(prefix='/class-templates', tags=['Class Templates'], route_class=OperationRoute)


@router.get('/{student_id}')
def get_template(student_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return template_service.get_template(db, student_id, actor)


@router.put('/{student_id}')
def save_template(
    student_id: int,
    payload: TemplateSaveRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    days = [day.model_dump() for day in payload.days]
    return {'success': True, **template_service.save_template(db, student_id, days, actor)}


@router.delete('/{student_id}')
def delete_template(student_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return template_service.delete_template(db, student_id, actor)


@router.post('/{student_id}/delete-classes')
def delete_classes(
    student_id: int,
    payload: DeleteClassesRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    return template_service.delete_classes(
        db,
        student_id,
        actor,
        option=payload.option,
        from_date=payload.from_date,
        to_date=payload.to_date,
        template_entry_ids=payload.template_entries,
    )
