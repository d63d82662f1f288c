from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from backoffice.core.permissions import Actor
from backoffice.core.router_guard import require_actor
from backoffice.db import get_db
from backoffice.route_logging import OperationRoute
from backoffice.schemas import VacationCreateRequest
from backoffice.services import vacation_service


router = APIRouter(prefix='/vacations', tags=['Vacations'], route_class=OperationRoute)


@router.post('')
def create_vacation(payload: VacationCreateRequest, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    # Teachers book for themselves; staff must name the teacher.
    teacher_id = payload.teacher_id or actor.user_id
    vacation = vacation_service.create_vacation(
        db,
        teacher_id=teacher_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reason=payload.reason,
        actor=actor,
    )
    return {'success': True, 'vacation': vacation}


@router.get('')
def list_vacations(
    teacher_id: int | None = Query(default=None, alias='teacherId'),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    target = teacher_id or actor.user_id
    return {'teacher_id': target, 'items': vacation_service.list_vacations(db, target, actor)}


@router.delete('')
def delete_vacation(
    vacation_id: int = Query(alias='id'),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    return vacation_service.delete_vacation(db, vacation_id, actor)
