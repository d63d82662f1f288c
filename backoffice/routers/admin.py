from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backoffice.core.permissions import Actor, require
from backoffice.core.router_guard import require_actor
from backoffice.db import get_db
from backoffice.route_logging import OperationRoute
from backoffice.schemas import AssignScheduleRequest, CreditGrantRequest
from backoffice.services import audit_service, availability_service, credit_service, template_service


router = APIRouter(prefix='/admin', tags=['Admin'], route_class=OperationRoute)


@router.post('/assign-schedule')
def assign_schedule(payload: AssignScheduleRequest, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return template_service.assign_schedule(
        db,
        student_id=payload.student_id,
        teacher_id=payload.teacher_id,
        slot_id=payload.slot_id,
        language=payload.language,
        weekday=payload.day,
        start_time=payload.start_time,
        actor=actor,
    )


@router.get('/teacher-availability/{teacher_id}')
def teacher_availability(teacher_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return {'teacher_id': teacher_id, 'slots': availability_service.list_slots(db, teacher_id, actor)}


@router.post('/credits/grant')
def grant_credit(payload: CreditGrantRequest, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    require(actor, 'credits.grant', payload.student_id)
    row = credit_service.grant_credit(
        db,
        student_id=payload.student_id,
        credit_type=payload.type,
        amount=payload.amount,
        expires_at=payload.expires_at,
        reason=payload.reason,
        granted_by=actor.user_id,
    )
    return {'success': True, 'transaction_id': row.id}


@router.get('/credits/balance/{student_id}')
def credit_balance(student_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    require(actor, 'credits.view', student_id)
    return credit_service.get_balance(db, student_id)


@router.get('/credits/history/{student_id}')
def credit_history(student_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    require(actor, 'credits.view', student_id)
    return {'student_id': student_id, 'items': credit_service.get_history(db, student_id)}


@router.get('/audit/{entity_type}/{entity_id}')
def audit_trail(entity_type: str, entity_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    require(actor, 'audit.view')
    return {
        'entity_type': entity_type,
        'entity_id': entity_id,
        'items': audit_service.list_events(db, entity_type=entity_type, entity_id=entity_id),
    }
