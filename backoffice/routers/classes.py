from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backoffice.core.permissions import Actor
from backoffice.core.router_guard import require_actor
from backoffice.db import get_db
from backoffice.route_logging import OperationRoute
from backoffice.schemas import (
    ClassCancelRequest,
    ClassStatusUpdateRequest,
    ClassTeacherUpdateRequest,
    CreditBookingRequest,
    GenerateClassesRequest,
    RescheduleRequest,
)
from backoffice.services import booking_service, class_service, reschedule_service, template_service


router = APIRouter(prefix='/classes', tags=['Classes'], route_class=OperationRoute)


@router.post('/generate-classes')
def generate_classes(
    payload: GenerateClassesRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    return template_service.generate_classes(
        db,
        payload.student_id,
        actor,
        from_date=payload.from_date,
        to_date=payload.to_date,
    )


@router.post('/book-with-credit')
def book_with_credit(
    payload: CreditBookingRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    result = booking_service.book_class_with_credit(
        db,
        student_id=payload.student_id,
        teacher_id=payload.teacher_id,
        scheduled_at=payload.scheduled_at,
        actor=actor,
        credit_id=payload.credit_id,
        slot_id=payload.slot_id,
        language=payload.language,
        notes=payload.notes,
    )
    return {'success': True, **result}


@router.get('/{class_id}')
def get_class(class_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return class_service.view_class(db, class_id, actor)


@router.put('/{class_id}/teacher')
def update_teacher(
    class_id: int,
    payload: ClassTeacherUpdateRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    return {'success': True, 'class': class_service.assign_teacher(db, class_id, payload.teacher_id, actor)}


@router.put('/{class_id}/status')
def update_status(
    class_id: int,
    payload: ClassStatusUpdateRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    updated = class_service.mark_status(
        db,
        class_id,
        payload.status,
        actor,
        feedback=payload.feedback,
        reason=payload.reason,
    )
    return {'success': True, 'class': updated}


@router.post('/{class_id}/cancel')
def cancel_class(
    class_id: int,
    payload: ClassCancelRequest | None = None,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    body = payload or ClassCancelRequest()
    return {
        'success': True,
        'class': class_service.cancel_class(db, class_id, actor, reason=body.reason, allow_makeup=body.allow_makeup),
    }


@router.get('/{class_id}/reschedule-options')
def reschedule_options(class_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return reschedule_service.reschedule_options(db, class_id, actor)


@router.post('/{class_id}/reschedule')
def reschedule(
    class_id: int,
    payload: RescheduleRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    result = reschedule_service.reschedule_class(db, class_id, payload.scheduled_at, actor, reason=payload.reason)
    return {'success': True, **result}


@router.get('/{class_id}/lineage')
def lineage(class_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return {'items': reschedule_service.reschedule_lineage(db, class_id, actor)}
