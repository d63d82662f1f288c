from __future__ import annotations

import logging
import re

from sqlalchemy.orm import Session

from backoffice.core.errors import NotFoundError, ValidationError
from backoffice.core.permissions import Actor, require
from backoffice.models import TeacherAvailabilitySlot
from backoffice.services.class_service import require_teacher_user


logger = logging.getLogger(__name__)

_HHMM = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')


def serialize_slot(slot: TeacherAvailabilitySlot) -> dict:
    return {
        'id': slot.id,
        'teacher_id': slot.teacher_id,
        'weekday': slot.weekday,
        'start_time': slot.start_time,
        'end_time': slot.end_time,
        'title': slot.title,
    }


def add_slot(
    db: Session,
    *,
    teacher_id: int,
    weekday: int,
    start_time: str,
    actor: Actor,
    end_time: str = '',
    title: str = '',
) -> dict:
    require(actor, 'availability.manage', teacher_id)
    require_teacher_user(db, teacher_id)
    if not 0 <= int(weekday) <= 6:
        raise ValidationError('weekday must be an integer between 0 and 6')
    if not _HHMM.match(start_time or ''):
        raise ValidationError('startTime must use HH:MM')
    if end_time and (not _HHMM.match(end_time) or end_time <= start_time):
        raise ValidationError('endTime must use HH:MM and come after startTime')
    slot = TeacherAvailabilitySlot(
        teacher_id=int(teacher_id),
        weekday=int(weekday),
        start_time=start_time,
        end_time=end_time or '',
        title=(title or '').strip(),
    )
    db.add(slot)
    db.commit()
    db.refresh(slot)
    logger.info('availability_slot_added teacher_id=%s slot_id=%s weekday=%s start=%s', teacher_id, slot.id, weekday, start_time)
    return serialize_slot(slot)


def list_slots(db: Session, teacher_id: int, actor: Actor) -> list[dict]:
    require(actor, 'availability.view', teacher_id)
    rows = (
        db.query(TeacherAvailabilitySlot)
        .filter(TeacherAvailabilitySlot.teacher_id == int(teacher_id))
        .order_by(TeacherAvailabilitySlot.weekday.asc(), TeacherAvailabilitySlot.start_time.asc())
        .all()
    )
    return [serialize_slot(row) for row in rows]


def delete_slot(db: Session, slot_id: int, actor: Actor) -> dict:
    slot = db.query(TeacherAvailabilitySlot).filter(TeacherAvailabilitySlot.id == int(slot_id)).first()
    if not slot:
        raise NotFoundError('Availability slot not found')
    require(actor, 'availability.manage', slot.teacher_id)
    db.delete(slot)
    db.commit()
    logger.info('availability_slot_deleted slot_id=%s actor_id=%s', slot_id, actor.user_id)
    return {'success': True}
