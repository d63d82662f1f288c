from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.core.permissions import Actor, require
from backoffice.core.time_provider import TimeProvider, default_time_provider
from backoffice.metrics import record_lifecycle_event
from backoffice.models import ClassInstance, ClassStatus, User, Vacation
from backoffice.services.class_service import require_teacher_user
from backoffice.services.notification_service import notify


logger = logging.getLogger(__name__)


def serialize_vacation(vacation: Vacation) -> dict:
    return {
        'id': vacation.id,
        'teacher_id': vacation.teacher_id,
        'start_date': vacation.start_date.isoformat(),
        'end_date': vacation.end_date.isoformat(),
        'days': (vacation.end_date - vacation.start_date).days + 1,
        'reason': vacation.reason,
    }


def _range_bounds(start_date: date, end_date: date) -> tuple[datetime, datetime]:
    return datetime.combine(start_date, time()), datetime.combine(end_date + timedelta(days=1), time())


def _classes_in_range(db: Session, teacher_id: int, start_date: date, end_date: date, status: str):
    lower, upper = _range_bounds(start_date, end_date)
    return db.query(ClassInstance).filter(
        ClassInstance.teacher_id == int(teacher_id),
        ClassInstance.status == status,
        ClassInstance.scheduled_at >= lower,
        ClassInstance.scheduled_at < upper,
    )


def create_vacation(
    db: Session,
    *,
    teacher_id: int,
    start_date: date,
    end_date: date,
    actor: Actor,
    reason: str = '',
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    require(actor, 'vacation.manage', teacher_id)
    teacher = require_teacher_user(db, teacher_id)
    if start_date is None or end_date is None:
        raise ValidationError('startDate and endDate are required')
    if end_date < start_date:
        raise ValidationError('endDate must not be before startDate')
    days = (end_date - start_date).days + 1
    if days > settings.vacation_max_days:
        raise ValidationError(f'Vacation cannot exceed {settings.vacation_max_days} days')
    today = time_provider.today()
    if (start_date - today).days < settings.vacation_min_notice_days:
        raise ValidationError(f'Vacation must be requested at least {settings.vacation_min_notice_days} days in advance')
    if days > int(teacher.vacation_days_remaining or 0):
        raise ValidationError(f'Only {teacher.vacation_days_remaining} vacation days remaining')
    overlapping = (
        db.query(Vacation.id)
        .filter(
            Vacation.teacher_id == int(teacher_id),
            Vacation.start_date <= end_date,
            Vacation.end_date >= start_date,
        )
        .first()
    )
    if overlapping:
        raise ConflictError('Vacation overlaps an existing vacation')

    now = time_provider.local_naive_now()
    debited = (
        db.query(User)
        .filter(User.id == teacher.id, User.vacation_days_remaining >= days)
        .update({User.vacation_days_remaining: User.vacation_days_remaining - days}, synchronize_session=False)
    )
    if debited != 1:
        db.rollback()
        raise ConflictError('Vacation balance changed; reload and try again')

    affected = _classes_in_range(db, teacher_id, start_date, end_date, ClassStatus.SCHEDULED.value).all()
    student_ids = sorted({row.student_id for row in affected})
    moved = 0
    if affected:
        moved = (
            db.query(ClassInstance)
            .filter(
                ClassInstance.id.in_([row.id for row in affected]),
                ClassInstance.status == ClassStatus.SCHEDULED.value,
            )
            .update(
                {ClassInstance.status: ClassStatus.TEACHER_VACATION.value, ClassInstance.updated_at: now},
                synchronize_session=False,
            )
        )
    vacation = Vacation(
        teacher_id=int(teacher_id),
        start_date=start_date,
        end_date=end_date,
        reason=(reason or '').strip(),
        created_at=now,
    )
    db.add(vacation)
    db.commit()
    db.refresh(vacation)
    for _ in range(moved):
        record_lifecycle_event('class_transition')
    logger.info(
        'vacation_created teacher_id=%s vacation_id=%s start=%s end=%s days=%s classes_moved=%s',
        teacher_id,
        vacation.id,
        start_date,
        end_date,
        days,
        moved,
    )

    notify(
        'vacation.created',
        user_ids=student_ids,
        payload={'teacher_id': int(teacher_id), 'start_date': start_date.isoformat(), 'end_date': end_date.isoformat()},
    )
    result = serialize_vacation(vacation)
    result['classes_affected'] = moved
    return result


def list_vacations(db: Session, teacher_id: int, actor: Actor) -> list[dict]:
    require(actor, 'vacation.view', teacher_id)
    rows = (
        db.query(Vacation)
        .filter(Vacation.teacher_id == int(teacher_id))
        .order_by(Vacation.start_date.asc())
        .all()
    )
    return [serialize_vacation(row) for row in rows]


def delete_vacation(
    db: Session,
    vacation_id: int,
    actor: Actor,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Cancel a vacation that has not started and put its classes back on the schedule."""
    vacation = db.query(Vacation).filter(Vacation.id == int(vacation_id)).first()
    if not vacation:
        raise NotFoundError('Vacation not found')
    require(actor, 'vacation.manage', vacation.teacher_id)
    if vacation.start_date <= time_provider.today():
        raise ConflictError('Vacation has already started')

    now = time_provider.local_naive_now()
    teacher_id = vacation.teacher_id
    days = (vacation.end_date - vacation.start_date).days + 1
    held = _classes_in_range(
        db, vacation.teacher_id, vacation.start_date, vacation.end_date, ClassStatus.TEACHER_VACATION.value
    ).all()
    student_ids = sorted({row.student_id for row in held})
    try:
        restored = 0
        if held:
            restored = (
                db.query(ClassInstance)
                .filter(
                    ClassInstance.id.in_([row.id for row in held]),
                    ClassInstance.status == ClassStatus.TEACHER_VACATION.value,
                )
                .update(
                    {ClassInstance.status: ClassStatus.SCHEDULED.value, ClassInstance.updated_at: now},
                    synchronize_session=False,
                )
            )
        db.query(User).filter(User.id == vacation.teacher_id).update(
            {User.vacation_days_remaining: User.vacation_days_remaining + days}, synchronize_session=False
        )
        db.delete(vacation)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError('A restored class clashes with a class booked during the vacation') from exc
    logger.info(
        'vacation_deleted vacation_id=%s teacher_id=%s days_refunded=%s classes_restored=%s',
        vacation_id,
        teacher_id,
        days,
        restored,
    )

    notify('vacation.cancelled', user_ids=student_ids, payload={'vacation_id': int(vacation_id)})
    return {'success': True, 'classes_restored': restored, 'days_refunded': days}
