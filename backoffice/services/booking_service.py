from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.core.permissions import Actor, require
from backoffice.core.time_provider import TimeProvider, default_time_provider, to_local_naive
from backoffice.metrics import record_lifecycle_event
from backoffice.models import (
    ClassInstance,
    ClassStatus,
    CreditAction,
    CreditTransaction,
    CreditType,
    Role,
    TeacherAvailabilitySlot,
    User,
    Vacation,
)
from backoffice.services.class_service import (
    link_student_teacher,
    require_teacher_user,
    serialize_class,
    teacher_has_overlap,
)
from backoffice.services.credit_service import consume_credit
from backoffice.services.notification_service import notify
from backoffice.services.reschedule_service import lead_time_hours


logger = logging.getLogger(__name__)

# Teacher-cancellation credits only pay for moving the cancelled class.
BOOKABLE_CREDIT_TYPES = (CreditType.BONUS.value, CreditType.LATE_STUDENTS.value)


def _require_student(db: Session, student_id: int) -> User:
    student = db.query(User).filter(User.id == int(student_id)).first()
    if not student or student.role != Role.STUDENT.value:
        raise NotFoundError('Student not found')
    return student


def _matching_slot(
    db: Session,
    teacher_id: int,
    target: datetime,
    slot_id: int | None,
) -> TeacherAvailabilitySlot:
    query = db.query(TeacherAvailabilitySlot).filter(
        TeacherAvailabilitySlot.teacher_id == int(teacher_id),
        TeacherAvailabilitySlot.weekday == target.weekday(),
        TeacherAvailabilitySlot.start_time == target.strftime('%H:%M'),
    )
    if slot_id is not None:
        query = query.filter(TeacherAvailabilitySlot.id == int(slot_id))
    slot = query.order_by(TeacherAvailabilitySlot.id.asc()).first()
    if slot is None:
        raise ConflictError('Selected time is not one of the teacher\'s open slots')
    return slot


def _bookable_credit(
    db: Session,
    student_id: int,
    credit_id: int | None,
    now: datetime,
) -> CreditTransaction:
    query = db.query(CreditTransaction).filter(
        CreditTransaction.student_id == int(student_id),
        CreditTransaction.action == CreditAction.GRANTED.value,
    )
    if credit_id is not None:
        credit = query.filter(CreditTransaction.id == int(credit_id)).first()
        if credit is None:
            raise NotFoundError('Credit not found')
        if credit.type not in BOOKABLE_CREDIT_TYPES:
            raise ValidationError('Only bonus or late-student credits can book a class')
        return credit
    credit = (
        query.filter(
            CreditTransaction.type.in_(BOOKABLE_CREDIT_TYPES),
            CreditTransaction.used_at.is_(None),
            CreditTransaction.remaining > 0,
            CreditTransaction.expires_at > now,
        )
        .order_by(CreditTransaction.performed_at.asc(), CreditTransaction.id.asc())
        .first()
    )
    if credit is None:
        raise ConflictError('No bonus or late-student credit available')
    return credit


def book_class_with_credit(
    db: Session,
    *,
    student_id: int,
    teacher_id: int,
    scheduled_at: datetime,
    actor: Actor,
    credit_id: int | None = None,
    slot_id: int | None = None,
    language: str = '',
    notes: str = '',
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Book a one-off class in one of the teacher's open slots, paid with a credit.

    The class and the credit spend commit together. Classes booked this way
    cannot be rescheduled later.
    """
    require(actor, 'class.book_with_credit', student_id)
    student = _require_student(db, student_id)
    teacher = require_teacher_user(db, teacher_id)
    if scheduled_at is None:
        raise ValidationError('scheduledAt is required')
    target = to_local_naive(scheduled_at).replace(second=0, microsecond=0)
    now = time_provider.local_naive_now()

    lead_hours = lead_time_hours(teacher)
    if target < now + timedelta(hours=lead_hours):
        raise ValidationError(f'Classes must be booked at least {lead_hours} hours in advance')
    if target > now + timedelta(days=settings.booking_horizon_days):
        raise ValidationError(f'Classes can be booked at most {settings.booking_horizon_days} days ahead')

    slot = _matching_slot(db, teacher.id, target, slot_id)
    on_vacation = (
        db.query(Vacation.id)
        .filter(
            Vacation.teacher_id == teacher.id,
            Vacation.start_date <= target.date(),
            Vacation.end_date >= target.date(),
        )
        .first()
    )
    if on_vacation:
        raise ConflictError('Teacher is on vacation at the selected time')
    if teacher_has_overlap(db, teacher.id, target, settings.class_duration_minutes):
        raise ConflictError('Teacher already has a class at this time')

    credit = _bookable_credit(db, student.id, credit_id, now)
    instance = ClassInstance(
        student_id=student.id,
        teacher_id=teacher.id,
        language=(language or '').strip(),
        scheduled_at=target,
        duration_minutes=settings.class_duration_minutes,
        status=ClassStatus.SCHEDULED.value,
        notes=(notes or '').strip(),
        availability_slot_id=slot.id,
        credit_transaction_id=credit.id,
        created_at=now,
        updated_at=now,
    )
    db.add(instance)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        record_lifecycle_event('class_conflict')
        raise ConflictError('Teacher already has a class at this time') from exc
    usage = consume_credit(
        db,
        student_id=student.id,
        transaction_id=credit.id,
        class_id=instance.id,
        used_by=actor.user_id or None,
        commit=False,
        time_provider=time_provider,
    )
    link_student_teacher(db, student.id, teacher.id)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        record_lifecycle_event('class_conflict')
        raise ConflictError('Teacher already has a class at this time') from exc
    db.refresh(instance)
    record_lifecycle_event('class_booked')
    logger.info(
        'class_booked_with_credit class_id=%s student_id=%s teacher_id=%s credit_id=%s actor_id=%s',
        instance.id,
        student.id,
        teacher.id,
        credit.id,
        actor.user_id,
    )
    notify(
        'class.booked',
        user_ids=[student.id, teacher.id],
        payload={'class_id': instance.id, 'scheduled_at': target.isoformat(), 'credit_type': usage.type},
    )
    return {
        'class': serialize_class(instance),
        'credit_used_id': credit.id,
        'credit_type': usage.type,
    }
