from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.core.errors import ConflictError, ValidationError
from backoffice.core.permissions import Actor, require
from backoffice.core.time_provider import TimeProvider, default_time_provider, to_local_naive
from backoffice.metrics import record_lifecycle_event
from backoffice.models import (
    ClassInstance,
    ClassStatus,
    CreditTransaction,
    CreditType,
    MonthlyRescheduleCount,
    TeacherAvailabilitySlot,
    User,
    Vacation,
)
from backoffice.services.class_service import (
    MAKEUP_PENDING,
    SCHEDULED,
    apply_transition,
    get_class,
    serialize_class,
    teacher_has_overlap,
)
from backoffice.services.credit_service import CreditEvent, apply_credit_rule
from backoffice.services.notification_service import notify


logger = logging.getLogger(__name__)


def month_key(value: datetime | date) -> str:
    return f'{value.year:04d}-{value.month:02d}'


def _parse_hhmm(value: str) -> time:
    hour, minute = (value or '').split(':', 1)
    return time(int(hour), int(minute))


def get_monthly_reschedule_count(
    db: Session,
    student_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> int:
    row = (
        db.query(MonthlyRescheduleCount)
        .filter(
            MonthlyRescheduleCount.student_id == int(student_id),
            MonthlyRescheduleCount.month == month_key(time_provider.today()),
        )
        .first()
    )
    return int(row.count) if row else 0


def can_reschedule(
    db: Session,
    student_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> bool:
    return get_monthly_reschedule_count(db, student_id, time_provider=time_provider) < settings.monthly_reschedule_limit


def _consume_monthly_quota(db: Session, student_id: int, month: str) -> None:
    limit = settings.monthly_reschedule_limit
    row = (
        db.query(MonthlyRescheduleCount)
        .filter(MonthlyRescheduleCount.student_id == int(student_id), MonthlyRescheduleCount.month == month)
        .first()
    )
    if row is None:
        if limit < 1:
            raise ConflictError('Monthly reschedule limit reached')
        db.add(MonthlyRescheduleCount(student_id=int(student_id), month=month, count=1))
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            raise ConflictError('Reschedule count changed; reload and try again') from None
        return
    updated = (
        db.query(MonthlyRescheduleCount)
        .filter(MonthlyRescheduleCount.id == row.id, MonthlyRescheduleCount.count < limit)
        .update({MonthlyRescheduleCount.count: MonthlyRescheduleCount.count + 1}, synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        raise ConflictError('Monthly reschedule limit reached')


def lead_time_hours(teacher: User | None) -> int:
    if teacher is not None and teacher.booking_lead_time_hours is not None:
        return int(teacher.booking_lead_time_hours)
    return settings.reschedule_lead_time_hours


def _on_vacation(vacations: list[Vacation], moment: datetime) -> bool:
    day = moment.date()
    return any(vacation.start_date <= day <= vacation.end_date for vacation in vacations)


def _unique_slots(slots: list[TeacherAvailabilitySlot]) -> list[TeacherAvailabilitySlot]:
    seen: set[tuple[int, str]] = set()
    unique: list[TeacherAvailabilitySlot] = []
    for slot in sorted(slots, key=lambda row: (row.weekday, row.start_time, row.id)):
        key = (int(slot.weekday), slot.start_time)
        if key in seen:
            continue
        seen.add(key)
        unique.append(slot)
    return unique


def compute_candidates(
    db: Session,
    instance: ClassInstance,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> list[dict]:
    if not instance.teacher_id:
        return []
    teacher = db.query(User).filter(User.id == instance.teacher_id).first()
    now = time_provider.local_naive_now()
    earliest = now + timedelta(hours=lead_time_hours(teacher))
    horizon_days = settings.reschedule_lookahead_weeks * 7
    window_end = now + timedelta(days=horizon_days)

    slots = _unique_slots(
        db.query(TeacherAvailabilitySlot).filter(TeacherAvailabilitySlot.teacher_id == instance.teacher_id).all()
    )
    vacations = (
        db.query(Vacation)
        .filter(
            Vacation.teacher_id == instance.teacher_id,
            Vacation.end_date >= now.date(),
            Vacation.start_date <= window_end.date(),
        )
        .all()
    )

    candidates: list[dict] = []
    for offset in range(horizon_days + 1):
        day = now.date() + timedelta(days=offset)
        for slot in slots:
            if slot.weekday != day.weekday():
                continue
            start = datetime.combine(day, _parse_hhmm(slot.start_time))
            if start < earliest or start > window_end:
                continue
            if _on_vacation(vacations, start):
                continue
            if teacher_has_overlap(
                db, instance.teacher_id, start, instance.duration_minutes, exclude_class_id=instance.id
            ):
                continue
            candidates.append({'scheduled_at': start.isoformat(), 'slot_id': slot.id, 'weekday': slot.weekday})
    candidates.sort(key=lambda row: row['scheduled_at'])
    return candidates


def _require_reschedulable(
    db: Session,
    instance: ClassInstance,
    actor: Actor,
    *,
    time_provider: TimeProvider,
) -> None:
    if instance.status not in (SCHEDULED, MAKEUP_PENDING):
        record_lifecycle_event('class_conflict')
        raise ConflictError(f'Class is already {instance.status}')
    if (
        not actor.is_staff
        and instance.status == SCHEDULED
        and instance.scheduled_at <= time_provider.local_naive_now()
    ):
        raise ValidationError('Class has already started')
    if instance.credit_transaction_id:
        credit_type = (
            db.query(CreditTransaction.type).filter(CreditTransaction.id == instance.credit_transaction_id).scalar()
        )
        if credit_type is not None and credit_type != CreditType.TEACHER_CANCELLATION.value:
            raise ConflictError('Classes booked with bonus or late-student credits cannot be rescheduled')


def reschedule_options(
    db: Session,
    class_id: int,
    actor: Actor,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    instance = get_class(db, class_id)
    require(actor, 'class.reschedule', instance)
    _require_reschedulable(db, instance, actor, time_provider=time_provider)
    candidates = compute_candidates(db, instance, time_provider=time_provider)
    is_makeup = instance.status == MAKEUP_PENDING
    monthly_count = get_monthly_reschedule_count(db, instance.student_id, time_provider=time_provider)
    return {
        'class_id': instance.id,
        'candidates': candidates,
        'message': None if candidates else 'no slots available',
        'is_teacher_makeup': is_makeup,
        'monthly_count': monthly_count,
        'monthly_limit': settings.monthly_reschedule_limit,
        'can_reschedule': is_makeup or can_reschedule(db, instance.student_id, time_provider=time_provider),
    }


def _validate_target(
    db: Session,
    instance: ClassInstance,
    target: datetime,
    actor: Actor,
    *,
    time_provider: TimeProvider,
) -> None:
    now = time_provider.local_naive_now()
    if target <= now:
        raise ValidationError('New time must be in the future')
    if not actor.is_staff:
        offered = {row['scheduled_at'] for row in compute_candidates(db, instance, time_provider=time_provider)}
        if target.isoformat() not in offered:
            raise ConflictError('Selected time is no longer available')
        return
    if not instance.teacher_id:
        return
    on_vacation = (
        db.query(Vacation.id)
        .filter(
            Vacation.teacher_id == instance.teacher_id,
            Vacation.start_date <= target.date(),
            Vacation.end_date >= target.date(),
        )
        .first()
    )
    if on_vacation:
        raise ConflictError('Teacher is on vacation at the selected time')
    if teacher_has_overlap(db, instance.teacher_id, target, instance.duration_minutes, exclude_class_id=instance.id):
        raise ConflictError('Teacher already has a class at this time')


def reschedule_class(
    db: Session,
    class_id: int,
    new_scheduled_at: datetime,
    actor: Actor,
    *,
    reason: str | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Move a class to a new time.

    The old instance becomes RESCHEDULED and a new SCHEDULED instance points
    back to it. A regular class spends one unit of the student's monthly quota
    when the student asks; a makeup class spends a makeup credit instead. All
    writes commit together.
    """
    instance = get_class(db, class_id)
    require(actor, 'class.reschedule', instance)
    _require_reschedulable(db, instance, actor, time_provider=time_provider)
    if new_scheduled_at is None:
        raise ValidationError('scheduledAt is required')
    target = to_local_naive(new_scheduled_at).replace(second=0, microsecond=0)
    _validate_target(db, instance, target, actor, time_provider=time_provider)

    now = time_provider.local_naive_now()
    is_makeup = instance.status == MAKEUP_PENDING
    credit_usage = None
    if is_makeup:
        credit_usage = apply_credit_rule(
            db,
            event=CreditEvent.MAKEUP_RESCHEDULE,
            actor=actor,
            student_id=instance.student_id,
            class_id=instance.id,
            time_provider=time_provider,
        )
    elif actor.is_student:
        _consume_monthly_quota(db, instance.student_id, month_key(now))

    apply_transition(
        db,
        instance,
        ClassStatus.RESCHEDULED.value,
        values={'reschedule_reason': (reason or '').strip()},
        now=now,
    )
    replacement = ClassInstance(
        student_id=instance.student_id,
        teacher_id=instance.teacher_id,
        language=instance.language,
        scheduled_at=target,
        duration_minutes=instance.duration_minutes,
        status=SCHEDULED,
        notes=instance.notes,
        rescheduled_from_id=instance.id,
        reschedule_reason=(reason or '').strip(),
        availability_slot_id=instance.availability_slot_id,
        credit_transaction_id=credit_usage.credit_id if credit_usage is not None else None,
        created_at=now,
        updated_at=now,
    )
    db.add(replacement)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        record_lifecycle_event('class_conflict')
        raise ConflictError('Selected time is no longer available') from exc
    db.refresh(replacement)
    db.refresh(instance)
    record_lifecycle_event('reschedule')
    logger.info(
        'class_rescheduled class_id=%s new_class_id=%s scheduled_at=%s makeup=%s actor_id=%s',
        instance.id,
        replacement.id,
        target.isoformat(),
        is_makeup,
        actor.user_id,
    )

    notify(
        'class.rescheduled',
        user_ids=[instance.student_id, instance.teacher_id],
        payload={
            'class_id': instance.id,
            'new_class_id': replacement.id,
            'scheduled_at': target.isoformat(),
            'original_scheduled_at': instance.scheduled_at.isoformat(),
        },
    )
    return {
        'original': serialize_class(instance),
        'rescheduled': serialize_class(replacement),
        'credit_used_id': credit_usage.credit_id if credit_usage is not None else None,
        'monthly_count': get_monthly_reschedule_count(db, instance.student_id, time_provider=time_provider),
    }


def reschedule_lineage(db: Session, class_id: int, actor: Actor) -> list[dict]:
    """Chain from the given class back to the instance it originally replaced, newest first."""
    instance = get_class(db, class_id)
    require(actor, 'class.view', instance)
    chain = [serialize_class(instance)]
    seen = {instance.id}
    current = instance
    while current.rescheduled_from_id and current.rescheduled_from_id not in seen:
        current = get_class(db, current.rescheduled_from_id)
        seen.add(current.id)
        chain.append(serialize_class(current))
    return chain
