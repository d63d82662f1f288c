from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.core.permissions import Actor, require
from backoffice.core.time_provider import TimeProvider, default_time_provider
from backoffice.metrics import record_lifecycle_event
from backoffice.models import ClassInstance, ClassStatus, Role, StudentTeacherLink, User
from backoffice.services.credit_service import CreditEvent, apply_credit_rule
from backoffice.services.notification_service import notify


logger = logging.getLogger(__name__)

SCHEDULED = ClassStatus.SCHEDULED.value
MAKEUP_PENDING = ClassStatus.CANCELED_TEACHER_MAKEUP.value
CANCELED_STATUSES = frozenset(
    {
        ClassStatus.CANCELED_STUDENT.value,
        ClassStatus.CANCELED_TEACHER.value,
        ClassStatus.CANCELED_TEACHER_MAKEUP.value,
        ClassStatus.CANCELED_ADMIN.value,
        ClassStatus.CANCELED_CREDIT.value,
    }
)

# Statuses a class may be in when moving to the key status. SCHEDULED is the
# only source except for the makeup class, which stays open for reschedule or decline.
_TRANSITION_SOURCES: dict[str, frozenset[str]] = {
    ClassStatus.CANCELED_STUDENT.value: frozenset({SCHEDULED, MAKEUP_PENDING}),
    ClassStatus.RESCHEDULED.value: frozenset({SCHEDULED, MAKEUP_PENDING}),
}


def transition_sources(to_status: str) -> frozenset[str]:
    return _TRANSITION_SOURCES.get(to_status, frozenset({SCHEDULED}))


def is_terminal(status: str) -> bool:
    return status not in (SCHEDULED, MAKEUP_PENDING)


def _parse_status(value: str) -> str:
    try:
        return ClassStatus(value).value
    except ValueError as exc:
        raise ValidationError(f'Unknown class status: {value}') from exc


def get_class(db: Session, class_id: int) -> ClassInstance:
    instance = db.query(ClassInstance).filter(ClassInstance.id == int(class_id)).first()
    if not instance:
        raise NotFoundError('Class not found')
    return instance


def serialize_class(instance: ClassInstance) -> dict:
    return {
        'id': instance.id,
        'student_id': instance.student_id,
        'teacher_id': instance.teacher_id,
        'language': instance.language,
        'scheduled_at': instance.scheduled_at.isoformat(),
        'duration_minutes': instance.duration_minutes,
        'status': instance.status,
        'notes': instance.notes,
        'feedback': instance.feedback,
        'rescheduled_from_id': instance.rescheduled_from_id,
        'reschedule_reason': instance.reschedule_reason or None,
        'template_entry_id': instance.template_entry_id,
        'credit_transaction_id': instance.credit_transaction_id,
        'canceled_at': instance.canceled_at.isoformat() if instance.canceled_at else None,
        'canceled_by_role': instance.canceled_by_role,
        'cancel_reason': instance.cancel_reason or None,
        'completed_at': instance.completed_at.isoformat() if instance.completed_at else None,
    }


def view_class(db: Session, class_id: int, actor: Actor) -> dict:
    instance = get_class(db, class_id)
    require(actor, 'class.view', instance)
    return serialize_class(instance)


def link_student_teacher(db: Session, student_id: int, teacher_id: int | None) -> None:
    if not teacher_id:
        return
    exists = (
        db.query(StudentTeacherLink.id)
        .filter(StudentTeacherLink.student_id == int(student_id), StudentTeacherLink.teacher_id == int(teacher_id))
        .first()
    )
    if not exists:
        db.add(StudentTeacherLink(student_id=int(student_id), teacher_id=int(teacher_id)))


def require_teacher_user(db: Session, teacher_id: int) -> User:
    teacher = db.query(User).filter(User.id == int(teacher_id)).first()
    if not teacher or teacher.role != Role.TEACHER.value:
        raise ValidationError('Target user is not a teacher')
    return teacher


def teacher_has_overlap(
    db: Session,
    teacher_id: int,
    start: datetime,
    duration_minutes: int,
    *,
    exclude_class_id: int | None = None,
) -> bool:
    end = start + timedelta(minutes=duration_minutes)
    # Widest class window bounds the candidate rows; exact overlap is checked below.
    window = timedelta(minutes=max(duration_minutes, settings.class_duration_minutes) * 2)
    query = db.query(ClassInstance).filter(
        ClassInstance.teacher_id == int(teacher_id),
        ClassInstance.status == SCHEDULED,
        ClassInstance.scheduled_at > start - window,
        ClassInstance.scheduled_at < end,
    )
    if exclude_class_id is not None:
        query = query.filter(ClassInstance.id != int(exclude_class_id))
    for row in query.all():
        row_end = row.scheduled_at + timedelta(minutes=row.duration_minutes or settings.class_duration_minutes)
        if row.scheduled_at < end and start < row_end:
            return True
    return False


def apply_transition(
    db: Session,
    instance: ClassInstance,
    to_status: str,
    *,
    values: dict | None = None,
    now: datetime,
) -> None:
    """Stage a status change guarded by the status that was read.

    Fails with a conflict when the class is already past the allowed sources or
    another request changed it in the meantime. The caller commits.
    """
    from_status = instance.status
    if from_status not in transition_sources(to_status):
        record_lifecycle_event('class_conflict')
        raise ConflictError(f'Class is already {from_status}')
    changes = {ClassInstance.status: to_status, ClassInstance.updated_at: now}
    for key, value in (values or {}).items():
        changes[getattr(ClassInstance, key)] = value
    updated = (
        db.query(ClassInstance)
        .filter(ClassInstance.id == instance.id, ClassInstance.status == from_status)
        .update(changes, synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        record_lifecycle_event('class_conflict')
        raise ConflictError('Class was changed by another request; reload and try again')
    record_lifecycle_event('class_transition')
    logger.info('class_status_changed class_id=%s from=%s to=%s', instance.id, from_status, to_status)


def _commit_or_conflict(db: Session, message: str) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        record_lifecycle_event('class_conflict')
        raise ConflictError(message) from exc


def assign_teacher(
    db: Session,
    class_id: int,
    teacher_id: int | None,
    actor: Actor,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    instance = get_class(db, class_id)
    require(actor, 'class.assign_teacher', instance)
    if is_terminal(instance.status):
        raise ConflictError(f'Class is already {instance.status}')
    now = time_provider.local_naive_now()
    if instance.scheduled_at <= now:
        raise ValidationError('Cannot assign a teacher to a class in the past')
    if teacher_id is None and instance.status != SCHEDULED:
        raise ValidationError('Teacher can only be removed from a scheduled class')

    previous_teacher_id = instance.teacher_id
    if teacher_id is not None:
        require_teacher_user(db, teacher_id)
        if instance.status == SCHEDULED and teacher_has_overlap(
            db, teacher_id, instance.scheduled_at, instance.duration_minutes, exclude_class_id=instance.id
        ):
            raise ConflictError('Teacher already has a class at this time')

    read_status = instance.status
    # Last write wins on the teacher field; only the status is guarded.
    updated = (
        db.query(ClassInstance)
        .filter(ClassInstance.id == instance.id, ClassInstance.status == read_status)
        .update(
            {ClassInstance.teacher_id: teacher_id, ClassInstance.updated_at: now},
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        record_lifecycle_event('class_conflict')
        raise ConflictError('Class was changed by another request; reload and try again')
    link_student_teacher(db, instance.student_id, teacher_id)
    _commit_or_conflict(db, 'Teacher already has a class at this time')
    db.refresh(instance)
    logger.info(
        'class_teacher_assigned class_id=%s teacher_id=%s previous_teacher_id=%s actor_id=%s',
        instance.id,
        teacher_id,
        previous_teacher_id,
        actor.user_id,
    )

    notify(
        'class.teacher_assigned',
        user_ids=[instance.student_id, teacher_id, previous_teacher_id],
        payload={'class_id': instance.id, 'teacher_id': teacher_id, 'scheduled_at': instance.scheduled_at.isoformat()},
    )
    return serialize_class(instance)


def _cancel_values(actor: Actor, reason: str | None, now: datetime) -> dict:
    return {
        'canceled_at': now,
        'canceled_by_role': actor.role,
        'cancel_reason': (reason or '').strip(),
    }


def _stage_status_change(
    db: Session,
    instance: ClassInstance,
    new_status: str,
    actor: Actor,
    *,
    reason: str | None = None,
    feedback: str | None = None,
    time_provider: TimeProvider,
) -> None:
    now = time_provider.local_naive_now()
    values: dict = {}
    if new_status in CANCELED_STATUSES:
        values.update(_cancel_values(actor, reason, now))
    if new_status == ClassStatus.COMPLETED.value:
        values['completed_at'] = now
    if feedback is not None:
        values['feedback'] = feedback
    apply_transition(db, instance, new_status, values=values, now=now)
    if new_status == MAKEUP_PENDING:
        apply_credit_rule(
            db,
            event=CreditEvent.TEACHER_CANCEL_MAKEUP,
            actor=actor,
            student_id=instance.student_id,
            class_id=instance.id,
            time_provider=time_provider,
        )


def mark_status(
    db: Session,
    class_id: int,
    new_status: str,
    actor: Actor,
    *,
    feedback: str | None = None,
    reason: str | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    status_value = _parse_status(new_status)
    if status_value in (SCHEDULED, ClassStatus.RESCHEDULED.value):
        raise ValidationError(f'Status {status_value} cannot be set directly; use reschedule')
    instance = get_class(db, class_id)
    require(actor, 'class.mark_status', (instance, status_value))

    _stage_status_change(
        db, instance, status_value, actor, reason=reason, feedback=feedback, time_provider=time_provider
    )
    db.commit()
    db.refresh(instance)

    notify(
        'class.status_changed',
        user_ids=[instance.student_id, instance.teacher_id],
        payload={'class_id': instance.id, 'status': instance.status},
    )
    return serialize_class(instance)


def cancel_class(
    db: Session,
    class_id: int,
    actor: Actor,
    *,
    reason: str | None = None,
    allow_makeup: bool = True,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Cancel with the variant that matches the actor.

    Students land in CANCELED_STUDENT, which is also how a student declines a
    makeup offer. Teachers cancel with or without a makeup credit. Staff cancel
    administratively.
    """
    instance = get_class(db, class_id)
    require(actor, 'class.cancel', instance)
    now = time_provider.local_naive_now()

    late_cancellation = False
    if actor.is_staff:
        target = ClassStatus.CANCELED_ADMIN.value
    elif actor.is_teacher:
        target = MAKEUP_PENDING if allow_makeup else ClassStatus.CANCELED_TEACHER.value
    else:
        target = ClassStatus.CANCELED_STUDENT.value

    if not actor.is_staff and instance.status == SCHEDULED and instance.scheduled_at <= now:
        raise ValidationError('Class has already started')
    if target == ClassStatus.CANCELED_STUDENT.value and instance.status == SCHEDULED:
        policy_hours = settings.cancellation_policy_hours
        if instance.teacher_id:
            teacher = db.query(User).filter(User.id == instance.teacher_id).first()
            if teacher and teacher.cancellation_policy_hours is not None:
                policy_hours = int(teacher.cancellation_policy_hours)
        late_cancellation = instance.scheduled_at - now < timedelta(hours=policy_hours)

    _stage_status_change(db, instance, target, actor, reason=reason, time_provider=time_provider)
    db.commit()
    db.refresh(instance)
    logger.info(
        'class_canceled class_id=%s status=%s actor_id=%s late=%s',
        instance.id,
        target,
        actor.user_id,
        late_cancellation,
    )

    notify(
        'class.canceled',
        user_ids=[instance.student_id, instance.teacher_id],
        payload={'class_id': instance.id, 'status': target, 'reason': instance.cancel_reason},
    )
    payload = serialize_class(instance)
    payload['late_cancellation'] = late_cancellation
    return payload


def send_class_reminders(db: Session, *, time_provider: TimeProvider = default_time_provider) -> dict:
    now = time_provider.local_naive_now()
    horizon = now + timedelta(minutes=settings.class_reminder_window_minutes)
    due = (
        db.query(ClassInstance)
        .filter(
            ClassInstance.status == SCHEDULED,
            ClassInstance.reminder_sent.is_(False),
            ClassInstance.scheduled_at > now,
            ClassInstance.scheduled_at <= horizon,
        )
        .order_by(ClassInstance.scheduled_at.asc())
        .all()
    )
    sent = 0
    for instance in due:
        claimed = (
            db.query(ClassInstance)
            .filter(ClassInstance.id == instance.id, ClassInstance.reminder_sent.is_(False))
            .update({ClassInstance.reminder_sent: True}, synchronize_session=False)
        )
        db.commit()
        if claimed != 1:
            continue
        sent += 1
        notify(
            'class.reminder',
            user_ids=[instance.student_id, instance.teacher_id],
            payload={'class_id': instance.id, 'scheduled_at': instance.scheduled_at.isoformat()},
        )
    return {'checked': len(due), 'sent': sent}
