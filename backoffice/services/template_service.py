from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.core.permissions import Actor, require
from backoffice.core.time_provider import TimeProvider, default_time_provider
from backoffice.metrics import timed_service
from backoffice.models import (
    ClassInstance,
    ClassStatus,
    Contract,
    Role,
    ScheduleTemplateEntry,
    StudentTeacherLink,
    TeacherAvailabilitySlot,
    User,
    Vacation,
)
from backoffice.services.class_service import link_student_teacher, require_teacher_user, teacher_has_overlap
from backoffice.services.contract_service import add_months, has_active_contract


logger = logging.getLogger(__name__)

_HHMM = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')
DELETE_OPTIONS = ('all', 'from-date', 'date-range')


def _require_student(db: Session, student_id: int) -> User:
    student = db.query(User).filter(User.id == int(student_id)).first()
    if not student or student.role != Role.STUDENT.value:
        raise NotFoundError('Student not found')
    return student


def _validate_entry(raw: dict) -> dict:
    try:
        weekday = int(raw.get('weekday'))
    except (TypeError, ValueError):
        raise ValidationError('weekday must be an integer between 0 and 6') from None
    if not 0 <= weekday <= 6:
        raise ValidationError('weekday must be an integer between 0 and 6')
    start_time = str(raw.get('start_time') or '').strip()
    if not _HHMM.match(start_time):
        raise ValidationError('start_time must use HH:MM')
    teacher_id = raw.get('teacher_id')
    if not teacher_id:
        raise ValidationError('teacher_id is required')
    return {
        'weekday': weekday,
        'start_time': start_time,
        'teacher_id': int(teacher_id),
        'language': str(raw.get('language') or '').strip(),
    }


def serialize_entry(entry: ScheduleTemplateEntry) -> dict:
    return {
        'id': entry.id,
        'weekday': entry.weekday,
        'start_time': entry.start_time,
        'teacher_id': entry.teacher_id,
        'language': entry.language,
    }


def _entries(db: Session, student_id: int) -> list[ScheduleTemplateEntry]:
    return (
        db.query(ScheduleTemplateEntry)
        .filter(ScheduleTemplateEntry.student_id == int(student_id))
        .order_by(ScheduleTemplateEntry.weekday.asc(), ScheduleTemplateEntry.start_time.asc())
        .all()
    )


def get_template(db: Session, student_id: int, actor: Actor) -> dict:
    require(actor, 'template.view', student_id)
    _require_student(db, student_id)
    return {
        'student_id': int(student_id),
        'days': [serialize_entry(entry) for entry in _entries(db, student_id)],
        'teacher_ids': teachers_for_student(db, student_id),
    }


def _future_scheduled(db: Session, entry_ids: list[int], now: datetime):
    return db.query(ClassInstance).filter(
        ClassInstance.template_entry_id.in_(entry_ids),
        ClassInstance.status == ClassStatus.SCHEDULED.value,
        ClassInstance.scheduled_at > now,
    )


def _detach_history(db: Session, entry_ids: list[int]) -> None:
    if not entry_ids:
        return
    db.query(ClassInstance).filter(ClassInstance.template_entry_id.in_(entry_ids)).update(
        {ClassInstance.template_entry_id: None}, synchronize_session=False
    )


def _sync_teacher_links(db: Session, student_id: int) -> None:
    wanted = {entry.teacher_id for entry in _entries(db, student_id)}
    for teacher_id in wanted:
        link_student_teacher(db, student_id, teacher_id)


def save_template(
    db: Session,
    student_id: int,
    days: list[dict],
    actor: Actor,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Replace the student's weekly template.

    Future scheduled classes of dropped entries are removed and those of
    entries whose teacher changed are moved to the new teacher. Past and
    finished classes are never touched.
    """
    require(actor, 'template.manage', student_id)
    _require_student(db, student_id)
    cleaned = [_validate_entry(raw) for raw in days or []]
    keys = [(row['weekday'], row['start_time']) for row in cleaned]
    if len(keys) != len(set(keys)):
        raise ValidationError('Template has duplicate weekday/time entries')
    for teacher_id in {row['teacher_id'] for row in cleaned}:
        require_teacher_user(db, teacher_id)

    now = time_provider.local_naive_now()
    existing = {(entry.weekday, entry.start_time): entry for entry in _entries(db, student_id)}
    wanted = {(row['weekday'], row['start_time']): row for row in cleaned}

    removed_ids = [entry.id for key, entry in existing.items() if key not in wanted]
    pruned = 0
    reassigned = 0
    try:
        if removed_ids:
            pruned = _future_scheduled(db, removed_ids, now).delete(synchronize_session=False)
            _detach_history(db, removed_ids)
            db.query(ScheduleTemplateEntry).filter(ScheduleTemplateEntry.id.in_(removed_ids)).delete(
                synchronize_session=False
            )

        for key, row in wanted.items():
            entry = existing.get(key)
            if entry is None:
                db.add(ScheduleTemplateEntry(student_id=int(student_id), created_at=now, **row))
                continue
            entry.language = row['language']
            if entry.teacher_id != row['teacher_id']:
                entry.teacher_id = row['teacher_id']
                reassigned += _future_scheduled(db, [entry.id], now).update(
                    {ClassInstance.teacher_id: row['teacher_id'], ClassInstance.updated_at: now},
                    synchronize_session=False,
                )
        db.flush()
        _sync_teacher_links(db, student_id)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError('New teacher already has a class at one of these times') from exc
    logger.info(
        'template_saved student_id=%s entries=%s removed=%s pruned_classes=%s reassigned_classes=%s',
        student_id,
        len(wanted),
        len(removed_ids),
        pruned,
        reassigned,
    )
    result = get_template(db, student_id, actor)
    result.update({'pruned_classes': pruned, 'reassigned_classes': reassigned})
    return result


def delete_template(
    db: Session,
    student_id: int,
    actor: Actor,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    require(actor, 'template.manage', student_id)
    _require_student(db, student_id)
    now = time_provider.local_naive_now()
    entry_ids = [entry.id for entry in _entries(db, student_id)]
    deleted_classes = 0
    if entry_ids:
        deleted_classes = _future_scheduled(db, entry_ids, now).delete(synchronize_session=False)
        _detach_history(db, entry_ids)
        db.query(ScheduleTemplateEntry).filter(ScheduleTemplateEntry.id.in_(entry_ids)).delete(
            synchronize_session=False
        )
    db.commit()
    logger.info('template_deleted student_id=%s entries=%s deleted_classes=%s', student_id, len(entry_ids), deleted_classes)
    return {'success': True, 'deleted_entries': len(entry_ids), 'deleted_classes': deleted_classes}


def assign_schedule(
    db: Session,
    *,
    student_id: int,
    teacher_id: int,
    slot_id: int,
    actor: Actor,
    language: str = '',
    weekday: int | None = None,
    start_time: str | None = None,
) -> dict:
    """Turn one of the teacher's open availability slots into a recurring template entry.

    `weekday` and `start_time` are what the caller saw for the slot; a mismatch
    means the slot changed since it was listed.
    """
    require(actor, 'schedule.assign', student_id)
    _require_student(db, student_id)
    require_teacher_user(db, teacher_id)
    slot = (
        db.query(TeacherAvailabilitySlot)
        .filter(TeacherAvailabilitySlot.id == int(slot_id), TeacherAvailabilitySlot.teacher_id == int(teacher_id))
        .first()
    )
    if not slot:
        raise NotFoundError('Availability slot not found')
    if (weekday is not None and int(weekday) != slot.weekday) or (start_time and start_time != slot.start_time):
        raise ConflictError('Availability slot changed; reload and try again')
    clash = (
        db.query(ScheduleTemplateEntry.id)
        .filter(
            ScheduleTemplateEntry.student_id == int(student_id),
            ScheduleTemplateEntry.weekday == slot.weekday,
            ScheduleTemplateEntry.start_time == slot.start_time,
        )
        .first()
    )
    if clash:
        raise ConflictError('Student already has a class at this weekday and time')

    entry = ScheduleTemplateEntry(
        student_id=int(student_id),
        weekday=slot.weekday,
        start_time=slot.start_time,
        teacher_id=int(teacher_id),
        language=(language or '').strip(),
    )
    db.add(entry)
    db.delete(slot)
    link_student_teacher(db, student_id, teacher_id)
    db.commit()
    db.refresh(entry)
    logger.info(
        'schedule_assigned student_id=%s teacher_id=%s slot_id=%s entry_id=%s',
        student_id,
        teacher_id,
        slot_id,
        entry.id,
    )
    return {'success': True, 'entry': serialize_entry(entry)}


def _default_window(db: Session, student: User, today: date) -> tuple[date, date]:
    contract = db.query(Contract).filter(Contract.user_id == student.id).first()
    start = max(student.contract_start_date or today, today)
    if student.contract_start_date and student.contract_length_months:
        end = add_months(
            datetime.combine(student.contract_start_date, time()), int(student.contract_length_months)
        ).date()
    elif contract is not None and contract.expires_at is not None:
        end = contract.expires_at.date()
    else:
        end = today + timedelta(days=settings.contract_validity_months * 30)
    if contract is not None and contract.expires_at is not None:
        end = min(end, contract.expires_at.date())
    return start, end


def _parse_hhmm(value: str) -> time:
    hour, minute = value.split(':', 1)
    return time(int(hour), int(minute))


@timed_service('generate_classes')
def generate_classes(
    db: Session,
    student_id: int,
    actor: Actor,
    *,
    from_date: date | None = None,
    to_date: date | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Expand the weekly template into concrete classes.

    Safe to repeat: a (template entry, datetime) pair that already exists in
    any status is skipped, so a moved or cancelled class is never recreated.
    """
    require(actor, 'classes.generate', student_id)
    student = _require_student(db, student_id)
    now = time_provider.local_naive_now()
    if not has_active_contract(db, student.id, time_provider=time_provider):
        raise ConflictError('Student has no valid contract')
    entries = _entries(db, student_id)
    if not entries:
        raise ValidationError('Student has no schedule template')

    default_start, default_end = _default_window(db, student, now.date())
    start = from_date or default_start
    end = to_date or default_end
    if end < start:
        raise ValidationError('toDate must not be before fromDate')

    existing = {
        (row.template_entry_id, row.scheduled_at)
        for row in db.query(ClassInstance.template_entry_id, ClassInstance.scheduled_at)
        .filter(
            ClassInstance.template_entry_id.in_([entry.id for entry in entries]),
            ClassInstance.scheduled_at >= datetime.combine(start, time()),
            ClassInstance.scheduled_at < datetime.combine(end + timedelta(days=1), time()),
        )
        .all()
    }

    vacations: dict[int, list[tuple[date, date]]] = {}
    for row in (
        db.query(Vacation)
        .filter(
            Vacation.teacher_id.in_(sorted({entry.teacher_id for entry in entries})),
            Vacation.start_date <= end,
            Vacation.end_date >= start,
        )
        .all()
    ):
        vacations.setdefault(row.teacher_id, []).append((row.start_date, row.end_date))

    created = 0
    skipped = 0
    conflicts: list[dict] = []

    def _conflict(entry: ScheduleTemplateEntry, scheduled_at: datetime, reason: str) -> None:
        conflicts.append({'template_entry_id': entry.id, 'scheduled_at': scheduled_at.isoformat(), 'reason': reason})
        logger.warning(
            'generate_classes_conflict student_id=%s entry_id=%s scheduled_at=%s reason=%s',
            student.id,
            entry.id,
            scheduled_at.isoformat(),
            reason,
        )

    day = start
    while day <= end:
        for entry in entries:
            if entry.weekday != day.weekday():
                continue
            scheduled_at = datetime.combine(day, _parse_hhmm(entry.start_time))
            if scheduled_at <= now or (entry.id, scheduled_at) in existing:
                skipped += 1
                continue
            if any(first <= day <= last for first, last in vacations.get(entry.teacher_id, ())):
                _conflict(entry, scheduled_at, 'teacher_on_vacation')
                continue
            if teacher_has_overlap(db, entry.teacher_id, scheduled_at, settings.class_duration_minutes):
                _conflict(entry, scheduled_at, 'teacher_busy')
                continue
            try:
                with db.begin_nested():
                    db.add(
                        ClassInstance(
                            student_id=student.id,
                            teacher_id=entry.teacher_id,
                            language=entry.language,
                            scheduled_at=scheduled_at,
                            duration_minutes=settings.class_duration_minutes,
                            status=ClassStatus.SCHEDULED.value,
                            template_entry_id=entry.id,
                            created_at=now,
                            updated_at=now,
                        )
                    )
            except IntegrityError:
                _conflict(entry, scheduled_at, 'teacher_busy')
                continue
            existing.add((entry.id, scheduled_at))
            created += 1
        day += timedelta(days=1)
    db.commit()
    logger.info(
        'classes_generated student_id=%s from=%s to=%s created=%s skipped=%s conflicts=%s',
        student.id,
        start,
        end,
        created,
        skipped,
        len(conflicts),
    )
    return {
        'success': True,
        'student_id': student.id,
        'from_date': start.isoformat(),
        'to_date': end.isoformat(),
        'created': created,
        'skipped': skipped,
        'conflicts': conflicts,
    }


def delete_classes(
    db: Session,
    student_id: int,
    actor: Actor,
    *,
    option: str = 'all',
    from_date: date | None = None,
    to_date: date | None = None,
    template_entry_ids: list[int] | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    require(actor, 'template.manage', student_id)
    _require_student(db, student_id)
    if option not in DELETE_OPTIONS:
        raise ValidationError(f'option must be one of {", ".join(DELETE_OPTIONS)}')
    if option in ('from-date', 'date-range') and from_date is None:
        raise ValidationError('fromDate is required')
    if option == 'date-range':
        if to_date is None:
            raise ValidationError('toDate is required')
        if to_date < from_date:
            raise ValidationError('toDate must not be before fromDate')

    now = time_provider.local_naive_now()
    query = db.query(ClassInstance).filter(
        ClassInstance.student_id == int(student_id),
        ClassInstance.status == ClassStatus.SCHEDULED.value,
        ClassInstance.scheduled_at > now,
    )
    if option in ('from-date', 'date-range'):
        query = query.filter(ClassInstance.scheduled_at >= datetime.combine(from_date, time()))
    if option == 'date-range':
        query = query.filter(ClassInstance.scheduled_at < datetime.combine(to_date + timedelta(days=1), time()))
    if template_entry_ids:
        query = query.filter(ClassInstance.template_entry_id.in_([int(item) for item in template_entry_ids]))
    deleted = query.delete(synchronize_session=False)
    db.commit()
    logger.info('classes_deleted student_id=%s option=%s deleted=%s', student_id, option, deleted)
    return {'success': True, 'deleted': deleted}


def teachers_for_student(db: Session, student_id: int) -> list[int]:
    rows = db.query(StudentTeacherLink.teacher_id).filter(StudentTeacherLink.student_id == int(student_id)).all()
    return sorted(int(row.teacher_id) for row in rows)
