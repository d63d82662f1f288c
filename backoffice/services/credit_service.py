from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import case
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.core.permissions import Actor
from backoffice.core.time_provider import TimeProvider, default_time_provider, to_local_naive
from backoffice.metrics import record_lifecycle_event
from backoffice.models import CreditAction, CreditTransaction, CreditType, Role, User


logger = logging.getLogger(__name__)


class CreditEvent(str, Enum):
    TEACHER_CANCEL_MAKEUP = 'teacher_cancel_makeup'
    MAKEUP_RESCHEDULE = 'makeup_reschedule'


@dataclass(frozen=True)
class CreditRule:
    effect: str  # grant | consume
    credit_type: CreditType
    amount: int = 1
    validity_days: int | None = None


_MAKEUP_GRANT = CreditRule(effect='grant', credit_type=CreditType.TEACHER_CANCELLATION)

# Ledger side effects of class lifecycle events, keyed by (event, actor role).
# Pairs absent from the table have no ledger effect.
CREDIT_RULES: dict[tuple[CreditEvent, str], CreditRule] = {
    (CreditEvent.TEACHER_CANCEL_MAKEUP, Role.TEACHER.value): _MAKEUP_GRANT,
    (CreditEvent.TEACHER_CANCEL_MAKEUP, Role.ADMIN.value): _MAKEUP_GRANT,
    (CreditEvent.TEACHER_CANCEL_MAKEUP, Role.MANAGER.value): _MAKEUP_GRANT,
    (CreditEvent.MAKEUP_RESCHEDULE, Role.STUDENT.value): CreditRule(
        effect='consume', credit_type=CreditType.TEACHER_CANCELLATION
    ),
}


def credit_rule_for(event: CreditEvent, role: str) -> CreditRule | None:
    return CREDIT_RULES.get((event, role))


def _parse_credit_type(value: str | CreditType) -> CreditType:
    try:
        return CreditType(value)
    except ValueError as exc:
        raise ValidationError(f'Unknown credit type: {value}') from exc


def _require_student(db: Session, student_id: int) -> User:
    student = db.query(User).filter(User.id == int(student_id)).first()
    if not student or student.role != Role.STUDENT.value:
        raise NotFoundError('Student not found')
    return student


def _is_active(row: CreditTransaction, now: datetime) -> bool:
    return row.used_at is None and int(row.remaining or 0) > 0 and row.expires_at is not None and row.expires_at > now


def grant_credit(
    db: Session,
    *,
    student_id: int,
    credit_type: str | CreditType,
    amount: int,
    expires_at: datetime,
    reason: str = '',
    granted_by: int | None = None,
    class_id: int | None = None,
    commit: bool = True,
    time_provider: TimeProvider = default_time_provider,
) -> CreditTransaction:
    parsed_type = _parse_credit_type(credit_type)
    if int(amount) < 1:
        raise ValidationError('Amount must be at least 1')
    if expires_at is None:
        raise ValidationError('expiresAt is required')
    now = time_provider.local_naive_now()
    expires_local = to_local_naive(expires_at)
    if expires_local <= now:
        raise ValidationError('expiresAt must be in the future')
    _require_student(db, student_id)

    row = CreditTransaction(
        student_id=int(student_id),
        type=parsed_type.value,
        action=CreditAction.GRANTED.value,
        amount=int(amount),
        remaining=int(amount),
        expires_at=expires_local,
        reason=(reason or '').strip(),
        class_id=class_id,
        performed_by=granted_by,
        performed_at=now,
    )
    db.add(row)
    if commit:
        db.commit()
        db.refresh(row)
    else:
        db.flush()
    record_lifecycle_event('credit_granted')
    logger.info(
        'credit_granted student_id=%s credit_id=%s type=%s amount=%s expires_at=%s',
        student_id,
        row.id,
        parsed_type.value,
        amount,
        expires_local.isoformat(),
    )
    return row


def consume_credit(
    db: Session,
    *,
    student_id: int,
    transaction_id: int,
    class_id: int | None = None,
    used_by: int | None = None,
    commit: bool = True,
    time_provider: TimeProvider = default_time_provider,
) -> CreditTransaction:
    credit = (
        db.query(CreditTransaction)
        .filter(
            CreditTransaction.id == int(transaction_id),
            CreditTransaction.student_id == int(student_id),
            CreditTransaction.action == CreditAction.GRANTED.value,
        )
        .first()
    )
    if not credit:
        raise NotFoundError('Credit not found')

    now = time_provider.local_naive_now()
    # Single guarded statement: two concurrent consumers cannot both pass the filter.
    updated = (
        db.query(CreditTransaction)
        .filter(
            CreditTransaction.id == credit.id,
            CreditTransaction.used_at.is_(None),
            CreditTransaction.remaining > 0,
            CreditTransaction.expires_at > now,
        )
        .update(
            {
                CreditTransaction.remaining: CreditTransaction.remaining - 1,
                CreditTransaction.used_at: case((CreditTransaction.remaining == 1, now), else_=None),
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        db.refresh(credit)
        record_lifecycle_event('credit_conflict')
        if credit.used_at is not None or int(credit.remaining or 0) <= 0:
            raise ConflictError('Credit already used')
        if credit.expires_at is not None and credit.expires_at <= now:
            raise ConflictError('Credit expired')
        raise ConflictError('Credit is no longer available')

    usage = CreditTransaction(
        student_id=int(student_id),
        credit_id=credit.id,
        type=credit.type,
        action=CreditAction.USED.value,
        amount=1,
        remaining=0,
        expires_at=credit.expires_at,
        reason=credit.reason,
        class_id=class_id,
        performed_by=used_by,
        performed_at=now,
    )
    db.add(usage)
    if commit:
        db.commit()
        db.refresh(usage)
    else:
        db.flush()
    db.expire(credit)
    record_lifecycle_event('credit_consumed')
    logger.info(
        'credit_consumed student_id=%s credit_id=%s class_id=%s used_by=%s',
        student_id,
        credit.id,
        class_id,
        used_by,
    )
    return usage


def find_available_credit(
    db: Session,
    student_id: int,
    *,
    preferred_type: str | CreditType | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> CreditTransaction | None:
    """Oldest active grant, trying `preferred_type` first."""
    now = time_provider.local_naive_now()
    base = db.query(CreditTransaction).filter(
        CreditTransaction.student_id == int(student_id),
        CreditTransaction.action == CreditAction.GRANTED.value,
        CreditTransaction.used_at.is_(None),
        CreditTransaction.remaining > 0,
        CreditTransaction.expires_at > now,
    )
    ordering = (CreditTransaction.performed_at.asc(), CreditTransaction.id.asc())
    if preferred_type is not None:
        parsed_type = _parse_credit_type(preferred_type)
        preferred = base.filter(CreditTransaction.type == parsed_type.value).order_by(*ordering).first()
        if preferred:
            return preferred
    return base.order_by(*ordering).first()


def apply_credit_rule(
    db: Session,
    *,
    event: CreditEvent,
    actor: Actor,
    student_id: int,
    class_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> CreditTransaction | None:
    """Stage the ledger effect for a lifecycle event without committing.

    Returns the granted row or the USED row, or None when the pair has no effect.
    """
    rule = credit_rule_for(event, actor.role)
    if rule is None:
        return None
    if rule.effect == 'grant':
        validity_days = rule.validity_days or settings.makeup_credit_validity_days
        return grant_credit(
            db,
            student_id=student_id,
            credit_type=rule.credit_type,
            amount=rule.amount,
            expires_at=time_provider.local_naive_now() + timedelta(days=validity_days),
            reason=f'{event.value} class_id={class_id}',
            granted_by=actor.user_id or None,
            class_id=class_id,
            commit=False,
            time_provider=time_provider,
        )

    # Only the matching credit type is acceptable for the event.
    available = find_available_credit(db, student_id, preferred_type=rule.credit_type, time_provider=time_provider)
    if available is None or available.type != rule.credit_type.value:
        raise ConflictError('No makeup credit available')
    return consume_credit(
        db,
        student_id=student_id,
        transaction_id=available.id,
        class_id=class_id,
        used_by=actor.user_id or None,
        commit=False,
        time_provider=time_provider,
    )


def _serialize(row: CreditTransaction) -> dict:
    return {
        'id': row.id,
        'type': row.type,
        'action': row.action,
        'amount': row.amount,
        'remaining': row.remaining,
        'expires_at': row.expires_at.isoformat() if row.expires_at else None,
        'used_at': row.used_at.isoformat() if row.used_at else None,
        'reason': row.reason,
        'credit_id': row.credit_id,
        'class_id': row.class_id,
        'performed_by': row.performed_by,
        'performed_at': row.performed_at.isoformat() if row.performed_at else None,
    }


def get_balance(
    db: Session,
    student_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    _require_student(db, student_id)
    now = time_provider.local_naive_now()
    rows = db.query(CreditTransaction).filter(CreditTransaction.student_id == int(student_id)).all()

    by_type = {credit_type.value: 0 for credit_type in CreditType}
    expired = 0
    used = 0
    active: list[CreditTransaction] = []
    for row in rows:
        if row.action == CreditAction.USED.value:
            used += int(row.amount or 0)
            continue
        if _is_active(row, now):
            by_type[row.type] = by_type.get(row.type, 0) + int(row.remaining)
            active.append(row)
        elif row.used_at is None and int(row.remaining or 0) > 0:
            expired += int(row.remaining)

    active.sort(key=lambda row: (row.expires_at, row.id))
    return {
        'student_id': int(student_id),
        'total_credits': sum(by_type.values()),
        'bonus_credits': by_type[CreditType.BONUS.value],
        'late_student_credits': by_type[CreditType.LATE_STUDENTS.value],
        'teacher_cancellation_credits': by_type[CreditType.TEACHER_CANCELLATION.value],
        'expired_credits': expired,
        'used_credits': used,
        'active_credits': [_serialize(row) for row in active],
    }


def get_history(db: Session, student_id: int) -> list[dict]:
    _require_student(db, student_id)
    rows = (
        db.query(CreditTransaction)
        .filter(CreditTransaction.student_id == int(student_id))
        .order_by(CreditTransaction.performed_at.desc(), CreditTransaction.id.desc())
        .all()
    )
    return [_serialize(row) for row in rows]
