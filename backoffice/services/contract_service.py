from __future__ import annotations

import calendar
import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from backoffice.core.permissions import SYSTEM_ACTOR, Actor, require
from backoffice.core.time_provider import TimeProvider, default_time_provider, to_local_naive
from backoffice.metrics import record_lifecycle_event
from backoffice.models import Contract, ContractLog, User
from backoffice.services.audit_service import log_event
from backoffice.services.notification_service import notify


logger = logging.getLogger(__name__)

_TAX_ID_DIGITS = 11


class ContractState:
    PENDING = 'pending'
    STUDENT_SIGNED = 'student_signed'
    VALID = 'valid'
    EXPIRING_SOON = 'expiring_soon'
    EXPIRED = 'expired'
    CANCELLED = 'cancelled'


@dataclass(frozen=True)
class ContractFlags:
    state: str
    is_valid: bool
    is_near_expiration: bool
    is_expired: bool
    days_until_expiration: int | None


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def contract_state(contract: Contract | None, now: datetime) -> ContractFlags:
    """Derive lifecycle flags from stored facts; nothing here is persisted."""
    if contract is None or not contract.signed:
        return ContractFlags(ContractState.PENDING, False, False, False, None)

    days_left: int | None = None
    is_expired = False
    if contract.expires_at is not None:
        seconds_left = (contract.expires_at - now).total_seconds()
        days_left = math.ceil(seconds_left / 86400)
        is_expired = now >= contract.expires_at

    is_valid = bool(contract.signed_by_admin) and contract.cancelled_at is None and contract.expires_at is not None and not is_expired
    is_near_expiration = (
        is_valid and days_left is not None and 0 < days_left <= settings.contract_expiring_soon_days
    )

    if contract.cancelled_at is not None:
        state = ContractState.CANCELLED
    elif is_expired:
        state = ContractState.EXPIRED
    elif not contract.signed_by_admin:
        state = ContractState.STUDENT_SIGNED
    elif is_near_expiration:
        state = ContractState.EXPIRING_SOON
    else:
        state = ContractState.VALID
    return ContractFlags(state, is_valid, is_near_expiration, is_expired, days_left)


def _get_contract(db: Session, user_id: int) -> Contract | None:
    return db.query(Contract).filter(Contract.user_id == int(user_id)).first()


def _require_contract(db: Session, user_id: int) -> Contract:
    contract = _get_contract(db, user_id)
    if not contract:
        raise NotFoundError('Contract not found')
    return contract


def _require_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == int(user_id)).first()
    if not user:
        raise NotFoundError('User not found')
    return user


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_log(log: ContractLog | None) -> dict | None:
    if log is None:
        return None
    return {
        'id': log.id,
        'name': log.name,
        'tax_id': log.tax_id,
        'birth_date': _iso(log.birth_date),
        'address': log.address,
        'city': log.city,
        'state': log.state,
        'zip_code': log.zip_code,
        'signed_at': _iso(log.signed_at),
        'viewed_at': _iso(log.viewed_at),
        'agreed_to_terms': log.agreed_to_terms,
        'admin_name': log.admin_name,
        'admin_signed_at': _iso(log.admin_signed_at),
        'contract_version': log.contract_version,
    }


def serialize_contract(db: Session, user_id: int, contract: Contract | None, now: datetime) -> dict:
    flags = contract_state(contract, now)
    log = None
    if contract is not None and contract.log_id:
        log = db.query(ContractLog).filter(ContractLog.id == contract.log_id).first()
    return {
        'user_id': int(user_id),
        'state': flags.state,
        'is_valid': flags.is_valid,
        'is_near_expiration': flags.is_near_expiration,
        'is_expired': flags.is_expired,
        'days_until_expiration': flags.days_until_expiration,
        'can_cancel': _can_cancel(contract, now),
        'signed': bool(contract.signed) if contract else False,
        'signed_at': _iso(contract.signed_at) if contract else None,
        'signed_by_admin': bool(contract.signed_by_admin) if contract else False,
        'admin_signed_at': _iso(contract.admin_signed_at) if contract else None,
        'expires_at': _iso(contract.expires_at) if contract else None,
        'auto_renewal': bool(contract.auto_renewal) if contract else False,
        'cancelled_at': _iso(contract.cancelled_at) if contract else None,
        'cancelled_by': contract.cancelled_by if contract else None,
        'cancellation_reason': contract.cancellation_reason if contract else None,
        'renewal_count': int(contract.renewal_count or 0) if contract else 0,
        'last_renewal_at': _iso(contract.last_renewal_at) if contract else None,
        'log_id': contract.log_id if contract else None,
        'contract_version': contract.contract_version if contract else settings.contract_version,
        'log': _serialize_log(log),
    }


def get_contract(
    db: Session,
    user_id: int,
    actor: Actor,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    require(actor, 'contract.view', user_id)
    _require_user(db, user_id)
    return serialize_contract(db, user_id, _get_contract(db, user_id), time_provider.local_naive_now())


def has_active_contract(
    db: Session,
    user_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> bool:
    return contract_state(_get_contract(db, user_id), time_provider.local_naive_now()).is_valid


def _can_cancel(contract: Contract | None, now: datetime) -> bool:
    if contract is None or not contract.signed or contract.cancelled_at is not None:
        return False
    days_left = contract_state(contract, now).days_until_expiration
    return days_left is not None and 0 < days_left <= settings.contract_expiring_soon_days


def can_cancel(db: Session, user_id: int, *, time_provider: TimeProvider = default_time_provider) -> bool:
    return _can_cancel(_get_contract(db, user_id), time_provider.local_naive_now())


def _clean(value: str | None) -> str:
    return (value or '').strip()


def _validate_signature(signature: dict, now: datetime) -> dict:
    name = _clean(signature.get('name'))
    if len(name) < 3:
        raise ValidationError('Full name is required')
    tax_id = re.sub(r'\D', '', signature.get('tax_id') or '')
    if len(tax_id) != _TAX_ID_DIGITS:
        raise ValidationError('Tax id must contain 11 digits')
    birth_date = signature.get('birth_date')
    if not isinstance(birth_date, date) or birth_date >= now.date():
        raise ValidationError('A valid birth date is required')
    address = _clean(signature.get('address'))
    if not address:
        raise ValidationError('Address is required')
    if not signature.get('agreed_to_terms'):
        raise ValidationError('Terms must be accepted')
    return {
        'name': name,
        'tax_id': tax_id,
        'birth_date': birth_date,
        'address': address,
        'city': _clean(signature.get('city')),
        'state': _clean(signature.get('state')),
        'zip_code': _clean(signature.get('zip_code')),
        'ip': _clean(signature.get('ip')),
        'browser': _clean(signature.get('browser')),
        'viewed_at': to_local_naive(signature['viewed_at']) if signature.get('viewed_at') else None,
    }


def _apply_admin_signature(contract: Contract, log: ContractLog, admin: dict, now: datetime) -> None:
    if log.admin_signed_at is not None:
        raise ConflictError('Contract already countersigned')
    log.admin_name = _clean(admin.get('name')) or 'Administration'
    log.admin_tax_id = re.sub(r'\D', '', admin.get('tax_id') or '') or None
    log.admin_ip = _clean(admin.get('ip')) or None
    log.admin_browser = _clean(admin.get('browser')) or None
    log.admin_signed_at = now
    contract.signed_by_admin = True
    contract.admin_signed_at = now


def sign_contract(
    db: Session,
    user_id: int,
    signature: dict,
    actor: Actor,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    require(actor, 'contract.sign', user_id)
    _require_user(db, user_id)
    now = time_provider.local_naive_now()
    fields = _validate_signature(signature, now)
    contract = _get_contract(db, user_id)
    if contract_state(contract, now).is_valid:
        raise ConflictError('Contract already signed and valid')

    log = ContractLog(
        user_id=int(user_id),
        signed_at=now,
        agreed_to_terms=True,
        contract_version=settings.contract_version,
        **fields,
    )
    db.add(log)
    db.flush()

    if contract is None:
        contract = Contract(user_id=int(user_id))
        db.add(contract)
    contract.signed = True
    contract.signed_at = now
    contract.signed_by_admin = False
    contract.admin_signed_at = None
    contract.expires_at = add_months(now, settings.contract_validity_months)
    contract.auto_renewal = True
    contract.cancelled_at = None
    contract.cancelled_by = None
    contract.cancellation_reason = None
    contract.log_id = log.id
    contract.contract_version = settings.contract_version
    if settings.contract_auto_admin_sign:
        _apply_admin_signature(contract, log, {}, now)
    db.flush()
    log_event(
        db,
        action='contract.signed',
        entity_type='contract',
        entity_id=contract.id,
        actor_id=actor.user_id,
        payload={'log_id': log.id, 'expires_at': contract.expires_at},
        time_provider=time_provider,
    )
    db.commit()
    logger.info('contract_signed user_id=%s log_id=%s expires_at=%s', user_id, log.id, contract.expires_at)
    notify('contract.signed', user_ids=[int(user_id)], payload={'log_id': log.id})
    return serialize_contract(db, user_id, contract, now)


def admin_sign_contract(
    db: Session,
    user_id: int,
    admin_data: dict,
    actor: Actor,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    require(actor, 'contract.admin_sign', user_id)
    contract = _require_contract(db, user_id)
    if not contract.signed or not contract.log_id:
        raise ConflictError('Student has not signed the contract')
    if contract.cancelled_at is not None:
        raise ConflictError('Contract is cancelled')
    log = db.query(ContractLog).filter(ContractLog.id == contract.log_id).first()
    if log is None:
        raise NotFoundError('Contract log not found')
    now = time_provider.local_naive_now()
    _apply_admin_signature(contract, log, admin_data, now)
    log_event(
        db,
        action='contract.admin_signed',
        entity_type='contract',
        entity_id=contract.id,
        actor_id=actor.user_id,
        payload={'log_id': log.id},
        time_provider=time_provider,
    )
    db.commit()
    logger.info('contract_admin_signed user_id=%s actor_id=%s', user_id, actor.user_id)
    return serialize_contract(db, user_id, contract, now)


def cancel_contract(
    db: Session,
    user_id: int,
    actor: Actor,
    *,
    reason: str | None,
    is_admin_cancellation: bool | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Cancel the contract under the staff rules or the student's own rules.

    Staff default to the staff rules and may pass is_admin_cancellation=False
    to act under the student's rules instead.
    """
    require(actor, 'contract.cancel', user_id)
    as_staff = actor.is_staff if is_admin_cancellation is None else bool(is_admin_cancellation)
    if as_staff and not actor.is_staff:
        raise AuthorizationError('Only staff can cancel as admin')
    cleaned_reason = _clean(reason)
    if not cleaned_reason:
        raise ValidationError('Cancellation reason is required')
    contract = _require_contract(db, user_id)
    now = time_provider.local_naive_now()
    if contract.cancelled_at is not None:
        raise ConflictError('Contract already cancelled')
    flags = contract_state(contract, now)
    if as_staff:
        if not contract.signed or not flags.is_valid:
            raise ConflictError('Only a signed and valid contract can be cancelled')
    elif not _can_cancel(contract, now):
        raise ConflictError('Contract is not eligible for cancellation')

    contract.cancelled_at = now
    contract.cancelled_by = actor.user_id
    contract.cancellation_reason = cleaned_reason
    contract.auto_renewal = False
    log_event(
        db,
        action='contract.cancelled',
        entity_type='contract',
        entity_id=contract.id,
        actor_id=actor.user_id,
        payload={'reason': cleaned_reason, 'by_staff': as_staff},
        time_provider=time_provider,
    )
    db.commit()
    logger.info('contract_cancelled user_id=%s actor_id=%s staff=%s', user_id, actor.user_id, as_staff)
    notify('contract.cancelled', user_ids=[int(user_id)], payload={'reason': cleaned_reason})
    return serialize_contract(db, user_id, contract, now)


def _renew(db: Session, contract: Contract, actor: Actor, renewal_type: str, now: datetime, time_provider: TimeProvider) -> None:
    flags = contract_state(contract, now)
    previous_expiry = contract.expires_at
    previous_count = int(contract.renewal_count or 0)
    if contract.cancelled_at is not None or flags.is_expired or previous_expiry is None:
        new_expiry = add_months(now, settings.contract_validity_months)
    else:
        new_expiry = add_months(previous_expiry, settings.contract_validity_months)
    # Same record and log_id; the audit row keeps the history.
    updated = (
        db.query(Contract)
        .filter(Contract.id == contract.id, Contract.renewal_count == previous_count)
        .update(
            {
                Contract.expires_at: new_expiry,
                Contract.cancelled_at: None,
                Contract.cancelled_by: None,
                Contract.cancellation_reason: None,
                Contract.renewal_count: previous_count + 1,
                Contract.auto_renewal: renewal_type == 'automatic',
                Contract.last_renewal_at: now,
                Contract.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        raise ConflictError('Contract was renewed concurrently')
    db.expire(contract)
    log_event(
        db,
        action='contract.renewed',
        entity_type='contract',
        entity_id=contract.id,
        actor_id=actor.user_id or None,
        payload={
            'renewal_type': renewal_type,
            'previous_expires_at': previous_expiry,
            'expires_at': new_expiry,
            'previous_state': flags.state,
            'renewal_count': previous_count + 1,
        },
        time_provider=time_provider,
    )
    record_lifecycle_event('contract_renewed')


def renew_contract(
    db: Session,
    user_id: int,
    actor: Actor,
    *,
    renewal_type: str = 'manual',
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    require(actor, 'contract.renew', user_id)
    contract = _require_contract(db, user_id)
    if not contract.signed or not contract.signed_by_admin:
        raise ConflictError('Contract must be signed by both parties before renewal')
    now = time_provider.local_naive_now()
    _renew(db, contract, actor, renewal_type, now, time_provider)
    db.commit()
    logger.info(
        'contract_renewed user_id=%s type=%s expires_at=%s renewal_count=%s',
        user_id,
        renewal_type,
        contract.expires_at,
        contract.renewal_count,
    )
    notify(
        'contract.renewed',
        user_ids=[int(user_id)],
        payload={'expires_at': _iso(contract.expires_at), 'renewal_type': renewal_type},
    )
    return serialize_contract(db, user_id, contract, now)


def set_auto_renewal(
    db: Session,
    user_id: int,
    enabled: bool,
    actor: Actor,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    require(actor, 'contract.auto_renewal', user_id)
    contract = _require_contract(db, user_id)
    if not contract.signed:
        raise ConflictError('Contract is not signed')
    if contract.cancelled_at is not None:
        raise ConflictError('Contract is cancelled')
    contract.auto_renewal = bool(enabled)
    log_event(
        db,
        action='contract.auto_renewal_changed',
        entity_type='contract',
        entity_id=contract.id,
        actor_id=actor.user_id,
        payload={'enabled': bool(enabled)},
        time_provider=time_provider,
    )
    db.commit()
    return serialize_contract(db, user_id, contract, time_provider.local_naive_now())


def process_contract_renewals(db: Session, *, time_provider: TimeProvider = default_time_provider) -> dict:
    """Auto-renew countersigned contracts that are inside the renewal window."""
    now = time_provider.local_naive_now()
    candidates = (
        db.query(Contract)
        .filter(
            Contract.signed.is_(True),
            Contract.signed_by_admin.is_(True),
            Contract.auto_renewal.is_(True),
            Contract.cancelled_at.is_(None),
            Contract.expires_at.is_not(None),
        )
        .all()
    )
    renewed: list[int] = []
    failed: list[int] = []
    for contract in candidates:
        days_left = contract_state(contract, now).days_until_expiration
        if days_left is None or not 0 <= days_left <= settings.contract_auto_renew_window_days:
            continue
        try:
            _renew(db, contract, SYSTEM_ACTOR, 'automatic', now, time_provider)
            db.commit()
        except ConflictError:
            logger.info('contract_auto_renewal_skipped user_id=%s reason=concurrent_renewal', contract.user_id)
            continue
        except Exception:
            db.rollback()
            failed.append(contract.user_id)
            logger.exception('contract_auto_renewal_failed user_id=%s', contract.user_id)
            continue
        renewed.append(contract.user_id)
        notify(
            'contract.renewed',
            user_ids=[contract.user_id],
            payload={'expires_at': _iso(contract.expires_at), 'renewal_type': 'automatic'},
        )
    logger.info('contract_auto_renewal_processed checked=%s renewed=%s failed=%s', len(candidates), len(renewed), len(failed))
    return {'checked': len(candidates), 'renewed': renewed, 'failed': failed}
