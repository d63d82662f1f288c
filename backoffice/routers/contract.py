from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from backoffice.core.permissions import Actor, require
from backoffice.core.router_guard import require_actor, require_cron_secret
from backoffice.db import get_db
from backoffice.route_logging import OperationRoute
from backoffice.schemas import (
    AutoRenewalUpdateRequest,
    ContractAdminSignRequest,
    ContractCancelRequest,
    ContractRenewRequest,
    ContractSignRequest,
)
from backoffice.services import contract_service


router = APIRouter(prefix='/contract', tags=['Contract'], route_class=OperationRoute)


def _client_fingerprint(request: Request) -> dict:
    forwarded = request.headers.get('x-forwarded-for', '')
    ip = forwarded.split(',')[0].strip() if forwarded else (request.client.host if request.client else '')
    return {'ip': ip, 'browser': request.headers.get('user-agent', '')[:255]}


@router.post('/auto-renewal/process', dependencies=[Depends(require_cron_secret)])
def process_auto_renewals(db: Session = Depends(get_db)):
    return {'success': True, **contract_service.process_contract_renewals(db)}


@router.get('/{user_id}')
def get_contract(user_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    return contract_service.get_contract(db, user_id, actor)


@router.post('/sign/{user_id}')
def sign_contract(
    user_id: int,
    payload: ContractSignRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    signature = {**payload.model_dump(), **_client_fingerprint(request)}
    return {'success': True, 'contract': contract_service.sign_contract(db, user_id, signature, actor)}


@router.post('/admin-sign/{user_id}')
def admin_sign_contract(
    user_id: int,
    request: Request,
    payload: ContractAdminSignRequest | None = None,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    admin_data = {**(payload or ContractAdminSignRequest()).model_dump(), **_client_fingerprint(request)}
    return {'success': True, 'contract': contract_service.admin_sign_contract(db, user_id, admin_data, actor)}


@router.get('/cancel/{user_id}')
def cancel_eligibility(user_id: int, actor: Actor = Depends(require_actor), db: Session = Depends(get_db)):
    require(actor, 'contract.view', user_id)
    return {'user_id': user_id, 'can_cancel': contract_service.can_cancel(db, user_id)}


@router.post('/cancel/{user_id}')
def cancel_contract(
    user_id: int,
    payload: ContractCancelRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    return {
        'success': True,
        'contract': contract_service.cancel_contract(
            db,
            user_id,
            actor,
            reason=payload.reason,
            is_admin_cancellation=payload.is_admin_cancellation,
        ),
    }


@router.post('/renew/{user_id}')
def renew_contract(
    user_id: int,
    payload: ContractRenewRequest | None = None,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    renewal_type = (payload or ContractRenewRequest()).renewal_type
    return {'success': True, 'contract': contract_service.renew_contract(db, user_id, actor, renewal_type=renewal_type)}


@router.put('/auto-renewal/{user_id}')
def set_auto_renewal(
    user_id: int,
    payload: AutoRenewalUpdateRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
):
    return {'success': True, 'contract': contract_service.set_auto_renewal(db, user_id, payload.enabled, actor)}
