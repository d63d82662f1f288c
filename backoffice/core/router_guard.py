from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from backoffice.config import settings
from backoffice.core.permissions import Actor
from backoffice.services.auth_service import validate_session_token


def _resolve_token(request: Request) -> str | None:
    token = request.cookies.get('auth_session')
    if token:
        return token
    authorization = request.headers.get('authorization', '')
    if authorization.lower().startswith('bearer '):
        return authorization[7:].strip()
    return None


def require_auth_user(request: Request) -> dict:
    session = validate_session_token(_resolve_token(request))
    if not session:
        raise HTTPException(status_code=401, detail='Unauthorized')
    user_id = int(session.get('user_id') or 0)
    if user_id <= 0:
        raise HTTPException(status_code=401, detail='Unauthorized')
    return {
        'user_id': user_id,
        'role': str(session.get('role') or '').strip().lower(),
    }


def require_actor(request: Request) -> Actor:
    return Actor.from_session(require_auth_user(request))


def require_cron_secret(request: Request) -> None:
    expected = settings.cron_secret
    authorization = request.headers.get('authorization', '')
    provided = authorization[7:].strip() if authorization.lower().startswith('bearer ') else ''
    if not expected or not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail='Unauthorized')
