from __future__ import annotations

import json
import logging

from sqlalchemy.orm import Session

from backoffice.core.time_provider import TimeProvider, default_time_provider
from backoffice.models import AuditEvent


logger = logging.getLogger(__name__)


def log_event(
    db: Session,
    *,
    action: str,
    entity_type: str,
    entity_id: int,
    actor_id: int | None = None,
    payload: dict | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> AuditEvent:
    """Stage an audit row in the caller's transaction; the caller commits."""
    event = AuditEvent(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=int(entity_id),
        payload_json=json.dumps(payload or {}, default=str, sort_keys=True),
        created_at=time_provider.local_naive_now(),
    )
    db.add(event)
    logger.info('audit_event action=%s entity=%s:%s actor_id=%s', action, entity_type, entity_id, actor_id)
    return event


def list_events(db: Session, *, entity_type: str, entity_id: int) -> list[dict]:
    rows = (
        db.query(AuditEvent)
        .filter(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == int(entity_id))
        .order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
        .all()
    )
    return [
        {
            'id': row.id,
            'action': row.action,
            'actor_id': row.actor_id,
            'payload': json.loads(row.payload_json or '{}'),
            'created_at': row.created_at.isoformat(),
        }
        for row in rows
    ]
