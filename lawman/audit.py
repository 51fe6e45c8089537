"""
Audit Trail
===========

Records who did what to which case, task, note or customer.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db.models import AuditEvent

logger = logging.getLogger(__name__)


def log_audit(
    db: Session,
    actor,
    action: str,
    resource: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> Optional[AuditEvent]:
    """
    Append an audit event.

    With `commit=True` the event is written in its own transaction after the
    audited change has already been committed. A failure here is logged and
    does not undo that change.
    """
    event = AuditEvent(
        username=getattr(actor, "username", None),
        role=getattr(getattr(actor, "role", None), "value", None),
        action=action,
        resource=resource,
        resource_id=resource_id,
        details=details or {},
    )
    db.add(event)
    if not commit:
        return event

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Audit write failed ({action} {resource} {resource_id}): {e}")
        return None
    return event


def recent_events(db: Session, resource: Optional[str] = None, resource_id: Optional[str] = None, limit: int = 100) -> List[AuditEvent]:
    q = db.query(AuditEvent)
    if resource:
        q = q.filter(AuditEvent.resource == resource)
    if resource_id:
        q = q.filter(AuditEvent.resource_id == resource_id)
    return q.order_by(AuditEvent.created_at.desc()).limit(limit).all()


def event_to_dict(event: AuditEvent) -> dict:
    return {
        "id": event.id,
        "username": event.username,
        "role": event.role,
        "action": event.action,
        "resource": event.resource,
        "resource_id": event.resource_id,
        "details": event.details or {},
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }
