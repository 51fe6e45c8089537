"""
Customer Notifications
======================

Deadline alerts raised by the polling job. One notification per
(case, kind, deadline): re-running the poll never duplicates an alert, and a
moved deadline raises a fresh one.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from .clock import utcnow
from .db.models import Case, CustomerNotification, generate_id
from .errors import NotificationNotFound
from .readiness import DEFAULT_SOON_HOURS, classify_deadline

logger = logging.getLogger(__name__)

KIND_BY_SIGNAL = {
    "overdue": "deadline_overdue",
    "soon": "deadline_soon",
}


def dedupe_key(case_id: str, kind: str, deadline: datetime) -> str:
    return f"{case_id}:{kind}:{deadline.isoformat()}"


def sync_deadline_notifications(
    db: Session,
    now: Optional[datetime] = None,
    soon_hours: int = DEFAULT_SOON_HOURS,
) -> List[CustomerNotification]:
    """
    Create missing overdue/soon notifications for every case with a deadline.

    Returns the notifications created by this run.
    """
    now = now or utcnow()
    cases = db.query(Case).filter(Case.deadline.isnot(None)).all()

    existing = {key for (key,) in db.query(CustomerNotification.dedupe_key).all()}
    created: List[CustomerNotification] = []

    for case in cases:
        signal = classify_deadline(case.deadline, case.case_id, now, soon_hours)
        kind = KIND_BY_SIGNAL.get(signal.type)
        if kind is None:
            continue
        key = dedupe_key(case.case_id, kind, case.deadline)
        if key in existing:
            continue

        notification = CustomerNotification(
            notification_id=generate_id("CN"),
            customer_id=case.customer_id,
            case_id=case.case_id,
            kind=kind,
            severity=signal.severity,
            message=signal.message,
            dedupe_key=key,
            created_at=now,
        )
        db.add(notification)
        existing.add(key)
        created.append(notification)

    if created:
        db.commit()
        logger.info(f"Deadline poll created {len(created)} notification(s)")
    return created


def list_notifications(db: Session, customer_id: Optional[str] = None, limit: int = 200) -> List[CustomerNotification]:
    q = db.query(CustomerNotification).filter(CustomerNotification.dismissed_at.is_(None))
    if customer_id:
        q = q.filter(CustomerNotification.customer_id == customer_id)
    return q.order_by(CustomerNotification.created_at.desc()).limit(limit).all()


def dismiss_notification(db: Session, notification_id: str) -> None:
    notification = db.get(CustomerNotification, notification_id)
    if notification is None:
        raise NotificationNotFound(notification_id)
    if notification.dismissed_at is None:
        notification.dismissed_at = utcnow()
        db.commit()


def notification_to_dict(notification: CustomerNotification) -> dict:
    return {
        "notification_id": notification.notification_id,
        "customer_id": notification.customer_id,
        "case_id": notification.case_id,
        "kind": notification.kind,
        "severity": notification.severity,
        "message": notification.message,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }
