from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from makerspace.models.shop_models import AuditLog, NotificationQueue
from makerspace.services.timeutil import isoformat_utc, utc_now


def _to_json(value: dict[str, Any]) -> str:
    def _default(item):
        if isinstance(item, datetime):
            return isoformat_utc(item)
        return str(item)

    return json.dumps(value, ensure_ascii=True, default=_default, sort_keys=True)


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    details: str | None = None,
    user_id: int | None = None,
) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=utc_now(),
        )
    )


def record_event(
    db: Session,
    event_type: str,
    entity_type: str,
    entity_id: int,
    payload: dict[str, Any],
    recipient_ids: list[int | None] | None = None,
    actor_id: int | None = None,
) -> None:
    """Queue a domain event for the notification layer and audit it.

    One outbox row is written per recipient; delivery marks ``SentAt``.
    """
    body = _to_json({"type": event_type, **payload})
    recipients = recipient_ids if recipient_ids else [None]
    for recipient in dict.fromkeys(recipients):
        db.add(
            NotificationQueue(
                UserID=recipient,
                NotificationType=event_type,
                Payload=body,
                CreatedAt=utc_now(),
            )
        )
    log_audit(db, entity_type, entity_id, event_type, body, user_id=actor_id)


def pending_notifications(db: Session, limit: int = 100) -> list[NotificationQueue]:
    return db.execute(
        select(NotificationQueue)
        .where(NotificationQueue.SentAt.is_(None))
        .order_by(NotificationQueue.NotificationID)
        .limit(limit)
    ).scalars().all()


def mark_notifications_sent(db: Session, notification_ids: list[int]) -> int:
    if not notification_ids:
        return 0
    rows = db.execute(
        select(NotificationQueue).where(NotificationQueue.NotificationID.in_(notification_ids))
    ).scalars().all()
    now = utc_now()
    for row in rows:
        row.SentAt = now
    return len(rows)
