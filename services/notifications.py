"""In-app notification service."""

from __future__ import annotations

import json
from typing import Optional

from extensions import db
from models import Notification


def notify(
    recipient_id: int,
    kind: str,
    title: str,
    message: str = "",
    data: Optional[dict] = None,
) -> Notification:
    """Queue a notification row for *recipient_id*.

    NOTE: This does NOT commit; the row is written by the caller's unit of
    work, so a rolled-back transition never leaves a stray notification.
    """
    row = Notification(
        recipient_id=recipient_id,
        kind=kind,
        title=title,
        message=message,
        data=json.dumps(data, default=str) if data else None,
    )
    db.session.add(row)
    return row


def unread_for(recipient_id: int) -> list[Notification]:
    return (
        Notification.query.filter_by(recipient_id=recipient_id, is_read=False)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .all()
    )
