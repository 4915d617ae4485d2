from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .feed import notifications_channel, queue_event
from .models import Notification


NOTIFICATION_TYPES = ("general", "contest", "achievement", "payment")
DEFAULT_LIST_LIMIT = 20


def notification_record(notification: Notification) -> dict[str, Any]:
    created_at = notification.created_at or datetime.utcnow()
    return {
        "id": int(notification.id),
        "user_id": int(notification.user_id),
        "title": str(notification.title),
        "message": str(notification.message),
        "type": str(notification.type),
        "is_read": bool(notification.is_read),
        "link": notification.link,
        "created_at": created_at.isoformat(),
    }


def create_notification(
    db: Session,
    user_id: int,
    title: str,
    message: str,
    type: str = "general",
    link: str | None = None,
) -> Notification:
    if type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type '{type}'.")
    notification = Notification(
        user_id=user_id,
        title=title,
        message=message,
        type=type,
        link=link,
        is_read=False,
        created_at=datetime.utcnow(),
    )
    db.add(notification)
    db.flush()
    queue_event(
        db,
        notifications_channel(user_id),
        {"type": "INSERT", "table": "notifications", "record": notification_record(notification)},
    )
    return notification


def notify_users(
    db: Session,
    user_ids: list[int],
    title: str,
    message: str,
    type: str = "general",
    link: str | None = None,
) -> int:
    for user_id in dict.fromkeys(user_ids):
        create_notification(db, user_id=user_id, title=title, message=message, type=type, link=link)
    return len(dict.fromkeys(user_ids))


def list_notifications(db: Session, user_id: int, limit: int = DEFAULT_LIST_LIMIT) -> list[Notification]:
    return list(
        db.execute(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        ).scalars()
    )


def unread_count(db: Session, user_id: int) -> int:
    return int(
        db.execute(
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        ).scalar_one()
    )


def mark_as_read(db: Session, user_id: int, notification_id: int) -> Notification | None:
    notification = db.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    ).scalar_one_or_none()
    if notification is not None:
        notification.is_read = True
    return notification


def mark_all_as_read(db: Session, user_id: int) -> int:
    result = db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    return int(result.rowcount or 0)
