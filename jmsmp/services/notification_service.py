"""
jmsmp.services.notification_service — Durable + Live Notifications
==================================================================

A notification is delivered two ways:

1. **Durable** — a row in ``notifications`` owned by the user.  This write
   is not best-effort: if it fails, the caller gets the exception.
2. **Live** — a realtime event to the user's session room.  Fire-and-
   forget; an offline user simply finds the row on their next fetch.

:func:`broadcast` walks the whole user base in batches and commits per
batch, so a failure part-way leaves earlier batches delivered.  The
partial count is logged before the error propagates.
"""

from __future__ import annotations

import logging
from math import ceil

from sqlalchemy import Engine, delete, func, select, update

from jmsmp.constants import (
    BROADCAST_ROOM,
    EVENT_BROADCAST_NOTIFICATION,
    EVENT_NOTIFICATION,
    user_room,
)
from jmsmp.database.engine import get_session
from jmsmp.database.models import Notification, NotificationCategory, User
from jmsmp.engine.realtime import RealtimeHub
from jmsmp.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

BROADCAST_BATCH_SIZE = 500


def notification_to_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "title": n.title,
        "message": n.message,
        "type": n.category,
        "read": n.read,
        "date": n.created_at.isoformat() if n.created_at else None,
    }


def _validate_category(category: str) -> str:
    try:
        return NotificationCategory(category)
    except ValueError:
        raise ValidationError(f"Неизвестный тип уведомления: {category!r}")


# ---------------------------------------------------------------------------
# Fanout
# ---------------------------------------------------------------------------
def notify_user(
    engine: Engine,
    hub: RealtimeHub,
    user_id: int,
    title: str,
    message: str,
    category: str = NotificationCategory.INFO,
) -> dict:
    """Persist a notification for *user_id*, then push it live.

    Returns the stored notification as a dict.
    """
    category = _validate_category(category)
    with get_session(engine) as session:
        if session.get(User, user_id) is None:
            raise NotFound("Пользователь не найден")
        note = Notification(user_id=user_id, title=title, message=message, category=category)
        session.add(note)
        session.flush()
        payload = notification_to_dict(note)

    hub.emit(user_room(user_id), EVENT_NOTIFICATION, payload)
    return payload


def broadcast(
    engine: Engine,
    hub: RealtimeHub,
    title: str,
    message: str,
    category: str = NotificationCategory.INFO,
) -> int:
    """Append a notification to every user's list; returns how many got it.

    Not transactional across users: each batch of
    :data:`BROADCAST_BATCH_SIZE` users commits on its own.
    """
    category = _validate_category(category)
    delivered = 0
    last_id = 0

    try:
        while True:
            with get_session(engine) as session:
                ids = session.scalars(
                    select(User.id)
                    .where(User.id > last_id)
                    .order_by(User.id)
                    .limit(BROADCAST_BATCH_SIZE)
                ).all()
                if not ids:
                    break
                session.add_all(
                    Notification(user_id=uid, title=title, message=message, category=category)
                    for uid in ids
                )
            delivered += len(ids)
            last_id = ids[-1]
    except Exception:
        logger.exception(
            "Broadcast '%s' failed after %d users — remaining users not notified",
            title, delivered,
        )
        raise

    hub.emit(
        BROADCAST_ROOM,
        EVENT_BROADCAST_NOTIFICATION,
        {"title": title, "message": message, "type": category},
    )
    logger.info("Broadcast '%s' delivered to %d users", title, delivered)
    return delivered


# ---------------------------------------------------------------------------
# Owner-side reads & mutations
# ---------------------------------------------------------------------------
def list_notifications(
    engine: Engine,
    user_id: int,
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
) -> dict:
    """Newest-first page of the user's notifications plus unread count."""
    with get_session(engine) as session:
        base = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            base = base.where(Notification.read.is_(False))

        total = session.scalar(select(func.count()).select_from(base.subquery())) or 0
        unread = session.scalar(
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
        ) or 0
        rows = session.scalars(
            base.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()

        return {
            "notifications": [notification_to_dict(n) for n in rows],
            "total": total,
            "unreadCount": unread,
            "page": page,
            "totalPages": ceil(total / limit) if limit else 0,
        }


def _owned(session, user_id: int, notification_id: int) -> Notification:
    note = session.get(Notification, notification_id)
    if note is None or note.user_id != user_id:
        raise NotFound("Уведомление не найдено")
    return note


def mark_read(engine: Engine, user_id: int, notification_id: int) -> dict:
    with get_session(engine) as session:
        note = _owned(session, user_id, notification_id)
        note.read = True
        return notification_to_dict(note)


def mark_all_read(engine: Engine, user_id: int) -> int:
    """Returns the number of notifications flipped to read."""
    with get_session(engine) as session:
        result = session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .values(read=True)
        )
        return result.rowcount or 0


def delete_notification(engine: Engine, user_id: int, notification_id: int) -> None:
    with get_session(engine) as session:
        session.delete(_owned(session, user_id, notification_id))


def clear_all(engine: Engine, user_id: int) -> int:
    """Delete every notification the user owns; returns how many."""
    with get_session(engine) as session:
        result = session.execute(
            delete(Notification).where(Notification.user_id == user_id)
        )
        return result.rowcount or 0
