"""
jmsmp.services.admin_service — Admin Console Service Layer
==========================================================

Reads and audited mutations behind ``/api/admin``:

- system statistics (also used by the bot's ``/stats``)
- user search, role changes, Discord account linking
- the studio-recruitment switch stored in ``settings``
- the admin audit trail

Every mutation writes an ``admin_log`` row with before/after snapshots in
the same transaction as the change itself.  Permission checks happen in
the API layer; these functions trust their caller.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from math import ceil
from typing import Any

from sqlalchemy import Engine, func, or_, select
from sqlalchemy.orm import Session

from jmsmp.constants import (
    BROADCAST_ROOM,
    EVENT_NOTIFICATION,
    EVENT_ROLE_UPDATED,
    EVENT_STUDIO_RECRUITMENT,
    ONLINE_WINDOW_MINUTES,
    user_room,
)
from jmsmp.database.engine import get_session
from jmsmp.database.models import (
    AdminActionType,
    AdminLog,
    Application,
    ApplicationStatus,
    Notification,
    NotificationCategory,
    Photo,
    Role,
    Setting,
    User,
)
from jmsmp.database.seed import main_admin_username
from jmsmp.engine.realtime import RealtimeHub
from jmsmp.errors import Forbidden, NotFound, ValidationError
from jmsmp.services.identity_service import Identity, public_user
from jmsmp.services.notification_service import notification_to_dict

logger = logging.getLogger(__name__)

STUDIO_RECRUITMENT_KEY = "studio.recruitment"
_RECRUITMENT_DEFAULT = {"enabled": False, "message": ""}


# ---------------------------------------------------------------------------
# Audit helpers
# ---------------------------------------------------------------------------
def _log_admin_action(
    session: Session,
    *,
    actor: str,
    action_type: str,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor=actor,
        action_type=action_type,
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
    ))


def record_admin_action(
    engine: Engine,
    actor: str,
    action_type: str,
    target_table: str,
    after: dict | None = None,
    target_id: str | None = None,
) -> None:
    """Audit an action whose effect lives in another service (broadcast, cleanup)."""
    with get_session(engine) as session:
        _log_admin_action(
            session,
            actor=actor,
            action_type=action_type,
            target_table=target_table,
            target_id=target_id,
            before=None,
            after=after,
        )


def list_audit_log(engine: Engine, page: int = 1, page_size: int = 25) -> dict:
    with get_session(engine) as session:
        total = session.scalar(select(func.count()).select_from(AdminLog)) or 0
        rows = session.scalars(
            select(AdminLog)
            .order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return {
            "total": total,
            "page": page,
            "page_size": page_size,
            "entries": [
                {
                    "id": r.id,
                    "actor": r.actor,
                    "action_type": r.action_type,
                    "target_table": r.target_table,
                    "target_id": r.target_id,
                    "before": r.before_snapshot,
                    "after": r.after_snapshot,
                    "timestamp": r.timestamp.isoformat() if r.timestamp else None,
                }
                for r in rows
            ],
        }


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------
def get_system_stats(engine: Engine) -> dict[str, Any]:
    """Headline counters, role distribution and the last week's sign-ups."""
    now = datetime.now(UTC)
    with get_session(engine) as session:
        def _count(stmt) -> int:
            return session.scalar(stmt) or 0

        users_total = _count(select(func.count()).select_from(User))
        by_status = dict(session.execute(
            select(User.application_status, func.count()).group_by(User.application_status)
        ).all())
        online = _count(
            select(func.count())
            .select_from(User)
            .where(User.last_seen >= now - timedelta(minutes=ONLINE_WINDOW_MINUTES))
        )
        pending_apps = _count(
            select(func.count())
            .select_from(Application)
            .where(Application.status == ApplicationStatus.PENDING)
        )
        apps_total = _count(select(func.count()).select_from(Application))
        photos = _count(select(func.count()).select_from(Photo))
        roles = dict(session.execute(
            select(User.role, func.count()).group_by(User.role)
        ).all())

        day = func.date(User.registration_date)
        weekly = session.execute(
            select(day.label("day"), func.count())
            .where(User.registration_date >= now - timedelta(days=7))
            .group_by(day)
            .order_by(day)
        ).all()

    return {
        "users": {
            "total": users_total,
            "online": online,
            "accepted": by_status.get(ApplicationStatus.ACCEPTED, 0),
            "pending": by_status.get(ApplicationStatus.PENDING, 0),
            "rejected": by_status.get(ApplicationStatus.REJECTED, 0),
        },
        "applications": {"total": apps_total, "pending": pending_apps},
        "photos": photos,
        "roles": roles,
        "weeklyRegistrations": [{"date": str(d), "count": c} for d, c in weekly],
    }


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
def list_users(
    engine: Engine,
    *,
    search: str | None = None,
    role: str | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    q = select(User)
    if search:
        pattern = f"%{search}%"
        q = q.where(or_(User.username.ilike(pattern), User.email.ilike(pattern)))
    if role:
        q = q.where(User.role == role)
    if status:
        q = q.where(User.application_status == status)

    with get_session(engine) as session:
        total = session.scalar(select(func.count()).select_from(q.subquery())) or 0
        rows = session.scalars(
            q.order_by(User.registration_date.desc(), User.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return {
            "users": [public_user(u) for u in rows],
            "total": total,
            "page": page,
            "totalPages": ceil(total / limit) if limit else 0,
        }


def change_role(
    engine: Engine,
    hub: RealtimeHub,
    actor: Identity,
    username: str,
    role: str,
) -> dict:
    """Set *username*'s role.  The configured main admin cannot be changed."""
    if role not in {r.value for r in Role}:
        raise ValidationError("Неверная роль")
    if username == main_admin_username():
        raise Forbidden("Нельзя изменить роль главного администратора")

    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.username == username))
        if user is None:
            raise NotFound("Пользователь не найден")
        before = {"role": user.role}
        user.role = role
        note = Notification(
            title="Ваша роль изменена",
            message=f"Новая роль: {role}",
            category=NotificationCategory.INFO,
        )
        user.notifications.append(note)
        _log_admin_action(
            session,
            actor=actor.username,
            action_type=AdminActionType.ROLE_CHANGE,
            target_table="users",
            target_id=user.username,
            before=before,
            after={"role": role},
        )
        session.flush()
        user_id = user.id
        result = public_user(user)
        note_payload = notification_to_dict(note)

    logger.info("'%s' changed role of '%s' to %s", actor.username, username, role)
    hub.emit(user_room(user_id), EVENT_ROLE_UPDATED, {"role": role})
    hub.emit(user_room(user_id), EVENT_NOTIFICATION, note_payload)
    return result


def link_discord(
    engine: Engine, actor: Identity, username: str, discord_id: int | None,
) -> dict:
    """Link (or with ``None`` unlink) a Discord account used by the review bot."""
    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.username == username))
        if user is None:
            raise NotFound("Пользователь не найден")
        if discord_id is not None:
            owner = session.scalar(
                select(User.username).where(User.discord_id == discord_id, User.id != user.id)
            )
            if owner is not None:
                raise ValidationError("Этот Discord-аккаунт уже привязан к другому пользователю")
        before = {"discord_id": user.discord_id}
        user.discord_id = discord_id
        _log_admin_action(
            session,
            actor=actor.username,
            action_type=AdminActionType.LINK_DISCORD,
            target_table="users",
            target_id=user.username,
            before=before,
            after={"discord_id": discord_id},
        )
        session.flush()
        return public_user(user)


# ---------------------------------------------------------------------------
# Studio recruitment switch
# ---------------------------------------------------------------------------
def get_studio_recruitment(engine: Engine) -> dict:
    with get_session(engine) as session:
        row = session.get(Setting, STUDIO_RECRUITMENT_KEY)
        if row is None:
            return dict(_RECRUITMENT_DEFAULT)
        try:
            return {**_RECRUITMENT_DEFAULT, **json.loads(row.value_json)}
        except (json.JSONDecodeError, TypeError):
            logger.warning("Corrupt %s setting — using defaults", STUDIO_RECRUITMENT_KEY)
            return dict(_RECRUITMENT_DEFAULT)


def set_studio_recruitment(
    engine: Engine,
    hub: RealtimeHub,
    actor: Identity,
    enabled: bool,
    message: str = "",
) -> dict:
    value = {"enabled": bool(enabled), "message": message or ""}
    with get_session(engine) as session:
        row = session.get(Setting, STUDIO_RECRUITMENT_KEY)
        before = json.loads(row.value_json) if row is not None else None
        if row is None:
            session.add(Setting(key=STUDIO_RECRUITMENT_KEY, value_json=json.dumps(value)))
        else:
            row.value_json = json.dumps(value)
        _log_admin_action(
            session,
            actor=actor.username,
            action_type=AdminActionType.SETTING_UPDATE,
            target_table="settings",
            target_id=STUDIO_RECRUITMENT_KEY,
            before=before,
            after=value,
        )

    hub.emit(BROADCAST_ROOM, EVENT_STUDIO_RECRUITMENT, value)
    return value
