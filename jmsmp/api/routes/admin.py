"""
jmsmp.api.routes.admin — Admin console endpoints (JWT-protected)
================================================================

Every endpoint is gated by ``require_roles(<operation>)``; see
``OPERATION_ROLES`` in :mod:`jmsmp.constants` for who may call what.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import Engine

from jmsmp.api.deps import get_config, get_engine, get_hub, require_roles
from jmsmp.config import JmsmpConfig
from jmsmp.database.models import AdminActionType, NotificationCategory
from jmsmp.engine.realtime import RealtimeHub
from jmsmp.errors import ValidationError
from jmsmp.services import (
    admin_service,
    notification_service,
    reconciliation_service,
    retention_service,
)
from jmsmp.services.identity_service import Identity

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RoleUpdate(BaseModel):
    role: str


class DiscordLink(BaseModel):
    discordId: int | None = None


class BroadcastBody(BaseModel):
    title: str
    message: str
    type: str = NotificationCategory.INFO


class RecruitmentUpdate(BaseModel):
    enabled: bool
    message: str = ""


# ---------------------------------------------------------------------------
# Overview
# ---------------------------------------------------------------------------
@router.get("/stats")
def stats(
    admin: Identity = Depends(require_roles("admin.stats")),
    engine: Engine = Depends(get_engine),
):
    return admin_service.get_system_stats(engine)


@router.get("/audit")
def audit_log(
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    admin: Identity = Depends(require_roles("admin.stats")),
    engine: Engine = Depends(get_engine),
):
    return admin_service.list_audit_log(engine, page, page_size)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
@router.get("/users")
def list_users(
    search: str | None = Query(None),
    role: str | None = Query(None),
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: Identity = Depends(require_roles("admin.users")),
    engine: Engine = Depends(get_engine),
):
    return admin_service.list_users(
        engine, search=search, role=role, status=status, page=page, limit=limit,
    )


@router.put("/users/{username}/role")
def change_role(
    username: str,
    body: RoleUpdate,
    admin: Identity = Depends(require_roles("admin.change_role")),
    engine: Engine = Depends(get_engine),
    hub: RealtimeHub = Depends(get_hub),
):
    user = admin_service.change_role(engine, hub, admin, username, body.role)
    return {"message": "Роль обновлена", "user": user}


@router.post("/users/{username}/discord")
def link_discord(
    username: str,
    body: DiscordLink,
    admin: Identity = Depends(require_roles("admin.link_discord")),
    engine: Engine = Depends(get_engine),
):
    user = admin_service.link_discord(engine, admin, username, body.discordId)
    return {"message": "Discord-аккаунт обновлен", "user": user}


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
@router.post("/broadcast")
def broadcast(
    body: BroadcastBody,
    admin: Identity = Depends(require_roles("notifications.broadcast")),
    engine: Engine = Depends(get_engine),
    hub: RealtimeHub = Depends(get_hub),
):
    if not body.title.strip() or not body.message.strip():
        raise ValidationError("Заголовок и сообщение обязательны")
    delivered = notification_service.broadcast(engine, hub, body.title, body.message, body.type)
    admin_service.record_admin_action(
        engine,
        admin.username,
        AdminActionType.BROADCAST,
        "notifications",
        after={"title": body.title, "delivered": delivered},
    )
    return {"message": "Уведомление отправлено", "delivered": delivered}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@router.post("/studio-recruitment")
def set_studio_recruitment(
    body: RecruitmentUpdate,
    admin: Identity = Depends(require_roles("admin.studio_recruitment")),
    engine: Engine = Depends(get_engine),
    hub: RealtimeHub = Depends(get_hub),
):
    value = admin_service.set_studio_recruitment(engine, hub, admin, body.enabled, body.message)
    return {"message": "Настройки набора обновлены", **value}


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------
@router.delete("/cleanup")
def cleanup(
    days: int | None = Query(None, ge=1),
    admin: Identity = Depends(require_roles("admin.cleanup")),
    engine: Engine = Depends(get_engine),
    cfg: JmsmpConfig = Depends(get_config),
):
    days = days or cfg.cleanup_days
    result = retention_service.run_retention_cleanup(engine, days)
    admin_service.record_admin_action(
        engine,
        admin.username,
        AdminActionType.CLEANUP,
        "users",
        after={"days": days, **result},
    )
    return {"message": "Очистка завершена", **result}


@router.post("/reconcile")
def reconcile(
    admin: Identity = Depends(require_roles("admin.reconcile")),
    engine: Engine = Depends(get_engine),
    hub: RealtimeHub = Depends(get_hub),
):
    result = reconciliation_service.run_reconciliation(engine, hub)
    admin_service.record_admin_action(
        engine,
        admin.username,
        AdminActionType.RECONCILE,
        "users",
        after={
            "synced": result["pending_syncs"]["synced"],
            "corrected": result["status"]["corrected"],
        },
    )
    return result
