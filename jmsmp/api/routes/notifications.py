"""
jmsmp.api.routes.notifications — The caller's notification feed
================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import Engine

from jmsmp.api.deps import get_config, get_current_identity, get_engine
from jmsmp.config import JmsmpConfig
from jmsmp.services import notification_service
from jmsmp.services.identity_service import Identity

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
def list_notifications(
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1, le=100),
    unread_only: bool = Query(False, alias="unreadOnly"),
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
    cfg: JmsmpConfig = Depends(get_config),
):
    return notification_service.list_notifications(
        engine,
        identity.id,
        page=page,
        limit=limit or cfg.notifications_page_size,
        unread_only=unread_only,
    )


@router.put("/read-all")
def mark_all_read(
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
):
    updated = notification_service.mark_all_read(engine, identity.id)
    return {"message": "Все уведомления прочитаны", "updated": updated}


@router.put("/{notification_id}/read")
def mark_read(
    notification_id: int,
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
):
    note = notification_service.mark_read(engine, identity.id, notification_id)
    return {"notification": note}


@router.delete("/{notification_id}")
def delete_notification(
    notification_id: int,
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
):
    notification_service.delete_notification(engine, identity.id, notification_id)
    return {"message": "Уведомление удалено"}


@router.delete("")
def clear_notifications(
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
):
    deleted = notification_service.clear_all(engine, identity.id)
    return {"message": "Все уведомления удалены", "deleted": deleted}
