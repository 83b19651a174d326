"""
jmsmp.api.routes.applications — Membership applications
========================================================

Submission and history for players, the review queue and decisions for
staff.  The decision endpoint is the HTTP review front-end; the Discord
review cog is the other one, and both go through
:func:`jmsmp.services.application_service.decide`.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from jmsmp.api.deps import get_current_identity, get_engine, get_hub, require_roles
from jmsmp.constants import EVENT_REVIEW_MESSAGE_STALE, REVIEW_BOT_ROOM, STATUS_HISTORY_LIMIT
from jmsmp.database.models import ApplicationStatus
from jmsmp.engine.realtime import RealtimeHub
from jmsmp.services import application_service
from jmsmp.services.application_service import ApplicationFilters
from jmsmp.services.identity_service import Identity

router = APIRouter(prefix="/applications", tags=["applications"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ApplicationCreate(BaseModel):
    type: str = "server"
    answers: dict[str, Any] = Field(default_factory=dict)


class DecisionBody(BaseModel):
    status: str
    role: str | None = None


# ---------------------------------------------------------------------------
# Player endpoints
# ---------------------------------------------------------------------------
@router.post("", status_code=201)
def submit_application(
    body: ApplicationCreate,
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
    hub: RealtimeHub = Depends(get_hub),
):
    application = application_service.submit(engine, hub, identity, body.type, body.answers)
    return {"message": "Заявка отправлена", "application": application}


@router.get("/status")
def my_applications(
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
):
    """The caller's most recent applications and current membership status."""
    page = application_service.list_for_actor(
        engine, identity, limit=STATUS_HISTORY_LIMIT, own_only=True,
    )
    return {
        "applicationStatus": identity.application_status,
        "applications": page.items,
    }


# ---------------------------------------------------------------------------
# Review queue
# ---------------------------------------------------------------------------
@router.get("/admin")
def review_queue(
    type: str | None = Query(None),
    status: str | None = Query(None),
    username: str | None = Query(None),
    email: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(require_roles("applications.list_all")),
    engine: Engine = Depends(get_engine),
):
    filters = ApplicationFilters(type=type, status=status, username=username, email=email)
    return application_service.list_for_actor(
        engine, identity, filters, page=page, limit=limit,
    ).to_dict()


@router.get("/{application_id}")
def get_application(
    application_id: int,
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
):
    return {"application": application_service.get_application(engine, identity, application_id)}


@router.put("/{application_id}/decision")
def decide_application(
    application_id: int,
    body: DecisionBody,
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
    hub: RealtimeHub = Depends(get_hub),
):
    """Accept or reject; optionally grant a role (top two roles only).

    Permission is checked by the service so a 403 wins over a 404.
    """
    result = application_service.decide(
        engine, hub, identity, application_id, body.status, body.role,
    )
    if result.external_message_id:
        # The Discord review message still shows buttons; let the bot refresh it
        hub.emit(
            REVIEW_BOT_ROOM,
            EVENT_REVIEW_MESSAGE_STALE,
            {"applicationId": application_id, "messageRef": result.external_message_id},
        )
    accepted = body.status == ApplicationStatus.ACCEPTED
    return {
        "message": "Заявка одобрена" if accepted else "Заявка отклонена",
        "application": result.application,
        "roleGranted": result.role_granted,
        "userSynced": result.user_synced,
    }
