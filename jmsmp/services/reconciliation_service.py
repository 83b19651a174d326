"""
jmsmp.services.reconciliation_service — Applicant Status Repair
==============================================================

:func:`~jmsmp.services.application_service.decide` writes the application
first and the applicant second.  When the second write fails it leaves a
``pending_user_syncs`` row behind.  This module settles those rows and
checks that membership status has not drifted.

Two passes:

- :func:`process_pending_syncs` — retry every queued applicant update
  (membership status, role grant, decision notification).  Successful rows
  are deleted; failures bump ``attempts`` and keep the last error.
- :func:`reconcile_application_status` — for every user who has at least
  one ``server`` application, ``users.application_status`` must equal the
  status of their most recently decided one (or pending, when a newer
  submission is still open).  Drift is corrected and logged.

Both run from the bot's periodic task loop and from
``POST /api/admin/reconcile``.
"""

from __future__ import annotations

import logging
from itertools import groupby
from operator import itemgetter

from sqlalchemy import Engine, select

from jmsmp.constants import EVENT_NOTIFICATION, EVENT_ROLE_UPDATED, user_room
from jmsmp.database.engine import get_session
from jmsmp.database.models import Application, ApplicationType, PendingUserSync, User
from jmsmp.engine.realtime import RealtimeHub
from jmsmp.services.application_service import (
    apply_user_side,
    governing_server_application,
    pick_governing_application,
)
from jmsmp.services.notification_service import notification_to_dict

logger = logging.getLogger(__name__)


def process_pending_syncs(engine: Engine, hub: RealtimeHub) -> dict:
    """Retry queued applicant updates.

    Returns ``{"checked": N, "synced": M, "failed": K}``.
    """
    with get_session(engine) as session:
        queued = session.scalars(
            select(PendingUserSync.application_id).order_by(PendingUserSync.created_at)
        ).all()

    synced = 0
    failed = 0
    for application_id in queued:
        try:
            with get_session(engine) as session:
                row = session.get(PendingUserSync, application_id)
                if row is None:
                    continue
                app = session.get(Application, application_id)
                if app is None:
                    session.delete(row)
                    continue

                # Only the application that governs membership may set the status
                governing = governing_server_application(session, app.username)
                is_latest = governing is None or governing[0] == app.id
                user, note = apply_user_side(
                    session, app, row.role_grant, update_status=is_latest,
                )
                role_grant = row.role_grant
                session.delete(row)
                events = (
                    (user.id, notification_to_dict(note)) if user is not None else None
                )
        except Exception as exc:
            failed += 1
            logger.exception("Pending user sync for application #%d failed", application_id)
            with get_session(engine) as session:
                row = session.get(PendingUserSync, application_id)
                if row is not None:
                    row.attempts += 1
                    row.last_error = repr(exc)[:500]
            continue

        synced += 1
        if events is not None:
            user_id, note_payload = events
            hub.emit(user_room(user_id), EVENT_NOTIFICATION, note_payload)
            if role_grant:
                hub.emit(user_room(user_id), EVENT_ROLE_UPDATED, {"role": role_grant})

    if queued:
        logger.info(
            "Pending user syncs: checked=%d synced=%d failed=%d",
            len(queued), synced, failed,
        )
    return {"checked": len(queued), "synced": synced, "failed": failed}


def reconcile_application_status(engine: Engine) -> dict:
    """Align ``users.application_status`` with each user's governing server application.

    The governing application is the most recently decided one, or a
    pending one submitted after every decision (see
    :func:`~jmsmp.services.application_service.pick_governing_application`).
    Users without any server application are left alone (the seeded main
    admin, for instance, is accepted without ever applying).

    Returns ``{"checked": N, "corrected": M, "corrections": [...]}``.
    """
    corrections: list[dict] = []

    with get_session(engine) as session:
        rows = session.execute(
            select(
                Application.username,
                Application.id,
                Application.status,
                Application.created_at,
                Application.review_date,
            )
            .where(Application.type == ApplicationType.SERVER)
            .order_by(Application.username)
        ).all()
        expected = {
            username: pick_governing_application(r[1:] for r in group)
            for username, group in groupby(rows, key=itemgetter(0))
        }
        users = session.scalars(select(User).where(User.username.in_(list(expected)))).all()

        for user in users:
            _, actual = expected[user.username]
            if user.application_status != actual:
                corrections.append({
                    "username": user.username,
                    "stored": user.application_status,
                    "actual": actual,
                })
                user.application_status = actual

    if corrections:
        logger.warning(
            "Status reconciliation: corrected %d/%d users: %s",
            len(corrections), len(users), corrections,
        )
    else:
        logger.info("Status reconciliation: %d users checked, no drift", len(users))

    return {"checked": len(users), "corrected": len(corrections), "corrections": corrections}


def run_reconciliation(engine: Engine, hub: RealtimeHub) -> dict:
    """Run both passes; queued syncs first so the drift check sees their result."""
    return {
        "pending_syncs": process_pending_syncs(engine, hub),
        "status": reconcile_application_status(engine),
    }
