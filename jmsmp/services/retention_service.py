"""
jmsmp.services.retention_service — Rejected Account Cleanup
===========================================================

Periodic removal of dead weight:

- ``Игрок`` accounts whose application was rejected and who have not been
  seen for ``days`` days (their notifications go with them);
- rejected applications older than the same cutoff.

Staff accounts are never touched, whatever their status.  Runs daily from
the bot's task loop and on demand from ``DELETE /api/admin/cleanup``.

**Deletion is batched** (``BATCH_SIZE`` ids per transaction) so a large
backlog never holds long row locks.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, delete, select

from jmsmp.database.engine import get_session
from jmsmp.database.models import Application, ApplicationStatus, Notification, Role, User

logger = logging.getLogger(__name__)

BATCH_SIZE = 1_000


def run_retention_cleanup(engine: Engine, days: int = 30) -> dict[str, int]:
    """Delete stale rejected players and old rejected applications.

    Returns ``{"users_deleted": N, "applications_deleted": M}``.
    """
    cutoff = datetime.now(UTC) - timedelta(days=days)
    users_deleted = 0
    applications_deleted = 0

    # --- Stale rejected players ---
    while True:
        with get_session(engine) as session:
            ids = session.scalars(
                select(User.id)
                .where(
                    User.application_status == ApplicationStatus.REJECTED,
                    User.role == Role.PLAYER,
                    User.last_seen < cutoff,
                )
                .limit(BATCH_SIZE)
            ).all()
            if not ids:
                break

            session.execute(delete(Notification).where(Notification.user_id.in_(ids)))
            result = session.execute(delete(User).where(User.id.in_(ids)))
            users_deleted += result.rowcount  # type: ignore[operator]

    # --- Old rejected applications ---
    while True:
        with get_session(engine) as session:
            ids = session.scalars(
                select(Application.id)
                .where(
                    Application.status == ApplicationStatus.REJECTED,
                    Application.created_at < cutoff,
                )
                .limit(BATCH_SIZE)
            ).all()
            if not ids:
                break

            result = session.execute(delete(Application).where(Application.id.in_(ids)))
            applications_deleted += result.rowcount  # type: ignore[operator]

    logger.info(
        "Retention cleanup complete — %d users, %d applications removed "
        "(days=%d, cutoff=%s)",
        users_deleted, applications_deleted, days, cutoff.isoformat(),
    )
    return {"users_deleted": users_deleted, "applications_deleted": applications_deleted}
