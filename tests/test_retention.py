"""
tests/test_retention.py — Rejected Account Cleanup
==================================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

from sqlalchemy import func, select

from jmsmp.database.engine import get_session
from jmsmp.database.models import (
    Application,
    ApplicationStatus,
    Notification,
    Role,
    User,
)
from jmsmp.services import retention_service
from jmsmp.services.retention_service import run_retention_cleanup

LONG_AGO = datetime.now(UTC) - timedelta(days=90)


def _age_user(engine, username):
    with get_session(engine) as session:
        session.scalar(select(User).where(User.username == username)).last_seen = LONG_AGO


def _add_application(engine, username, status, created_at):
    with get_session(engine) as session:
        session.add(Application(
            username=username, type="server", status=status,
            answers={"a": "b"}, created_at=created_at,
        ))


def _usernames(engine) -> set[str]:
    with get_session(engine) as session:
        return set(session.scalars(select(User.username)).all())


class TestRetentionCleanup:
    def test_deletes_stale_rejected_players_with_their_notifications(self, db_engine, make_user):
        gone = make_user("gone", status=ApplicationStatus.REJECTED)
        _age_user(db_engine, "gone")
        with get_session(db_engine) as session:
            session.add(Notification(user_id=gone.id, title="t", message="m"))

        result = run_retention_cleanup(db_engine, days=30)

        assert result["users_deleted"] == 1
        assert "gone" not in _usernames(db_engine)
        with get_session(db_engine) as session:
            assert session.scalar(select(func.count()).select_from(Notification)) == 0

    def test_keeps_recently_seen_rejected_players(self, db_engine, make_user):
        make_user("fresh", status=ApplicationStatus.REJECTED)
        assert run_retention_cleanup(db_engine, days=30)["users_deleted"] == 0
        assert "fresh" in _usernames(db_engine)

    def test_never_touches_staff_or_other_statuses(self, db_engine, make_user):
        make_user("curator", Role.CURATOR, ApplicationStatus.REJECTED)
        make_user("waiting", status=ApplicationStatus.PENDING)
        make_user("member", status=ApplicationStatus.ACCEPTED)
        for name in ("curator", "waiting", "member"):
            _age_user(db_engine, name)

        assert run_retention_cleanup(db_engine, days=30)["users_deleted"] == 0
        assert _usernames(db_engine) == {"curator", "waiting", "member"}

    def test_deletes_only_old_rejected_applications(self, db_engine):
        _add_application(db_engine, "a", ApplicationStatus.REJECTED, LONG_AGO)
        _add_application(db_engine, "b", ApplicationStatus.REJECTED, datetime.now(UTC))
        _add_application(db_engine, "c", ApplicationStatus.ACCEPTED, LONG_AGO)

        result = run_retention_cleanup(db_engine, days=30)

        assert result["applications_deleted"] == 1
        with get_session(db_engine) as session:
            assert set(session.scalars(select(Application.username)).all()) == {"b", "c"}

    def test_works_through_batches(self, db_engine, make_user):
        for i in range(5):
            make_user(f"old{i}", status=ApplicationStatus.REJECTED)
            _age_user(db_engine, f"old{i}")

        with patch.object(retention_service, "BATCH_SIZE", 2):
            result = run_retention_cleanup(db_engine, days=30)

        assert result["users_deleted"] == 5
        assert _usernames(db_engine) == set()
