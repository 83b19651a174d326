"""
tests/test_admin_service.py — Admin Console Services
====================================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from jmsmp.constants import (
    BROADCAST_ROOM,
    EVENT_NOTIFICATION,
    EVENT_ROLE_UPDATED,
    EVENT_STUDIO_RECRUITMENT,
    user_room,
)
from jmsmp.database.engine import get_session
from jmsmp.database.models import (
    AdminActionType,
    AdminLog,
    ApplicationStatus,
    Role,
    Setting,
)
from jmsmp.errors import Forbidden, NotFound, ValidationError
from jmsmp.services import admin_service as admin
from jmsmp.services import application_service as apps


@pytest.fixture
def owner(make_user):
    return make_user("owner", Role.OWNER, ApplicationStatus.ACCEPTED)


def _audit(engine) -> list[AdminLog]:
    with get_session(engine) as session:
        rows = session.scalars(select(AdminLog).order_by(AdminLog.id)).all()
        for row in rows:
            session.expunge(row)
        return rows


# ===========================================================================
# Role changes
# ===========================================================================
class TestChangeRole:
    def test_changes_role_notifies_and_audits(self, db_engine, hub, owner, make_user):
        steve = make_user("steve")

        result = admin.change_role(db_engine, hub, owner, "steve", Role.DESIGNER)

        assert result["role"] == Role.DESIGNER
        assert hub.emitted(user_room(steve.id), EVENT_ROLE_UPDATED) == [{"role": Role.DESIGNER}]
        (note,) = hub.emitted(user_room(steve.id), EVENT_NOTIFICATION)
        assert note["title"] == "Ваша роль изменена"

        (entry,) = _audit(db_engine)
        assert entry.action_type == AdminActionType.ROLE_CHANGE
        assert entry.actor == "owner"
        assert entry.before_snapshot == {"role": Role.PLAYER}
        assert entry.after_snapshot == {"role": Role.DESIGNER}

    def test_main_admin_is_protected(self, db_engine, hub, owner, make_user, monkeypatch):
        make_user("root", Role.SITE_OWNER)
        monkeypatch.setenv("MAIN_ADMIN_USERNAME", "root")
        with pytest.raises(Forbidden):
            admin.change_role(db_engine, hub, owner, "root", Role.PLAYER)
        assert _audit(db_engine) == []

    def test_unknown_role(self, db_engine, hub, owner, make_user):
        make_user("steve")
        with pytest.raises(ValidationError):
            admin.change_role(db_engine, hub, owner, "steve", "Император")

    def test_unknown_user(self, db_engine, hub, owner):
        with pytest.raises(NotFound):
            admin.change_role(db_engine, hub, owner, "ghost", Role.CODER)


class TestLinkDiscord:
    def test_link_and_unlink(self, db_engine, owner, make_user):
        make_user("curator", Role.CURATOR)

        admin.link_discord(db_engine, owner, "curator", 1234)
        admin.link_discord(db_engine, owner, "curator", None)

        entries = _audit(db_engine)
        assert [e.after_snapshot for e in entries] == [
            {"discord_id": 1234}, {"discord_id": None},
        ]

    def test_discord_account_cannot_be_shared(self, db_engine, owner, make_user):
        make_user("curator", Role.CURATOR, discord_id=1234)
        make_user("admin", Role.ADMINISTRATOR)
        with pytest.raises(ValidationError):
            admin.link_discord(db_engine, owner, "admin", 1234)


# ===========================================================================
# Studio recruitment switch
# ===========================================================================
class TestStudioRecruitment:
    def test_defaults_to_closed(self, db_engine):
        assert admin.get_studio_recruitment(db_engine) == {"enabled": False, "message": ""}

    def test_toggle_broadcasts_and_audits(self, db_engine, hub, owner):
        value = admin.set_studio_recruitment(db_engine, hub, owner, True, "Ищем кодеров")

        assert value == {"enabled": True, "message": "Ищем кодеров"}
        assert admin.get_studio_recruitment(db_engine) == value
        assert hub.emitted(BROADCAST_ROOM, EVENT_STUDIO_RECRUITMENT) == [value]

        admin.set_studio_recruitment(db_engine, hub, owner, False)
        second = _audit(db_engine)[-1]
        assert second.before_snapshot == value
        assert second.after_snapshot == {"enabled": False, "message": ""}

    def test_corrupt_setting_falls_back_to_default(self, db_engine):
        with get_session(db_engine) as session:
            session.add(Setting(key=admin.STUDIO_RECRUITMENT_KEY, value_json="{oops"))
        assert admin.get_studio_recruitment(db_engine)["enabled"] is False


# ===========================================================================
# Stats, users & audit
# ===========================================================================
class TestStats:
    def test_counters(self, db_engine, hub, owner, make_user):
        steve = make_user("steve")
        make_user("alex", status=ApplicationStatus.REJECTED)
        apps.submit(db_engine, hub, steve, "server", {"about": "hi"})

        stats = admin.get_system_stats(db_engine)

        assert stats["users"]["total"] == 3
        assert stats["users"]["accepted"] == 1
        assert stats["users"]["pending"] == 1
        assert stats["users"]["rejected"] == 1
        assert stats["users"]["online"] == 3
        assert stats["applications"] == {"total": 1, "pending": 1}
        assert stats["roles"][Role.PLAYER] == 2
        assert sum(d["count"] for d in stats["weeklyRegistrations"]) == 3


class TestListUsers:
    def test_search_and_filters(self, db_engine, owner, make_user):
        make_user("steve_builder", email="steve@mail.ru")
        make_user("alex", Role.CURATOR)

        assert [u["username"] for u in admin.list_users(db_engine, search="MAIL.RU")["users"]] == [
            "steve_builder",
        ]
        assert [u["username"] for u in admin.list_users(db_engine, role=Role.CURATOR)["users"]] == [
            "alex",
        ]
        assert admin.list_users(db_engine, status=ApplicationStatus.ACCEPTED)["total"] == 1


class TestAuditLog:
    def test_newest_first_and_paged(self, db_engine, owner):
        for i in range(3):
            admin.record_admin_action(
                db_engine, "owner", AdminActionType.BROADCAST, "notifications",
                after={"n": i},
            )

        page = admin.list_audit_log(db_engine, page=1, page_size=2)

        assert page["total"] == 3
        assert [e["after"] for e in page["entries"]] == [{"n": 2}, {"n": 1}]
