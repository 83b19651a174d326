"""
tests/test_application_service.py — Application Registry
========================================================

Submission, listing and the decide workflow, including the behaviour
when the applicant half of a decision fails and when two reviewers race.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import event, select, text, update
from sqlalchemy.orm import Session

from jmsmp.constants import (
    ADMIN_ROOM,
    EVENT_APPLICATION_UPDATED,
    EVENT_NEW_APPLICATION,
    EVENT_NOTIFICATION,
    EVENT_ROLE_UPDATED,
    user_room,
)
from jmsmp.database.engine import get_session
from jmsmp.database.models import (
    Application,
    ApplicationStatus,
    Notification,
    PendingUserSync,
    Role,
    User,
)
from jmsmp.errors import (
    DuplicatePending,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from jmsmp.services import application_service as svc
from jmsmp.services.application_service import ApplicationFilters

ANSWERS = {"Возраст": "17", "Почему JMSMP?": "Друзья играют"}


def _user(engine, username: str) -> User:
    with get_session(engine) as session:
        return session.scalar(select(User).where(User.username == username))


def _notifications(engine, username: str) -> list[Notification]:
    with get_session(engine) as session:
        return session.scalars(
            select(Notification)
            .join(User, User.id == Notification.user_id)
            .where(User.username == username)
            .order_by(Notification.id)
        ).all()


# ===========================================================================
# submit
# ===========================================================================
class TestSubmit:
    def test_server_application_marks_user_pending(self, db_engine, hub, make_user):
        steve = make_user("steve", status=ApplicationStatus.REJECTED)

        app = svc.submit(db_engine, hub, steve, "server", ANSWERS)

        assert app["status"] == ApplicationStatus.PENDING
        assert app["answers"] == ANSWERS
        assert _user(db_engine, "steve").application_status == ApplicationStatus.PENDING

    def test_emits_new_application_to_admin_room(self, db_engine, hub, make_user):
        steve = make_user("steve")
        app = svc.submit(db_engine, hub, steve, "server", ANSWERS)

        (payload,) = hub.emitted(ADMIN_ROOM, EVENT_NEW_APPLICATION)
        assert payload["application"]["id"] == app["id"]
        assert payload["user"]["username"] == "steve"

    @pytest.mark.parametrize("app_type,answers", [
        ("clan", ANSWERS),
        ("server", {}),
        ("server", ["not", "a", "mapping"]),
    ])
    def test_invalid_input(self, db_engine, hub, make_user, app_type, answers):
        steve = make_user("steve")
        with pytest.raises(ValidationError):
            svc.submit(db_engine, hub, steve, app_type, answers)
        assert hub.events == []

    def test_studio_requires_accepted_player(self, db_engine, hub, make_user):
        newbie = make_user("newbie", status=ApplicationStatus.PENDING)
        with pytest.raises(Forbidden):
            svc.submit(db_engine, hub, newbie, "studio", ANSWERS)

    def test_studio_does_not_touch_membership_status(self, db_engine, hub, make_user):
        player = make_user("player", status=ApplicationStatus.ACCEPTED)
        svc.submit(db_engine, hub, player, "studio", ANSWERS)
        assert _user(db_engine, "player").application_status == ApplicationStatus.ACCEPTED


class TestDuplicateGuard:
    def test_second_pending_of_same_type_rejected(self, db_engine, hub, make_user):
        steve = make_user("steve")
        svc.submit(db_engine, hub, steve, "server", ANSWERS)
        with pytest.raises(DuplicatePending):
            svc.submit(db_engine, hub, steve, "server", ANSWERS)

    @pytest.mark.parametrize("decision", [ApplicationStatus.ACCEPTED, ApplicationStatus.REJECTED])
    def test_resubmission_allowed_after_decision(self, db_engine, hub, make_user, decision):
        steve = make_user("steve")
        owner = make_user("owner", Role.OWNER)
        first = svc.submit(db_engine, hub, steve, "server", ANSWERS)
        svc.decide(db_engine, hub, owner, first["id"], decision)

        second = svc.submit(db_engine, hub, steve, "server", ANSWERS)
        assert second["id"] != first["id"]

    def test_other_type_is_independent(self, db_engine, hub, make_user):
        player = make_user("player", status=ApplicationStatus.ACCEPTED)
        svc.submit(db_engine, hub, player, "studio", ANSWERS)
        svc.submit(db_engine, hub, player, "server", ANSWERS)


# ===========================================================================
# list_for_actor / get_application
# ===========================================================================
class TestListing:
    @pytest.fixture
    def populated(self, db_engine, hub, make_user):
        alex = make_user("Alex", email="alex@mail.ru")
        bob = make_user("bob", email="bob@gmail.com")
        reviewer = make_user("curator", Role.CURATOR)
        svc.submit(db_engine, hub, alex, "server", ANSWERS)
        svc.submit(db_engine, hub, bob, "server", ANSWERS)
        return alex, bob, reviewer

    def test_applicant_sees_only_own(self, db_engine, populated):
        alex, _, _ = populated
        page = svc.list_for_actor(db_engine, alex)
        assert [a["username"] for a in page.items] == ["Alex"]
        assert page.total == 1

    def test_applicant_filters_cannot_widen_scope(self, db_engine, populated):
        alex, _, _ = populated
        page = svc.list_for_actor(db_engine, alex, ApplicationFilters(username="bob"))
        assert [a["username"] for a in page.items] == ["Alex"]

    def test_reviewer_sees_all_newest_first(self, db_engine, populated):
        _, _, reviewer = populated
        page = svc.list_for_actor(db_engine, reviewer)
        assert [a["username"] for a in page.items] == ["bob", "Alex"]

    def test_reviewer_handle_filter_is_case_insensitive(self, db_engine, populated):
        _, _, reviewer = populated
        page = svc.list_for_actor(db_engine, reviewer, ApplicationFilters(username="ALE"))
        assert [a["username"] for a in page.items] == ["Alex"]

    def test_reviewer_email_filter(self, db_engine, populated):
        _, _, reviewer = populated
        page = svc.list_for_actor(db_engine, reviewer, ApplicationFilters(email="GMAIL"))
        assert [a["username"] for a in page.items] == ["bob"]

    def test_status_and_type_filters(self, db_engine, hub, populated):
        _, _, reviewer = populated
        bob_app_id = svc.list_for_actor(db_engine, reviewer).items[0]["id"]
        with get_session(db_engine) as session:
            session.execute(
                update(Application)
                .where(Application.id == bob_app_id)
                .values(status=ApplicationStatus.REJECTED)
            )
        page = svc.list_for_actor(
            db_engine, reviewer, ApplicationFilters(type="server", status="pending"),
        )
        assert [a["username"] for a in page.items] == ["Alex"]

    def test_own_only_for_reviewer(self, db_engine, hub, populated):
        _, _, reviewer = populated
        page = svc.list_for_actor(db_engine, reviewer, own_only=True)
        assert page.items == []

    def test_paging(self, db_engine, populated):
        _, _, reviewer = populated
        page = svc.list_for_actor(db_engine, reviewer, page=2, limit=1)
        assert page.total == 2
        assert page.pages == 2
        assert [a["username"] for a in page.items] == ["Alex"]
        assert page.to_dict()["totalPages"] == 2

    def test_get_application_visibility(self, db_engine, populated):
        alex, bob, reviewer = populated
        alex_app = svc.list_for_actor(db_engine, alex).items[0]

        assert svc.get_application(db_engine, alex, alex_app["id"])["username"] == "Alex"
        assert svc.get_application(db_engine, reviewer, alex_app["id"])["username"] == "Alex"
        with pytest.raises(Forbidden):
            svc.get_application(db_engine, bob, alex_app["id"])
        with pytest.raises(NotFound):
            svc.get_application(db_engine, reviewer, 9999)


# ===========================================================================
# decide
# ===========================================================================
class TestDecide:
    @pytest.fixture
    def pending(self, db_engine, hub, make_user):
        steve = make_user("steve")
        app = svc.submit(db_engine, hub, steve, "server", ANSWERS)
        hub.events.clear()
        return steve, app

    def test_end_to_end_accept(self, db_engine, hub, make_user, pending):
        steve, app = pending
        owner = make_user("owner", Role.OWNER)

        result = svc.decide(db_engine, hub, owner, app["id"], "accepted")

        assert result.application["status"] == ApplicationStatus.ACCEPTED
        assert result.application["reviewedBy"] == "owner"
        assert result.application["reviewDate"] is not None
        assert result.user_synced is True
        assert _user(db_engine, "steve").application_status == ApplicationStatus.ACCEPTED

        notes = _notifications(db_engine, "steve")
        assert notes[-1].title == "Ваша заявка одобрена!"
        assert notes[-1].read is False

    def test_reject_notifies_with_rejection_wording(self, db_engine, hub, make_user, pending):
        _, app = pending
        curator = make_user("curator", Role.CURATOR)
        svc.decide(db_engine, hub, curator, app["id"], "rejected")

        assert _user(db_engine, "steve").application_status == ApplicationStatus.REJECTED
        assert _notifications(db_engine, "steve")[-1].title == "Ваша заявка отклонена."

    def test_emits_to_admin_and_applicant_rooms(self, db_engine, hub, make_user, pending):
        steve, app = pending
        owner = make_user("owner", Role.OWNER)
        svc.decide(db_engine, hub, owner, app["id"], "accepted", Role.DESIGNER)

        assert len(hub.emitted(ADMIN_ROOM, EVENT_APPLICATION_UPDATED)) == 1
        room = user_room(steve.id)
        (update_event,) = hub.emitted(room, EVENT_APPLICATION_UPDATED)
        assert update_event["status"] == "accepted"
        assert len(hub.emitted(room, EVENT_NOTIFICATION)) == 1
        assert hub.emitted(room, EVENT_ROLE_UPDATED) == [{"role": Role.DESIGNER}]

    @pytest.mark.parametrize("first,second", [
        ("accepted", "accepted"),
        ("accepted", "rejected"),
        ("rejected", "accepted"),
        ("rejected", "rejected"),
    ])
    def test_no_re_decision(self, db_engine, hub, make_user, pending, first, second):
        _, app = pending
        owner = make_user("owner", Role.OWNER)
        svc.decide(db_engine, hub, owner, app["id"], first)
        with pytest.raises(InvalidTransition):
            svc.decide(db_engine, hub, owner, app["id"], second)

        with get_session(db_engine) as session:
            assert session.get(Application, app["id"]).status == first

    def test_player_is_forbidden_even_for_missing_application(self, db_engine, hub, make_user):
        player = make_user("player", status=ApplicationStatus.ACCEPTED)
        with pytest.raises(Forbidden):
            svc.decide(db_engine, hub, player, 424242, "accepted")

    @pytest.mark.parametrize("role", [Role.PLAYER, Role.FOUNDER, Role.CODER, Role.MARKETER])
    def test_non_reviewer_roles_forbidden(self, db_engine, hub, make_user, pending, role):
        _, app = pending
        actor = make_user("actor", role)
        with pytest.raises(Forbidden):
            svc.decide(db_engine, hub, actor, app["id"], "accepted")

    def test_not_found_for_reviewer(self, db_engine, hub, make_user):
        owner = make_user("owner", Role.OWNER)
        with pytest.raises(NotFound):
            svc.decide(db_engine, hub, owner, 424242, "accepted")

    def test_invalid_decision_value(self, db_engine, hub, make_user, pending):
        _, app = pending
        owner = make_user("owner", Role.OWNER)
        with pytest.raises(ValidationError):
            svc.decide(db_engine, hub, owner, app["id"], "pending")

    def test_unknown_role_grant(self, db_engine, hub, make_user, pending):
        _, app = pending
        owner = make_user("owner", Role.OWNER)
        with pytest.raises(ValidationError):
            svc.decide(db_engine, hub, owner, app["id"], "accepted", "Император")


class TestRoleGrantGating:
    @pytest.fixture
    def pending(self, db_engine, hub, make_user):
        steve = make_user("steve")
        app = svc.submit(db_engine, hub, steve, "server", ANSWERS)
        hub.events.clear()
        return steve, app

    @pytest.mark.parametrize("actor_role", [Role.ADMINISTRATOR, Role.CURATOR])
    def test_lower_reviewer_grant_ignored(self, db_engine, hub, make_user, pending, actor_role):
        steve, app = pending
        actor = make_user("actor", actor_role)

        result = svc.decide(db_engine, hub, actor, app["id"], "accepted", Role.ADMINISTRATOR)

        user = _user(db_engine, "steve")
        assert user.role == Role.PLAYER
        assert user.application_status == ApplicationStatus.ACCEPTED
        assert result.role_granted is None
        assert hub.emitted(user_room(steve.id), EVENT_ROLE_UPDATED) == []

    @pytest.mark.parametrize("actor_role", [Role.SITE_OWNER, Role.OWNER])
    def test_top_roles_grant_applies(self, db_engine, hub, make_user, pending, actor_role):
        _, app = pending
        actor = make_user("actor", actor_role)

        result = svc.decide(db_engine, hub, actor, app["id"], "accepted", Role.ADMINISTRATOR)

        assert _user(db_engine, "steve").role == Role.ADMINISTRATOR
        assert result.role_granted == Role.ADMINISTRATOR

    def test_grant_applies_on_rejection_too(self, db_engine, hub, make_user, pending):
        _, app = pending
        owner = make_user("owner", Role.OWNER)
        svc.decide(db_engine, hub, owner, app["id"], "rejected", Role.CURATOR)

        user = _user(db_engine, "steve")
        assert user.role == Role.CURATOR
        assert user.application_status == ApplicationStatus.REJECTED

    def test_main_admin_role_is_never_granted_away(self, db_engine, hub, make_user, monkeypatch):
        monkeypatch.setenv("MAIN_ADMIN_USERNAME", "root")
        root = make_user("root", Role.SITE_OWNER, ApplicationStatus.ACCEPTED)
        boss = make_user("boss", Role.OWNER)
        app = svc.submit(db_engine, hub, root, "server", ANSWERS)
        hub.events.clear()

        result = svc.decide(db_engine, hub, boss, app["id"], "rejected", Role.PLAYER)

        user = _user(db_engine, "root")
        assert user.role == Role.SITE_OWNER
        assert user.application_status == ApplicationStatus.REJECTED
        assert result.role_granted is None
        assert hub.emitted(user_room(root.id), EVENT_ROLE_UPDATED) == []


class TestGoverningApplication:
    T0 = datetime(2026, 1, 1, 12, 0)

    def _at(self, minutes):
        return self.T0 + timedelta(minutes=minutes)

    def test_latest_decision_wins_over_latest_submission(self):
        rows = [
            (1, ApplicationStatus.REJECTED, self._at(0), self._at(30)),
            (2, ApplicationStatus.ACCEPTED, self._at(5), self._at(20)),
        ]
        assert svc.pick_governing_application(rows) == (1, ApplicationStatus.REJECTED)

    def test_pending_submitted_after_every_decision_wins(self):
        rows = [
            (1, ApplicationStatus.REJECTED, self._at(0), self._at(10)),
            (2, ApplicationStatus.PENDING, self._at(15), None),
        ]
        assert svc.pick_governing_application(rows) == (2, ApplicationStatus.PENDING)

    def test_older_pending_does_not_override_a_decision(self):
        rows = [
            (1, ApplicationStatus.PENDING, self._at(0), None),
            (2, ApplicationStatus.ACCEPTED, self._at(5), self._at(10)),
        ]
        assert svc.pick_governing_application(rows) == (2, ApplicationStatus.ACCEPTED)

    def test_review_date_tie_broken_by_id(self):
        rows = [
            (3, ApplicationStatus.ACCEPTED, self._at(0), self._at(10)),
            (4, ApplicationStatus.REJECTED, self._at(1), self._at(10)),
        ]
        assert svc.pick_governing_application(rows) == (4, ApplicationStatus.REJECTED)

    def test_no_applications(self):
        assert svc.pick_governing_application([]) is None


class TestRacedDuplicateDecide:
    def test_status_follows_most_recent_decision(self, db_engine, hub, make_user):
        steve = make_user("steve")
        admin = make_user("admin", Role.ADMINISTRATOR)
        first = svc.submit(db_engine, hub, steve, "server", ANSWERS)
        with get_session(db_engine) as session:
            # Slipped past the pending check in the same instant
            dup = Application(
                username="steve", type="server", status=ApplicationStatus.PENDING,
                answers=ANSWERS, created_at=datetime.now(UTC) + timedelta(seconds=1),
            )
            session.add(dup)
            session.flush()
            dup_id = dup.id

        svc.decide(db_engine, hub, admin, dup_id, "accepted")
        assert _user(db_engine, "steve").application_status == ApplicationStatus.ACCEPTED

        svc.decide(db_engine, hub, admin, first["id"], "rejected")
        assert _user(db_engine, "steve").application_status == ApplicationStatus.REJECTED


class TestStudioDecision:
    def test_studio_decision_keeps_membership_status(self, db_engine, hub, make_user):
        player = make_user("player", status=ApplicationStatus.ACCEPTED)
        owner = make_user("owner", Role.OWNER)
        app = svc.submit(db_engine, hub, player, "studio", ANSWERS)

        svc.decide(db_engine, hub, owner, app["id"], "rejected", Role.CODER)

        user = _user(db_engine, "player")
        assert user.application_status == ApplicationStatus.ACCEPTED
        assert user.role == Role.CODER
        assert _notifications(db_engine, "player")[-1].title == "Ваша заявка отклонена."


class TestPartialFailure:
    def test_user_update_failure_is_queued(self, db_engine, hub, make_user):
        steve = make_user("steve")
        owner = make_user("owner", Role.OWNER)
        app = svc.submit(db_engine, hub, steve, "server", ANSWERS)
        hub.events.clear()

        with patch(
            "jmsmp.services.application_service.apply_user_side",
            side_effect=RuntimeError("users table locked"),
        ):
            result = svc.decide(db_engine, hub, owner, app["id"], "accepted", Role.DESIGNER)

        assert result.user_synced is False
        assert result.role_granted is None
        assert result.application["status"] == ApplicationStatus.ACCEPTED

        with get_session(db_engine) as session:
            assert session.get(Application, app["id"]).status == ApplicationStatus.ACCEPTED
            queued = session.get(PendingUserSync, app["id"])
            assert queued is not None
            assert queued.role_grant == Role.DESIGNER
            assert "users table locked" in queued.last_error

        user = _user(db_engine, "steve")
        assert user.application_status == ApplicationStatus.PENDING
        assert user.role == Role.PLAYER

        # Reviewers still learn about the decision; the applicant room does not
        assert len(hub.emitted(ADMIN_ROOM, EVENT_APPLICATION_UPDATED)) == 1
        assert hub.emitted(user_room(steve.id)) == []


class TestConcurrentDecide:
    def test_loser_of_the_race_gets_invalid_transition(self, db_engine, hub, make_user):
        steve = make_user("steve")
        owner = make_user("owner", Role.OWNER)
        app = svc.submit(db_engine, hub, steve, "server", ANSWERS)
        hub.events.clear()

        fired = []

        def _rival_decides_first(state):
            # Runs just before our compare-and-set UPDATE is sent
            if state.is_update and not fired:
                fired.append(True)
                state.session.connection().execute(
                    text("UPDATE applications SET status = 'rejected' WHERE id = :id"),
                    {"id": app["id"]},
                )

        event.listen(Session, "do_orm_execute", _rival_decides_first)
        try:
            with pytest.raises(InvalidTransition):
                svc.decide(db_engine, hub, owner, app["id"], "accepted")
        finally:
            if event.contains(Session, "do_orm_execute", _rival_decides_first):
                event.remove(Session, "do_orm_execute", _rival_decides_first)

        assert _user(db_engine, "steve").application_status == ApplicationStatus.PENDING
        assert hub.events == []


# ===========================================================================
# Bot correlation
# ===========================================================================
class TestExternalMessage:
    def test_attach_and_return_on_decide(self, db_engine, hub, make_user):
        steve = make_user("steve")
        owner = make_user("owner", Role.OWNER)
        app = svc.submit(db_engine, hub, steve, "server", ANSWERS)

        svc.attach_external_message(db_engine, app["id"], "555:777")
        result = svc.decide(db_engine, hub, owner, app["id"], "accepted")

        assert result.external_message_id == "555:777"

    def test_no_external_message_by_default(self, db_engine, hub, make_user):
        steve = make_user("steve")
        owner = make_user("owner", Role.OWNER)
        app = svc.submit(db_engine, hub, steve, "server", ANSWERS)
        assert svc.decide(db_engine, hub, owner, app["id"], "rejected").external_message_id is None

    def test_review_card(self, db_engine, hub, make_user):
        steve = make_user("steve")
        app = svc.submit(db_engine, hub, steve, "server", ANSWERS)

        card = svc.load_review_card(db_engine, app["id"])
        assert card["application"]["id"] == app["id"]
        assert card["user"]["role"] == Role.PLAYER
        assert card["user"]["registrationDate"] is not None
        assert svc.load_review_card(db_engine, 9999) is None
