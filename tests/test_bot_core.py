"""
tests/test_bot_core.py — Review Card Posting
============================================
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from conftest import run_async
from jmsmp.bot.core import JmsmpBot, parse_message_ref
from jmsmp.config import load_config
from jmsmp.constants import EVENT_NEW_APPLICATION, EVENT_REVIEW_MESSAGE_STALE
from jmsmp.database.engine import get_session
from jmsmp.database.models import Application, Role
from jmsmp.services import application_service as apps

ANSWERS = {"nickname": "Steve", "age": "17", "about": "строю фермы"}


class TestParseMessageRef:
    def test_splits_channel_and_message(self):
        assert parse_message_ref("555:777") == (555, 777)

    @pytest.mark.parametrize("ref", ["", "555", "abc:1", "1:"])
    def test_malformed(self, ref):
        with pytest.raises(ValueError):
            parse_message_ref(ref)


def _channel(message_id: int = 777, channel_id: int = 555) -> MagicMock:
    channel = MagicMock()
    message = MagicMock()
    message.id = message_id
    message.channel.id = channel_id
    message.edit = AsyncMock()
    channel.send = AsyncMock(return_value=message)
    channel.fetch_message = AsyncMock(return_value=message)
    return channel


@pytest.fixture
def bot(db_engine, hub):
    instance = JmsmpBot(load_config(), db_engine, hub)
    instance.get_channel = MagicMock(return_value=_channel())
    return instance


@pytest.fixture
def pending(db_engine, hub, make_user):
    return apps.submit(db_engine, hub, make_user("steve"), "server", ANSWERS)


class TestPostReviewMessage:
    def test_posts_card_with_buttons_and_records_reference(self, bot, db_engine, pending):
        channel = bot.get_channel.return_value

        run_async(bot.post_review_message(pending["id"]))

        bot.get_channel.assert_called_once_with(555)
        kwargs = channel.send.await_args.kwargs
        assert isinstance(kwargs["embed"], discord.Embed)
        custom_ids = {item.custom_id for item in kwargs["view"].children}
        assert f"review:approve:{pending['id']}" in custom_ids
        assert f"review:reject:{pending['id']}" in custom_ids

        with get_session(db_engine) as session:
            assert session.get(Application, pending["id"]).external_message_id == "555:777"

    def test_decided_application_is_posted_without_buttons(
        self, bot, db_engine, hub, pending, make_user,
    ):
        apps.decide(db_engine, hub, make_user("admin", Role.ADMINISTRATOR), pending["id"], "rejected")
        run_async(bot.post_review_message(pending["id"]))
        assert bot.get_channel.return_value.send.await_args.kwargs["view"] is None

    def test_vanished_application_is_skipped(self, bot):
        assert run_async(bot.post_review_message(4242)) is None
        bot.get_channel.return_value.send.assert_not_awaited()

    def test_discord_failure_is_logged_not_raised(self, bot, db_engine, pending):
        response = MagicMock(status=500, reason="boom")
        bot.get_channel.return_value.send.side_effect = discord.HTTPException(response, "boom")

        assert run_async(bot.post_review_message(pending["id"])) is None
        with get_session(db_engine) as session:
            assert session.get(Application, pending["id"]).external_message_id is None


class TestRoomCallbacks:
    def test_new_application_event_posts_card(self, bot, pending):
        bot.post_review_message = AsyncMock()
        run_async(bot._on_admin_event(EVENT_NEW_APPLICATION, {"application": pending}))
        bot.post_review_message.assert_awaited_once_with(pending["id"])

    def test_other_admin_events_are_ignored(self, bot):
        bot.post_review_message = AsyncMock()
        run_async(bot._on_admin_event("user-activity-update", {"username": "steve"}))
        bot.post_review_message.assert_not_awaited()

    def test_stale_message_is_re_rendered_without_buttons(self, bot, pending):
        run_async(bot._on_review_bot_event(
            EVENT_REVIEW_MESSAGE_STALE,
            {"applicationId": pending["id"], "messageRef": "555:777"},
        ))

        channel = bot.get_channel.return_value
        channel.fetch_message.assert_awaited_once_with(777)
        message = channel.fetch_message.return_value
        assert message.edit.await_args.kwargs["view"] is None

    def test_deleted_message_is_tolerated(self, bot, pending):
        response = MagicMock(status=404, reason="gone")
        bot.get_channel.return_value.fetch_message.side_effect = discord.NotFound(response, "gone")
        run_async(bot.refresh_review_message(pending["id"], "555:777"))
