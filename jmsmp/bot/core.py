"""
jmsmp.bot.core — Bot Instance & Cog Loader
==========================================

:class:`JmsmpBot` is a ``commands.Bot`` that carries the shared config,
DB engine and realtime hub (``bot.cfg`` / ``bot.engine`` / ``bot.hub``)
and bridges the website's realtime rooms into Discord:

- ``new-application`` in ``admin-room`` → post a review card with
  decision buttons to ``review_channel_id`` and remember the message.
- ``review-message-stale`` in ``review-bot`` → a decision was made on the
  website; re-render the card without buttons.

The hub must be a :class:`~jmsmp.engine.realtime.PostgresHub`: the events
originate in the API process and reach the bot through LISTEN/NOTIFY.
"""

from __future__ import annotations

import asyncio
import logging
import os

import discord
from discord.ext import commands
from sqlalchemy import Engine

from jmsmp.config import JmsmpConfig
from jmsmp.constants import (
    ADMIN_ROOM,
    EVENT_NEW_APPLICATION,
    EVENT_REVIEW_MESSAGE_STALE,
    REVIEW_BOT_ROOM,
)
from jmsmp.database.engine import run_db
from jmsmp.database.models import ApplicationStatus
from jmsmp.engine.realtime import PostgresHub, RealtimeHub
from jmsmp.services.application_service import attach_external_message, load_review_card
from jmsmp.services.embeds import build_application_embed, build_review_view

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "jmsmp.bot.cogs.review",
    "jmsmp.bot.cogs.meta",
    "jmsmp.bot.cogs.tasks",
]


def parse_message_ref(ref: str) -> tuple[int, int]:
    """Split a stored ``"{channel_id}:{message_id}"`` reference."""
    channel_id, _, message_id = ref.partition(":")
    return int(channel_id), int(message_id)


class JmsmpBot(commands.Bot):
    """Custom Bot subclass that carries project-wide state.

    Parameters
    ----------
    cfg:
        The parsed :class:`JmsmpConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine` connected to PostgreSQL.
    hub:
        Realtime hub shared with the API (PostgreSQL-backed).
    """

    def __init__(self, cfg: JmsmpConfig, engine: Engine, hub: RealtimeHub) -> None:
        # Buttons and slash commands only; no privileged intents needed
        intents = discord.Intents.default()

        super().__init__(
            command_prefix=cfg.bot_prefix,
            intents=intents,
            description=f"{cfg.community_name} — заявки и статистика",
        )

        self.cfg = cfg
        self.engine = engine
        self.hub = hub
        self._subscribed = False

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Load every Cog extension; one broken Cog doesn't stop the bot."""
        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

    async def on_ready(self) -> None:
        """Fired when the bot has connected and the cache is populated."""
        assert self.user is not None  # guaranteed after on_ready
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

        # --- Slash-command sync ---------------------------------------------
        dev_guild_id = os.getenv("DEV_GUILD_ID")
        if dev_guild_id:
            guild = discord.Object(id=int(dev_guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("Synced %d commands to dev guild %s", len(synced), dev_guild_id)
        else:
            synced = await self.tree.sync()
            logger.info("Synced %d commands globally", len(synced))

        # on_ready fires again after reconnects
        if not self._subscribed:
            self._register_room_callbacks()
            self._subscribed = True

        if self.cfg.review_channel_id is None:
            logger.warning("review_channel_id is not configured — review cards are disabled")

    async def close(self) -> None:
        """Graceful shutdown — stop the LISTEN thread before disconnecting."""
        logger.info("Bot shutting down…")
        if isinstance(self.hub, PostgresHub):
            self.hub.stop_listener()
        await super().close()

    # -----------------------------------------------------------------------
    # Realtime rooms → Discord
    # -----------------------------------------------------------------------
    def _register_room_callbacks(self) -> None:
        loop = asyncio.get_running_loop()
        self.hub.subscribe(ADMIN_ROOM, self._on_admin_event, loop=loop)
        self.hub.subscribe(REVIEW_BOT_ROOM, self._on_review_bot_event, loop=loop)
        logger.info("Realtime room callbacks registered on asyncio loop")

    async def _on_admin_event(self, event: str, payload: dict) -> None:
        if event != EVENT_NEW_APPLICATION:
            return
        application_id = int(payload["application"]["id"])
        await self.post_review_message(application_id)

    async def _on_review_bot_event(self, event: str, payload: dict) -> None:
        if event != EVENT_REVIEW_MESSAGE_STALE:
            return
        await self.refresh_review_message(int(payload["applicationId"]), payload["messageRef"])

    async def _resolve_channel(self, channel_id: int) -> discord.abc.Messageable:
        channel = self.get_channel(channel_id)
        if channel is None:
            channel = await self.fetch_channel(channel_id)
        return channel  # type: ignore[return-value]

    async def post_review_message(self, application_id: int) -> discord.Message | None:
        """Post the review card for *application_id* and record where it went."""
        channel_id = self.cfg.review_channel_id
        if channel_id is None:
            return None

        card = await run_db(load_review_card, self.engine, application_id)
        if card is None:
            logger.warning("Application #%d vanished before it could be posted", application_id)
            return None

        try:
            channel = await self._resolve_channel(channel_id)
            pending = card["application"]["status"] == ApplicationStatus.PENDING
            message = await channel.send(
                embed=build_application_embed(card),
                view=build_review_view(application_id) if pending else None,
            )
        except discord.HTTPException:
            logger.exception("Could not post application #%d to channel %s", application_id, channel_id)
            return None

        await run_db(
            attach_external_message,
            self.engine,
            application_id,
            f"{message.channel.id}:{message.id}",
        )
        logger.info("Posted application #%d for review (message %s)", application_id, message.id)
        return message

    async def refresh_review_message(self, application_id: int, message_ref: str) -> None:
        """Re-render a review card after a decision made elsewhere."""
        try:
            channel_id, message_id = parse_message_ref(message_ref)
        except ValueError:
            logger.warning("Malformed message reference %r on application #%d", message_ref, application_id)
            return

        card = await run_db(load_review_card, self.engine, application_id)
        if card is None:
            return

        try:
            channel = await self._resolve_channel(channel_id)
            message = await channel.fetch_message(message_id)
            await message.edit(embed=build_application_embed(card), view=None)
        except discord.NotFound:
            logger.info("Review message for application #%d no longer exists", application_id)
        except discord.HTTPException:
            logger.warning(
                "Could not refresh review message for application #%d", application_id, exc_info=True,
            )
