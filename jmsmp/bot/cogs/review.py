"""
jmsmp.bot.cogs.review — Review buttons on application cards
===========================================================

Buttons carry an encoded review action in their ``custom_id`` (see
:mod:`jmsmp.engine.review`).  They are handled by a raw
``on_interaction`` listener rather than a persistent ``View`` so that a
card posted before a restart still works without re-registering views.

Every press goes through the same ``decide`` the website uses; failures
become ephemeral toasts for the reviewer.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from jmsmp.database.engine import run_db
from jmsmp.database.models import ApplicationStatus
from jmsmp.engine.review import is_review_payload, parse_review_action
from jmsmp.errors import Forbidden, InvalidTransition, JmsmpError, NotFound
from jmsmp.services.application_service import DecisionResult, decide, load_review_card
from jmsmp.services.embeds import build_application_embed
from jmsmp.services.identity_service import resolve_external_identity

if TYPE_CHECKING:
    from jmsmp.bot.core import JmsmpBot

logger = logging.getLogger(__name__)

TOAST_FORBIDDEN = "❌ У вас нет прав"
TOAST_ALREADY_DECIDED = "⚠️ Заявка уже рассмотрена"
TOAST_NOT_FOUND = "❌ Заявка не найдена"
TOAST_FAILED = "❌ Ошибка обработки запроса"


def toast_for(exc: Exception) -> str:
    """Reviewer-facing text for a failed button press."""
    if isinstance(exc, Forbidden):
        return TOAST_FORBIDDEN
    if isinstance(exc, InvalidTransition):
        return TOAST_ALREADY_DECIDED
    if isinstance(exc, NotFound):
        return TOAST_NOT_FOUND
    return TOAST_FAILED


def confirmation_for(application_id: int, result: DecisionResult) -> str:
    if result.application["status"] == ApplicationStatus.ACCEPTED:
        text = f"✅ Заявка #{application_id} одобрена"
    else:
        text = f"❌ Заявка #{application_id} отклонена"
    if result.role_granted:
        text += f", выдана роль «{result.role_granted}»"
    if not result.user_synced:
        text += "\n⚠️ Профиль игрока будет обновлён при следующей синхронизации"
    return text


class Review(commands.Cog, name="Review"):
    """Handles decision buttons on review cards."""

    def __init__(self, bot: JmsmpBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_interaction(self, interaction: discord.Interaction) -> None:
        if interaction.type is not discord.InteractionType.component:
            return
        custom_id = (interaction.data or {}).get("custom_id")
        if not is_review_payload(custom_id):
            return
        await self.handle_review_press(interaction, custom_id)

    async def handle_review_press(self, interaction: discord.Interaction, custom_id: str) -> None:
        try:
            action = parse_review_action(custom_id)
            actor = await run_db(resolve_external_identity, self.bot.engine, interaction.user.id)
            status, role = action.to_decision()
            result = await run_db(
                decide, self.bot.engine, self.bot.hub, actor, action.application_id, status, role,
            )
        except JmsmpError as exc:
            logger.info(
                "Review press %r by %s rejected: %s", custom_id, interaction.user.id, exc.message,
            )
            await interaction.response.send_message(toast_for(exc), ephemeral=True)
            return
        except Exception as exc:
            logger.exception("Review press %r by %s failed", custom_id, interaction.user.id)
            await interaction.response.send_message(toast_for(exc), ephemeral=True)
            return

        confirmation = confirmation_for(action.application_id, result)
        try:
            card = await run_db(load_review_card, self.bot.engine, action.application_id)
            embed = build_application_embed(card) if card else None
            await interaction.response.edit_message(embed=embed, view=None)
        except Exception:
            # The decision stands; answer the press without the refreshed card
            logger.exception(
                "Could not refresh review card for application #%d", action.application_id,
            )
            if not interaction.response.is_done():
                await interaction.response.send_message(confirmation, ephemeral=True)
                return
        await interaction.followup.send(confirmation, ephemeral=True)


async def setup(bot: JmsmpBot) -> None:
    await bot.add_cog(Review(bot))
