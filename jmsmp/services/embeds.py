"""
jmsmp.services.embeds — Discord embed builders for the review channel
=====================================================================

All embed and button layout lives here so the review cog and bot core
only supply data.
"""

from __future__ import annotations

from datetime import datetime

import discord

from jmsmp.config import JmsmpConfig
from jmsmp.constants import APPLICATION_TYPE_EMOJI, STATUS_EMOJI
from jmsmp.database.models import ApplicationStatus, Role
from jmsmp.engine.review import (
    Approve,
    ApproveWithRole,
    Reject,
    encode_review_action,
)

_STATUS_COLORS = {
    ApplicationStatus.PENDING: discord.Color.gold(),
    ApplicationStatus.ACCEPTED: discord.Color.green(),
    ApplicationStatus.REJECTED: discord.Color.red(),
}

_TYPE_TITLES = {
    "server": "Заявка на сервер",
    "studio": "Заявка в студию",
}

# Discord caps field values at 1024 characters
_FIELD_LIMIT = 1024


def _fmt_date(iso: str | None) -> str:
    if not iso:
        return "—"
    try:
        return datetime.fromisoformat(iso).strftime("%d.%m.%Y %H:%M")
    except ValueError:
        return iso


def build_application_embed(card: dict) -> discord.Embed:
    """Render an application (as returned by ``load_review_card``)."""
    app = card["application"]
    user = card.get("user") or {}
    status = app["status"]

    embed = discord.Embed(
        title=(
            f"{APPLICATION_TYPE_EMOJI.get(app['type'], '')} "
            f"{_TYPE_TITLES.get(app['type'], 'Заявка')} #{app['id']}"
        ),
        color=_STATUS_COLORS.get(status, discord.Color.blurple()),
    )
    embed.add_field(name="\U0001f464 Игрок", value=app["username"], inline=True)
    embed.add_field(name="\U0001f3ad Роль", value=user.get("role") or "—", inline=True)
    embed.add_field(
        name="\U0001f4c5 Регистрация",
        value=_fmt_date(user.get("registrationDate")),
        inline=True,
    )

    for question, answer in (app.get("answers") or {}).items():
        text = str(answer) if answer not in (None, "") else "—"
        embed.add_field(name=str(question)[:256], value=text[:_FIELD_LIMIT], inline=False)

    status_line = f"{STATUS_EMOJI.get(status, '')} {status}"
    if app.get("reviewedBy"):
        status_line += f" — {app['reviewedBy']} ({_fmt_date(app.get('reviewDate'))})"
    embed.add_field(name="Статус", value=status_line, inline=False)
    embed.set_footer(text=f"Подана {_fmt_date(app.get('createdAt'))}")
    return embed


def build_review_view(application_id: int) -> discord.ui.View:
    """Decision buttons for a pending application.

    The buttons carry encoded review actions as ``custom_id`` and are
    handled by the review cog's interaction listener, so they keep
    working across bot restarts.  Must be called on the event loop.
    """
    view = discord.ui.View(timeout=None)
    rows = [
        (Approve(application_id), "✅ Одобрить", discord.ButtonStyle.success, 0),
        (Reject(application_id), "❌ Отклонить", discord.ButtonStyle.danger, 0),
        (
            ApproveWithRole(application_id, Role.ADMINISTRATOR),
            "\U0001f451 Администратор",
            discord.ButtonStyle.primary,
            1,
        ),
        (
            ApproveWithRole(application_id, Role.CURATOR),
            "\U0001f4bc Куратор",
            discord.ButtonStyle.secondary,
            1,
        ),
    ]
    for action, label, style, row in rows:
        view.add_item(discord.ui.Button(
            label=label,
            style=style,
            custom_id=encode_review_action(action),
            row=row,
        ))
    return view


def build_stats_embed(stats: dict, cfg: JmsmpConfig) -> discord.Embed:
    """``/stats`` summary for staff."""
    users = stats["users"]
    embed = discord.Embed(
        title=f"\U0001f4ca Статистика {cfg.community_name}",
        color=discord.Color.blurple(),
    )
    embed.add_field(name="\U0001f465 Пользователей", value=str(users["total"]), inline=True)
    embed.add_field(name="\U0001f7e2 Онлайн (15 мин)", value=str(users["online"]), inline=True)
    embed.add_field(
        name="⏳ Заявок на рассмотрении",
        value=str(stats["applications"]["pending"]),
        inline=True,
    )
    embed.add_field(name="✅ Одобрено игроков", value=str(users["accepted"]), inline=True)
    embed.add_field(name="\U0001f5bc Фотографий", value=str(stats["photos"]), inline=True)
    embed.add_field(name="\U0001f3ae Версия", value=cfg.server_version, inline=True)
    return embed
