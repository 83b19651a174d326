"""
jmsmp.bot.cogs.meta — Community statistics
==========================================

- /stats — users, online now, pending applications, accepted players,
  photos and the server version.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from discord.ext import commands

from jmsmp.database.engine import run_db
from jmsmp.services.admin_service import get_system_stats
from jmsmp.services.embeds import build_stats_embed

if TYPE_CHECKING:
    from jmsmp.bot.core import JmsmpBot


class Meta(commands.Cog, name="Meta"):
    """Read-only community information."""

    def __init__(self, bot: JmsmpBot) -> None:
        self.bot = bot

    # -------------------------------------------------------------------
    # /stats
    # -------------------------------------------------------------------
    @commands.hybrid_command(  # type: ignore[arg-type]
        name="stats",
        description="Статистика сообщества JMSMP.",
    )
    async def stats(self, ctx: commands.Context) -> None:
        data = await run_db(get_system_stats, self.bot.engine)
        await ctx.send(embed=build_stats_embed(data, self.bot.cfg))


async def setup(bot: JmsmpBot) -> None:
    await bot.add_cog(Meta(bot))
