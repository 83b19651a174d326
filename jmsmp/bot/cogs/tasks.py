"""
jmsmp.bot.cogs.tasks — Periodic Background Tasks
================================================

Scheduled jobs that run on ``discord.ext.tasks`` loops:

- **Reconciliation** — hourly, retries queued applicant updates and
  repairs ``application_status`` drift.
- **Retention cleanup** — daily, removes long-rejected players and old
  rejected applications (``cleanup_days``, default 30).

These tasks fire in the bot process (not a separate worker) to keep
the deployment simple.  They run via ``run_db()`` to avoid blocking
the event loop.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discord.ext import commands, tasks

from jmsmp.database.engine import run_db
from jmsmp.services.reconciliation_service import run_reconciliation
from jmsmp.services.retention_service import run_retention_cleanup

if TYPE_CHECKING:
    from jmsmp.bot.core import JmsmpBot

logger = logging.getLogger(__name__)


class PeriodicTasks(commands.Cog):
    """Cog for scheduled background maintenance tasks."""

    def __init__(self, bot: JmsmpBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        """Start task loops when the cog is loaded."""
        self.reconciliation_loop.start()
        self.retention_loop.start()

    async def cog_unload(self) -> None:
        """Cancel task loops on unload."""
        self.reconciliation_loop.cancel()
        self.retention_loop.cancel()

    # -------------------------------------------------------------------
    # Reconciliation, hourly
    # -------------------------------------------------------------------
    @tasks.loop(hours=1)
    async def reconciliation_loop(self):
        """Replay failed applicant updates, then fix status drift."""
        try:
            result = await run_db(run_reconciliation, self.bot.engine, self.bot.hub)
            logger.info(
                "Reconciliation task complete: synced=%d failed=%d corrected=%d",
                result["pending_syncs"]["synced"],
                result["pending_syncs"]["failed"],
                result["status"]["corrected"],
            )
        except Exception:
            logger.exception("Reconciliation task failed", extra={"task": "reconciliation"})

    @reconciliation_loop.before_loop
    async def _wait_reconciliation(self):
        await self.bot.wait_until_ready()

    # -------------------------------------------------------------------
    # Retention cleanup, every 24 hours
    # -------------------------------------------------------------------
    @tasks.loop(hours=24)
    async def retention_loop(self):
        """Delete rejected accounts and applications past the retention window."""
        try:
            result = await run_db(
                run_retention_cleanup, self.bot.engine, self.bot.cfg.cleanup_days,
            )
            logger.info(
                "Retention task complete: %d users, %d applications deleted",
                result["users_deleted"], result["applications_deleted"],
            )
        except Exception:
            logger.exception("Retention task failed", extra={"task": "retention"})

    @retention_loop.before_loop
    async def _wait_retention(self):
        await self.bot.wait_until_ready()


async def setup(bot: JmsmpBot) -> None:
    await bot.add_cog(PeriodicTasks(bot))
