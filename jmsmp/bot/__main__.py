"""
jmsmp.bot.__main__ — Entry point for ``python -m jmsmp.bot``
============================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine, ensure tables exist, seed the main admin.
4. Start the PostgreSQL realtime hub (LISTEN thread) shared with the API.
5. Create the JmsmpBot and hand it config + engine + hub.
6. Start the bot (blocking — runs the asyncio event loop).

Run with::

    python -m jmsmp.bot
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from jmsmp.bot.core import JmsmpBot
from jmsmp.config import load_config
from jmsmp.database.engine import create_db_engine, init_db
from jmsmp.engine.realtime import PostgresHub

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("jmsmp")


def main() -> None:
    """Bootstrap and run the JMSMP review bot."""

    # 1. Environment variables (secrets).
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        logger.critical(
            "DISCORD_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # 2. Soft configuration.
    cfg = load_config()
    logger.info("Config loaded — Community: %s", cfg.community_name)
    if cfg.realtime_backend != "postgres":
        logger.critical(
            "The bot shares realtime rooms with the API and needs "
            "realtime_backend: postgres in config.yaml (got %r).",
            cfg.realtime_backend,
        )
        sys.exit(1)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Realtime hub (PG LISTEN/NOTIFY background thread).
    hub = PostgresHub(engine)
    hub.start_listener()

    # 5. Bot.
    bot = JmsmpBot(cfg=cfg, engine=engine, hub=hub)

    # 6. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting JMSMP bot…")
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
