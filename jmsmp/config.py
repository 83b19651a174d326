"""
jmsmp.config — YAML Configuration Loader
========================================

Reads ``config.yaml`` for **infrastructure-only** settings (server
listing, Discord identity, realtime backend, retention windows).
Secrets such as ``JWT_SECRET`` and ``DISCORD_TOKEN`` stay in the
environment (``.env``).

Usage::

    from jmsmp.config import load_config

    cfg = load_config()              # reads ./config.yaml or $JMSMP_CONFIG
    print(cfg.server_ip)             # "jmsmp.minecraft.ru"
    print(cfg.review_channel_id)     # 1468816181854081229
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml

REALTIME_BACKENDS = frozenset({"memory", "postgres"})


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class JmsmpConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Minecraft server listing (public /server-info)
    server_ip: str
    server_port: int
    server_version: str
    launcher_url: str

    # Discord
    bot_prefix: str
    guild_id: int

    # Realtime fanout: "memory" for a single API process,
    # "postgres" when several processes (API workers + bot) share rooms.
    realtime_backend: str = "memory"

    # Retention
    cleanup_days: int = 30

    # Paging
    notifications_page_size: int = 20

    # Optional
    review_channel_id: int | None = None  # Where the bot posts new applications


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path | None = None) -> JmsmpConfig:
    """Read *path* and return a :class:`JmsmpConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.  Defaults to
        ``$JMSMP_CONFIG`` or ``config.yaml`` in the working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If ``realtime_backend`` names an unknown backend.
    """
    if path is None:
        path = os.getenv("JMSMP_CONFIG", "config.yaml")
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh)

    backend = raw.get("realtime_backend", "memory")
    if backend not in REALTIME_BACKENDS:
        raise ValueError(
            f"Unknown realtime_backend {backend!r}. "
            f"Expected one of: {', '.join(sorted(REALTIME_BACKENDS))}"
        )

    return JmsmpConfig(
        community_name=raw["community_name"],
        server_ip=raw["server_ip"],
        server_port=int(raw["server_port"]),
        server_version=str(raw["server_version"]),
        launcher_url=raw["launcher_url"],
        bot_prefix=raw["bot_prefix"],
        guild_id=int(raw["guild_id"]),
        realtime_backend=backend,
        cleanup_days=int(raw.get("cleanup_days", 30)),
        notifications_page_size=int(raw.get("notifications_page_size", 20)),
        review_channel_id=(
            int(raw["review_channel_id"]) if raw.get("review_channel_id") else None
        ),
    )
