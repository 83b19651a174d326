"""
JMSMP — Community Backend for the JMSMP Minecraft Server
=========================================================
Player accounts, membership applications with a staff review workflow,
a photo gallery, in-app notifications and an admin console.  Live updates
reach browsers over WebSocket rooms, and staff can review applications
straight from a Discord channel.

Package layout::

    jmsmp/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Role allow-lists, event names, limits
    ├── errors.py          # Domain error taxonomy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Main admin account seeder
    ├── engine/
    │   ├── realtime.py    # Room pub/sub: in-process + PG LISTEN/NOTIFY hubs
    │   └── review.py      # Review button payloads (tagged variant)
    ├── services/
    │   ├── identity_service.py      # Auth, tokens, role gates, profiles
    │   ├── application_service.py   # Submit / list / decide
    │   ├── notification_service.py  # Durable + live notifications
    │   ├── gallery_service.py       # Photos, albums, likes
    │   ├── admin_service.py         # Stats, users, roles, settings
    │   ├── reconciliation_service.py # Deferred user-status repair
    │   ├── retention_service.py     # Rejected account/application cleanup
    │   ├── upload_service.py        # Image storage on disk
    │   └── embeds.py                # Discord review embeds
    ├── bot/
    │   ├── core.py        # Bot subclass, cog loader, realtime callbacks
    │   └── cogs/
    │       ├── review.py  # Review button handler
    │       ├── meta.py    # /stats
    │       └── tasks.py   # Reconciliation + retention loops
    └── api/
        ├── main.py        # FastAPI app
        ├── auth.py        # Register / login / profile
        ├── realtime.py    # WebSocket endpoint
        └── routes/        # Applications, notifications, gallery, admin, public
"""

__version__ = "1.0.0"
