"""
jmsmp.constants — Shared Constants
==================================

Single source of truth for per-operation role allow-lists, realtime event
names and upload limits.  Import from here instead of duplicating role
lists in routes, cogs and services.
"""

from __future__ import annotations

from jmsmp.database.models import Role

# ---------------------------------------------------------------------------
# Per-operation allow-lists
#
# Each privileged operation names the exact set of roles permitted to run
# it.  Roles have no rank: a role missing from a set is refused even if it
# "looks" senior.
# ---------------------------------------------------------------------------
_REVIEWERS = frozenset({
    Role.SITE_OWNER,
    Role.OWNER,
    Role.ADMINISTRATOR,
    Role.CURATOR,
})
_OWNERS = frozenset({Role.SITE_OWNER, Role.OWNER})
_STAFF = frozenset({Role.SITE_OWNER, Role.OWNER, Role.ADMINISTRATOR})

OPERATION_ROLES: dict[str, frozenset[Role]] = {
    "applications.review": _REVIEWERS,
    "applications.list_all": _REVIEWERS,
    "applications.grant_role": _OWNERS,
    "admin.stats": _STAFF,
    "admin.users": _REVIEWERS,
    "admin.change_role": _OWNERS,
    "admin.link_discord": _OWNERS,
    "admin.studio_recruitment": _OWNERS,
    "admin.reconcile": _OWNERS,
    "admin.cleanup": frozenset({Role.SITE_OWNER}),
    "notifications.broadcast": _STAFF,
    "realtime.admin_room": _REVIEWERS,
}


# ---------------------------------------------------------------------------
# Realtime rooms & event names
# ---------------------------------------------------------------------------
ADMIN_ROOM = "admin-room"
BROADCAST_ROOM = "broadcast"
REVIEW_BOT_ROOM = "review-bot"


def user_room(user_id: int) -> str:
    """Session room holding every connection of one user."""
    return f"user-{user_id}"


EVENT_NEW_APPLICATION = "new-application"
EVENT_APPLICATION_UPDATED = "application-updated"
EVENT_NOTIFICATION = "notification"
EVENT_BROADCAST_NOTIFICATION = "broadcast-notification"
EVENT_ROLE_UPDATED = "role-updated"
EVENT_STUDIO_RECRUITMENT = "studio-recruitment-update"
EVENT_USER_ACTIVITY = "user-activity-update"
EVENT_REVIEW_MESSAGE_STALE = "review-message-stale"


# ---------------------------------------------------------------------------
# Account & upload limits
# ---------------------------------------------------------------------------
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20
PASSWORD_MIN_LENGTH = 6
TOKEN_TTL_DAYS = 30

AVATAR_MAX_BYTES = 5 * 1024 * 1024
BANNER_MAX_BYTES = 10 * 1024 * 1024
PHOTO_MAX_BYTES = 15 * 1024 * 1024
MAX_PHOTOS_PER_UPLOAD = 10

STATUS_HISTORY_LIMIT = 5
ONLINE_WINDOW_MINUTES = 15

# ---------------------------------------------------------------------------
# Presentation (bot embeds)
# ---------------------------------------------------------------------------
APPLICATION_TYPE_EMOJI: dict[str, str] = {
    "server": "\U0001f3ae",  # 🎮
    "studio": "\U0001f3a8",  # 🎨
}

STATUS_EMOJI: dict[str, str] = {
    "pending": "\u23f3",   # ⏳
    "accepted": "\u2705",  # ✅
    "rejected": "\u274c",  # ❌
}
