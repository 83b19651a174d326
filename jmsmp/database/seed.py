"""
jmsmp.database.seed — Main Admin Seeder
=======================================

Creates the site owner account from ``MAIN_ADMIN_USERNAME`` /
``MAIN_ADMIN_PASSWORD`` / ``MAIN_ADMIN_EMAIL`` on first startup.

Idempotent — if the account already exists nothing is touched, so a
password changed from the profile page is never reset on restart.
"""

from __future__ import annotations

import logging
import os

from sqlalchemy import Engine, select

from jmsmp.database.engine import get_session
from jmsmp.database.models import (
    ApplicationStatus,
    Notification,
    NotificationCategory,
    Role,
    User,
)

logger = logging.getLogger(__name__)


def main_admin_username() -> str | None:
    """Handle of the protected main admin account, if one is configured."""
    return os.getenv("MAIN_ADMIN_USERNAME") or None


def seed_main_admin(engine: Engine) -> bool:
    """Insert the main admin account if configured and missing.

    Returns True when a new account was created.
    """
    from jmsmp.services.identity_service import hash_password

    username = main_admin_username()
    password = os.getenv("MAIN_ADMIN_PASSWORD")
    email = os.getenv("MAIN_ADMIN_EMAIL")
    if not (username and password and email):
        logger.debug("MAIN_ADMIN_* not fully set — skipping admin seed")
        return False

    with get_session(engine) as session:
        existing = session.scalar(select(User).where(User.username == username))
        if existing is not None:
            return False

        admin = User(
            username=username,
            email=email.lower(),
            password_hash=hash_password(password),
            role=Role.SITE_OWNER,
            application_status=ApplicationStatus.ACCEPTED,
        )
        admin.notifications.append(Notification(
            title="\U0001f451 Аккаунт администратора создан",
            message="Главный администратор JMSMP успешно инициализирован.",
            category=NotificationCategory.SUCCESS,
        ))
        session.add(admin)

    logger.info("Seeded main admin account '%s'.", username)
    return True
