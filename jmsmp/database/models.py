"""
jmsmp.database.models — SQLAlchemy 2.0 Data Models
==================================================

Tables:
- users              — Player accounts (handle, email, role, membership status)
- notifications      — Per-user in-app notifications (owned by users)
- applications       — Membership applications (weak reference by handle)
- pending_user_syncs — Deferred user updates left behind by a failed decision
- photos             — Gallery uploads
- photo_likes        — One row per (photo, handle) like
- albums             — Named photo albums per owner
- settings           — Key-value store for admin-editable switches
- admin_log          — Append-only audit trail of admin mutations
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(UTC)


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all JMSMP ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Role(enum.StrEnum):
    """Community roles.  Stored and compared by their display string."""
    PLAYER = "Игрок"
    SITE_OWNER = "Владелец сайта"
    OWNER = "Владелец"
    ADMINISTRATOR = "Администратор"
    CODER = "Кодер"
    DATAPACKER = "Дата-Пакер"
    RESOURCEPACKER = "Ресурспакер"
    DESIGNER = "Дизайнер"
    MARKETER = "Маркетолог"
    CURATOR = "Куратор"
    FOUNDER = "Основатель"


class ApplicationStatus(enum.StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ApplicationType(enum.StrEnum):
    SERVER = "server"
    STUDIO = "studio"


class NotificationCategory(enum.StrEnum):
    WELCOME = "welcome"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    INFO = "info"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(254), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[str] = mapped_column(String(30), nullable=False, default=Role.PLAYER)
    application_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ApplicationStatus.PENDING
    )
    avatar: Mapped[str | None] = mapped_column(String(255), default=None)
    banner: Mapped[str | None] = mapped_column(String(255), default=None)
    photos_count: Mapped[int] = mapped_column(Integer, default=0)
    # Linked Discord account; lets the review bot act as this user.
    discord_id: Mapped[int | None] = mapped_column(BigInteger, unique=True, default=None)
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    registration_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    notifications: Mapped[list[Notification]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="Notification.id",
    )

    __table_args__ = (
        Index("ix_users_role", "role"),
        Index("ix_users_application_status", "application_status"),
    )


class Notification(Base):
    """In-app notification owned by exactly one user."""
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NotificationCategory.INFO
    )
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    user: Mapped[User] = relationship(back_populates="notifications")

    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "read"),
    )


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------
class Application(Base):
    """Membership application.

    ``username`` is a weak reference: deleting the account does not delete
    its applications.  At most one ``pending`` row per (username, type) is
    enforced by the registry's pre-insert check, not by the schema.
    """
    __tablename__ = "applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(20), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ApplicationStatus.PENDING
    )
    answers: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    reviewed_by: Mapped[str | None] = mapped_column(String(20), default=None)
    review_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    # "<channel_id>:<message_id>" of the bot's review message
    external_message_id: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_applications_username_type_status", "username", "type", "status"),
        Index("ix_applications_created_at", "created_at"),
    )


class PendingUserSync(Base):
    """User-side half of a decision that failed and awaits a retry."""
    __tablename__ = "pending_user_syncs"

    application_id: Mapped[int] = mapped_column(
        ForeignKey("applications.id", ondelete="CASCADE"), primary_key=True
    )
    role_grant: Mapped[str | None] = mapped_column(String(30), default=None)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ---------------------------------------------------------------------------
# Gallery
# ---------------------------------------------------------------------------
class Photo(Base):
    __tablename__ = "photos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(20), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(String(500), nullable=False)
    album: Mapped[str] = mapped_column(String(100), nullable=False, default="default")
    is_public: Mapped[bool] = mapped_column(Boolean, default=True)
    views: Mapped[int] = mapped_column(Integer, default=0)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    likes: Mapped[list[PhotoLike]] = relationship(
        back_populates="photo", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_photos_username_album", "username", "album"),
        Index("ix_photos_public_created", "is_public", "created_at"),
    )


class PhotoLike(Base):
    __tablename__ = "photo_likes"

    photo_id: Mapped[int] = mapped_column(
        ForeignKey("photos.id", ondelete="CASCADE"), primary_key=True
    )
    username: Mapped[str] = mapped_column(String(20), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    photo: Mapped[Photo] = relationship(back_populates="likes")


class Album(Base):
    __tablename__ = "albums"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("username", "name", name="uq_albums_username_name"),
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
class Setting(Base):
    """Key-value store for admin-editable switches (e.g. studio recruitment).

    Values are stored as JSON strings.
    """
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# ---------------------------------------------------------------------------
# Admin audit trail
# ---------------------------------------------------------------------------
class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    ROLE_CHANGE = "ROLE_CHANGE"
    LINK_DISCORD = "LINK_DISCORD"
    SETTING_UPDATE = "SETTING_UPDATE"
    BROADCAST = "BROADCAST"
    CLEANUP = "CLEANUP"
    RECONCILE = "RECONCILE"


class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor: Mapped[str] = mapped_column(String(20), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor} action={self.action_type}>"
