"""Initial schema: users, notifications, applications, gallery, settings, audit

Revision ID: 0a1c5e7f3b21
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0a1c5e7f3b21"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(20), nullable=False, unique=True),
        sa.Column("email", sa.String(254), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(100), nullable=False),
        sa.Column("role", sa.String(30), nullable=False),
        sa.Column("application_status", sa.String(20), nullable=False),
        sa.Column("avatar", sa.String(255), nullable=True),
        sa.Column("banner", sa.String(255), nullable=True),
        sa.Column("photos_count", sa.Integer, nullable=True),
        sa.Column("discord_id", sa.BigInteger, nullable=True, unique=True),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
        sa.Column("registration_date", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_users_role", "users", ["role"])
    op.create_index("ix_users_application_status", "users", ["application_status"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("read", sa.Boolean, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "read"])

    op.create_table(
        "applications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(20), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("answers", _JSON, nullable=False),
        sa.Column("reviewed_by", sa.String(20), nullable=True),
        sa.Column("review_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_message_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_applications_username_type_status", "applications", ["username", "type", "status"],
    )
    op.create_index("ix_applications_created_at", "applications", ["created_at"])

    op.create_table(
        "pending_user_syncs",
        sa.Column(
            "application_id", sa.Integer,
            sa.ForeignKey("applications.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("role_grant", sa.String(30), nullable=True),
        sa.Column("attempts", sa.Integer, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "photos",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(20), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("original_name", sa.String(255), nullable=False),
        sa.Column("url", sa.String(500), nullable=False),
        sa.Column("album", sa.String(100), nullable=False),
        sa.Column("is_public", sa.Boolean, nullable=True),
        sa.Column("views", sa.Integer, nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_photos_username_album", "photos", ["username", "album"])
    op.create_index("ix_photos_public_created", "photos", ["is_public", "created_at"])

    op.create_table(
        "photo_likes",
        sa.Column(
            "photo_id", sa.Integer,
            sa.ForeignKey("photos.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("username", sa.String(20), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "albums",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(20), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("username", "name", name="uq_albums_username_name"),
    )

    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text, nullable=False),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=True,
        ),
    )

    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor", sa.String(20), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", _JSON, nullable=True),
        sa.Column("after_snapshot", _JSON, nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor", "timestamp"])


def downgrade() -> None:
    op.drop_index("ix_admin_log_actor_time", table_name="admin_log")
    op.drop_table("admin_log")
    op.drop_table("settings")
    op.drop_table("albums")
    op.drop_table("photo_likes")
    op.drop_index("ix_photos_public_created", table_name="photos")
    op.drop_index("ix_photos_username_album", table_name="photos")
    op.drop_table("photos")
    op.drop_table("pending_user_syncs")
    op.drop_index("ix_applications_created_at", table_name="applications")
    op.drop_index("ix_applications_username_type_status", table_name="applications")
    op.drop_table("applications")
    op.drop_index("ix_notifications_user_read", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_users_application_status", table_name="users")
    op.drop_index("ix_users_role", table_name="users")
    op.drop_table("users")
