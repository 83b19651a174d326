"""
jmsmp.services.identity_service — Accounts, Tokens & Role Gates
===============================================================

Everything that answers "who is calling and what may they do":

- password hashing (passlib bcrypt) and HS256 bearer tokens (PyJWT)
- :func:`authenticate` — token → :class:`Identity` (fresh from the DB)
- :func:`authorize` — exact-match role allow-list check
- :func:`require_approved` — membership gate (``application_status == accepted``)
- registration, login, profile edits, avatar/banner references
- :func:`resolve_external_identity` — Discord account → internal identity

Gates compare against explicit role sets from
:data:`jmsmp.constants.OPERATION_ROLES`; there is no role hierarchy.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from passlib.hash import bcrypt
from sqlalchemy import Engine, or_, select, update
from sqlalchemy.exc import IntegrityError

from jmsmp.constants import (
    EVENT_NOTIFICATION,
    PASSWORD_MIN_LENGTH,
    TOKEN_TTL_DAYS,
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
    user_room,
)
from jmsmp.database.engine import get_session
from jmsmp.database.models import (
    ApplicationStatus,
    Notification,
    NotificationCategory,
    Role,
    User,
)
from jmsmp.engine.realtime import RealtimeHub
from jmsmp.errors import Forbidden, NotFound, Unauthenticated, ValidationError

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
BCRYPT_ROUNDS = 12

_USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]+$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_hasher = bcrypt.using(rounds=BCRYPT_ROUNDS)


# ---------------------------------------------------------------------------
# Identity value object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Identity:
    """The authenticated caller: a user record minus its credential."""

    id: int
    username: str
    email: str
    role: str
    application_status: str
    discord_id: int | None = None


def identity_from_user(user: User) -> Identity:
    return Identity(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role,
        application_status=user.application_status,
        discord_id=user.discord_id,
    )


def public_user(user: User) -> dict:
    """Serialize *user* for API responses (never includes the hash)."""
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "applicationStatus": user.application_status,
        "avatar": user.avatar,
        "banner": user.banner,
        "photosCount": user.photos_count,
        "discordLinked": user.discord_id is not None,
        "lastSeen": user.last_seen.isoformat() if user.last_seen else None,
        "registrationDate": (
            user.registration_date.isoformat() if user.registration_date else None
        ),
    }


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------
def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.verify(password, password_hash)
    except ValueError:
        # Malformed stored hash
        return False


def issue_token(user: User | Identity, secret: str, ttl_days: int = TOKEN_TTL_DAYS) -> str:
    """Sign a bearer token naming *user* by handle."""
    now = datetime.now(UTC)
    return jwt.encode(
        {
            "sub": user.username,
            "uid": user.id,
            "iat": now,
            "exp": now + timedelta(days=ttl_days),
        },
        secret,
        algorithm=JWT_ALGORITHM,
    )


def authenticate(engine: Engine, token: str | None, secret: str) -> Identity:
    """Verify *token* and resolve it to the current stored user.

    Raises
    ------
    Unauthenticated
        Missing, malformed or expired token, or the user no longer exists.
    """
    if not token:
        raise Unauthenticated("Токен доступа отсутствует")
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise Unauthenticated("Срок действия токена истёк")
    except InvalidTokenError:
        raise Unauthenticated("Недействительный токен")

    username = payload.get("sub")
    if not isinstance(username, str) or not username:
        raise Unauthenticated("Недействительный токен")

    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.username == username))
        if user is None:
            raise Unauthenticated("Пользователь не найден")
        return identity_from_user(user)


def authorize(identity: Identity, allowed_roles: Iterable[str]) -> None:
    """Raise :class:`Forbidden` unless ``identity.role`` is in *allowed_roles*."""
    if identity.role not in frozenset(allowed_roles):
        raise Forbidden("Недостаточно прав")


def require_approved(identity: Identity) -> None:
    """Raise :class:`Forbidden` unless the caller's application was accepted."""
    if identity.application_status != ApplicationStatus.ACCEPTED:
        raise Forbidden("Доступно только одобренным игрокам")


def resolve_external_identity(engine: Engine, discord_id: int) -> Identity:
    """Map a Discord account to the internal user it is linked to.

    Raises
    ------
    Forbidden
        If no account is linked to *discord_id*.
    """
    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.discord_id == discord_id))
        if user is None:
            raise Forbidden("Discord-аккаунт не привязан к JMSMP")
        return identity_from_user(user)


# ---------------------------------------------------------------------------
# Registration & login
# ---------------------------------------------------------------------------
def validate_username(username: str) -> str:
    username = (username or "").strip()
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"Имя пользователя должно быть от {USERNAME_MIN_LENGTH} "
            f"до {USERNAME_MAX_LENGTH} символов"
        )
    if not _USERNAME_RE.match(username):
        raise ValidationError(
            "Имя пользователя может содержать только буквы, цифры и подчеркивания"
        )
    return username


def validate_email(email: str) -> str:
    email = (email or "").strip().lower()
    if not _EMAIL_RE.match(email):
        raise ValidationError("Введите корректный email")
    return email


def validate_password(password: str) -> str:
    if not password or len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"Пароль должен содержать минимум {PASSWORD_MIN_LENGTH} символов"
        )
    return password


def register_user(
    engine: Engine,
    hub: RealtimeHub,
    secret: str,
    username: str,
    email: str,
    password: str,
) -> dict:
    """Create a ``Игрок`` account with a welcome notification.

    Returns ``{"token": ..., "user": {...}}``.
    """
    from jmsmp.services.notification_service import notification_to_dict

    username = validate_username(username)
    email = validate_email(email)
    validate_password(password)

    try:
        with get_session(engine) as session:
            clash = session.scalar(
                select(User).where(or_(User.username == username, User.email == email))
            )
            if clash is not None:
                raise ValidationError(
                    "Пользователь с таким именем или email уже существует"
                )

            user = User(
                username=username,
                email=email,
                password_hash=hash_password(password),
                role=Role.PLAYER,
                application_status=ApplicationStatus.PENDING,
            )
            welcome = Notification(
                title="Добро пожаловать на JMSMP!",
                message="Ваш аккаунт успешно создан. Отправьте анкету, чтобы начать играть.",
                category=NotificationCategory.WELCOME,
            )
            user.notifications.append(welcome)
            session.add(user)
            session.flush()
            result = {"token": issue_token(user, secret), "user": public_user(user)}
            welcome_payload = notification_to_dict(welcome)
    except IntegrityError:
        # Lost a race with a concurrent registration of the same handle/email
        raise ValidationError("Пользователь с таким именем или email уже существует")

    hub.emit(user_room(result["user"]["id"]), EVENT_NOTIFICATION, welcome_payload)
    logger.info("Registered user '%s'", username)
    return result


def login(engine: Engine, secret: str, username: str, password: str) -> dict:
    """Check credentials, bump ``last_seen`` and return a fresh token."""
    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.username == (username or "").strip()))
        if user is None or not verify_password(password or "", user.password_hash):
            raise Unauthenticated("Неверное имя пользователя или пароль")
        user.last_seen = datetime.now(UTC)
        session.flush()
        return {"token": issue_token(user, secret), "user": public_user(user)}


def touch_last_seen(engine: Engine, user_id: int) -> None:
    with get_session(engine) as session:
        session.execute(
            update(User).where(User.id == user_id).values(last_seen=datetime.now(UTC))
        )


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------
def get_profile(engine: Engine, user_id: int) -> dict:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound("Пользователь не найден")
        return public_user(user)


def update_profile(
    engine: Engine,
    user_id: int,
    *,
    email: str | None = None,
    current_password: str | None = None,
    new_password: str | None = None,
) -> dict:
    """Change email and/or password.  A new password needs the current one."""
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound("Пользователь не найден")

        if email is not None:
            email = validate_email(email)
            if email != user.email:
                taken = session.scalar(
                    select(User.id).where(User.email == email, User.id != user.id)
                )
                if taken is not None:
                    raise ValidationError("Email уже используется")
                user.email = email

        if new_password is not None:
            if not current_password or not verify_password(current_password, user.password_hash):
                raise ValidationError("Неверный текущий пароль")
            validate_password(new_password)
            user.password_hash = hash_password(new_password)

        session.flush()
        return public_user(user)


def set_profile_media(engine: Engine, user_id: int, field: str, url: str) -> str | None:
    """Point the user's ``avatar`` or ``banner`` at *url*.

    Returns the previous reference so the caller can delete the old file.
    """
    if field not in ("avatar", "banner"):
        raise ValueError(f"Unknown profile media field: {field!r}")
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound("Пользователь не найден")
        previous = getattr(user, field)
        setattr(user, field, url)
        return previous
