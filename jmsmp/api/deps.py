"""
jmsmp.api.deps — FastAPI dependency injection
=============================================
"""

from __future__ import annotations

import os
from collections.abc import Callable
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy import Engine

from jmsmp.config import JmsmpConfig, load_config
from jmsmp.constants import OPERATION_ROLES
from jmsmp.database.engine import create_db_engine
from jmsmp.engine.realtime import RealtimeHub, create_hub
from jmsmp.errors import Unauthenticated
from jmsmp.services.identity_service import (
    JWT_ALGORITHM,
    Identity,
    authenticate,
    authorize,
    require_approved,
)

__all__ = ["JWT_ALGORITHM", "JWT_SECRET"]

_WEAK_SECRETS = frozenset({
    "jmsmp-dev-secret-change-me",
    "your-secret-key",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> JmsmpConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_hub() -> RealtimeHub:
    return create_hub(get_config(), get_engine())


def _bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthenticated("Токен доступа отсутствует")
    return authorization.split(" ", 1)[1].strip()


def get_current_identity(
    authorization: Annotated[str | None, Header()] = None,
    engine: Engine = Depends(get_engine),
) -> Identity:
    """Resolve the bearer token to the caller.  Raises 401 if invalid."""
    return authenticate(engine, _bearer_token(authorization), JWT_SECRET)


def get_optional_identity(
    authorization: Annotated[str | None, Header()] = None,
    engine: Engine = Depends(get_engine),
) -> Identity | None:
    """Like :func:`get_current_identity` but anonymous callers get ``None``."""
    if not authorization:
        return None
    return authenticate(engine, _bearer_token(authorization), JWT_SECRET)


def get_approved_identity(
    identity: Identity = Depends(get_current_identity),
) -> Identity:
    """Caller whose server application was accepted.  Raises 403 otherwise."""
    require_approved(identity)
    return identity


def require_roles(operation: str) -> Callable[..., Identity]:
    """Dependency factory enforcing ``OPERATION_ROLES[operation]``.

    Usage::

        @router.get("/stats")
        def stats(admin: Identity = Depends(require_roles("admin.stats"))): ...
    """
    allowed = OPERATION_ROLES[operation]

    def _dependency(identity: Identity = Depends(get_current_identity)) -> Identity:
        authorize(identity, allowed)
        return identity

    _dependency.__name__ = f"require_{operation.replace('.', '_')}"
    return _dependency
