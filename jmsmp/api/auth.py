"""
jmsmp.api.auth — Registration, login & profile
==============================================

Passwords are bcrypt-hashed; sessions are stateless HS256 bearer tokens
valid for 30 days.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, UploadFile
from pydantic import BaseModel
from sqlalchemy import Engine

from jmsmp.api.deps import JWT_SECRET, get_current_identity, get_engine, get_hub
from jmsmp.constants import AVATAR_MAX_BYTES, BANNER_MAX_BYTES
from jmsmp.database.engine import run_db
from jmsmp.engine.realtime import RealtimeHub
from jmsmp.services import identity_service, upload_service
from jmsmp.services.identity_service import Identity

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RegisterBody(BaseModel):
    username: str
    email: str
    password: str


class LoginBody(BaseModel):
    username: str
    password: str


class ProfileUpdate(BaseModel):
    email: str | None = None
    currentPassword: str | None = None
    newPassword: str | None = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.post("/register", status_code=201)
def register(
    body: RegisterBody,
    engine: Engine = Depends(get_engine),
    hub: RealtimeHub = Depends(get_hub),
):
    """Create an account.  Returns a token so the client is logged in at once."""
    result = identity_service.register_user(
        engine, hub, JWT_SECRET, body.username, body.email, body.password,
    )
    return {"message": "Регистрация успешна", **result}


@router.post("/login")
def login(body: LoginBody, engine: Engine = Depends(get_engine)):
    result = identity_service.login(engine, JWT_SECRET, body.username, body.password)
    return {"message": "Вход выполнен успешно", **result}


@router.get("/verify")
def verify(identity: Identity = Depends(get_current_identity)):
    """Cheap token check for the frontend's route guard."""
    return {"valid": True, "username": identity.username, "role": identity.role}


@router.get("/profile")
def get_profile(
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
):
    return {"user": identity_service.get_profile(engine, identity.id)}


@router.put("/profile")
def update_profile(
    body: ProfileUpdate,
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
):
    user = identity_service.update_profile(
        engine,
        identity.id,
        email=body.email,
        current_password=body.currentPassword,
        new_password=body.newPassword,
    )
    return {"message": "Профиль обновлен", "user": user}


async def _replace_media(
    engine: Engine, identity: Identity, field: str, file: UploadFile, max_size: int,
) -> str:
    kind = "avatars" if field == "avatar" else "banners"
    content = await file.read()
    _, url = await upload_service.save_upload(
        kind, file.filename or "upload.png", content, file.content_type, max_size,
    )
    try:
        previous = await run_db(
            identity_service.set_profile_media, engine, identity.id, field, url,
        )
    except Exception:
        upload_service.delete_upload(url)
        raise
    if previous:
        upload_service.delete_upload(previous)
    return url


@router.post("/avatar")
async def upload_avatar(
    file: UploadFile,
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
):
    url = await _replace_media(engine, identity, "avatar", file, AVATAR_MAX_BYTES)
    return {"message": "Аватар обновлен", "avatar": url}


@router.post("/banner")
async def upload_banner(
    file: UploadFile,
    identity: Identity = Depends(get_current_identity),
    engine: Engine = Depends(get_engine),
):
    url = await _replace_media(engine, identity, "banner", file, BANNER_MAX_BYTES)
    return {"message": "Баннер обновлен", "banner": url}
