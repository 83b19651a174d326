"""
jmsmp.api.routes.gallery — Player photo gallery
===============================================

Browsing public photos needs no account; everything else is limited to
players whose server application was accepted.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel
from sqlalchemy import Engine

from jmsmp.api.deps import get_approved_identity, get_engine, get_optional_identity
from jmsmp.constants import MAX_PHOTOS_PER_UPLOAD, PHOTO_MAX_BYTES
from jmsmp.database.engine import run_db
from jmsmp.errors import ValidationError
from jmsmp.services import gallery_service, upload_service
from jmsmp.services.gallery_service import StoredFile
from jmsmp.services.identity_service import Identity

router = APIRouter(prefix="/gallery", tags=["gallery"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class AlbumCreate(BaseModel):
    name: str


class VisibilityUpdate(BaseModel):
    isPublic: bool


# ---------------------------------------------------------------------------
# Browsing
# ---------------------------------------------------------------------------
@router.get("/public")
def public_photos(
    sort: str = Query("newest"),
    page: int = Query(1, ge=1),
    limit: int = Query(30, ge=1, le=100),
    viewer: Identity | None = Depends(get_optional_identity),
    engine: Engine = Depends(get_engine),
):
    return gallery_service.list_public_photos(
        engine,
        viewer=viewer.username if viewer else None,
        sort=sort,
        page=page,
        limit=limit,
    )


@router.get("/my")
def my_photos(
    album: str | None = Query(None),
    identity: Identity = Depends(get_approved_identity),
    engine: Engine = Depends(get_engine),
):
    return gallery_service.list_my_photos(engine, identity, album)


@router.post("/{photo_id}/view")
def view_photo(
    photo_id: int,
    viewer: Identity | None = Depends(get_optional_identity),
    engine: Engine = Depends(get_engine),
):
    return {
        "photo": gallery_service.record_view(
            engine, photo_id, viewer.username if viewer else None,
        )
    }


# ---------------------------------------------------------------------------
# Owner actions
# ---------------------------------------------------------------------------
@router.post("/upload", status_code=201)
async def upload_photos(
    files: list[UploadFile] = File(...),
    album: str | None = Form(None),
    description: str = Form(""),
    isPublic: bool = Form(True),
    identity: Identity = Depends(get_approved_identity),
    engine: Engine = Depends(get_engine),
):
    """Store up to ``MAX_PHOTOS_PER_UPLOAD`` images in one album."""
    if not files:
        raise ValidationError("Файлы не выбраны")
    if len(files) > MAX_PHOTOS_PER_UPLOAD:
        raise ValidationError(f"Можно загрузить не более {MAX_PHOTOS_PER_UPLOAD} фото за раз")

    # Validate everything before writing anything
    payloads = []
    for upload in files:
        content = await upload.read()
        name = upload.filename or "photo.png"
        upload_service.validate_image(name, content, upload.content_type, PHOTO_MAX_BYTES)
        payloads.append((name, content, upload.content_type))

    stored: list[StoredFile] = []
    try:
        for name, content, content_type in payloads:
            unique_name, url = await upload_service.save_upload(
                "gallery", name, content, content_type, PHOTO_MAX_BYTES,
            )
            stored.append(StoredFile(filename=unique_name, original_name=name, url=url))
        photos = await run_db(
            gallery_service.add_photos,
            engine, identity, stored, album, description, isPublic,
        )
    except Exception:
        for f in stored:
            upload_service.delete_upload(f.url)
        raise

    logger.info("'%s' uploaded %d photo(s)", identity.username, len(photos))
    return {"message": f"Загружено фото: {len(photos)}", "photos": photos}


@router.post("/albums", status_code=201)
def create_album(
    body: AlbumCreate,
    identity: Identity = Depends(get_approved_identity),
    engine: Engine = Depends(get_engine),
):
    return {"album": gallery_service.create_album(engine, identity, body.name)}


@router.post("/{photo_id}/like")
def like_photo(
    photo_id: int,
    identity: Identity = Depends(get_approved_identity),
    engine: Engine = Depends(get_engine),
):
    return gallery_service.toggle_like(engine, identity, photo_id)


@router.put("/{photo_id}/visibility")
def set_visibility(
    photo_id: int,
    body: VisibilityUpdate,
    identity: Identity = Depends(get_approved_identity),
    engine: Engine = Depends(get_engine),
):
    return {"photo": gallery_service.set_visibility(engine, identity, photo_id, body.isPublic)}


@router.delete("/{photo_id}")
def delete_photo(
    photo_id: int,
    identity: Identity = Depends(get_approved_identity),
    engine: Engine = Depends(get_engine),
):
    url = gallery_service.delete_photo(engine, identity, photo_id)
    upload_service.delete_upload(url)
    return {"message": "Фото удалено"}
