"""
jmsmp.services.gallery_service — Player Photo Gallery
=====================================================

Accepted players upload screenshots into named albums, choose whether
each photo is public, and like or view each other's public photos.

File bytes are written by :mod:`jmsmp.services.upload_service` before these
functions run; here we only record and query the metadata.  ``photos_count``
on the owner is kept in step with inserts and deletes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from math import ceil

from sqlalchemy import Engine, func, select, update

from jmsmp.database.engine import get_session
from jmsmp.database.models import Album, Photo, PhotoLike, User
from jmsmp.errors import Forbidden, NotFound, ValidationError
from jmsmp.services.identity_service import Identity

logger = logging.getLogger(__name__)

DEFAULT_ALBUM = "default"
ALBUM_NAME_MIN_LENGTH = 2
ALBUM_NAME_MAX_LENGTH = 100
PUBLIC_SORTS = ("newest", "popular", "oldest")


@dataclass(frozen=True, slots=True)
class StoredFile:
    filename: str
    original_name: str
    url: str


def photo_to_dict(photo: Photo, like_count: int = 0, liked: bool = False) -> dict:
    return {
        "id": photo.id,
        "username": photo.username,
        "filename": photo.filename,
        "originalName": photo.original_name,
        "url": photo.url,
        "album": photo.album,
        "isPublic": photo.is_public,
        "views": photo.views,
        "likes": like_count,
        "likedByMe": liked,
        "description": photo.description,
        "createdAt": photo.created_at.isoformat() if photo.created_at else None,
    }


def _like_counts(session, photo_ids: list[int]) -> dict[int, int]:
    if not photo_ids:
        return {}
    rows = session.execute(
        select(PhotoLike.photo_id, func.count())
        .where(PhotoLike.photo_id.in_(photo_ids))
        .group_by(PhotoLike.photo_id)
    ).all()
    return {photo_id: count for photo_id, count in rows}


def _liked_by(session, photo_ids: list[int], username: str | None) -> set[int]:
    if not photo_ids or not username:
        return set()
    return set(session.scalars(
        select(PhotoLike.photo_id)
        .where(PhotoLike.photo_id.in_(photo_ids), PhotoLike.username == username)
    ).all())


def _serialize(session, photos, viewer: str | None) -> list[dict]:
    ids = [p.id for p in photos]
    counts = _like_counts(session, ids)
    liked = _liked_by(session, ids, viewer)
    return [photo_to_dict(p, counts.get(p.id, 0), p.id in liked) for p in photos]


def _normalize_album(name: str | None) -> str:
    name = (name or DEFAULT_ALBUM).strip() or DEFAULT_ALBUM
    if len(name) > ALBUM_NAME_MAX_LENGTH:
        raise ValidationError("Слишком длинное название альбома")
    return name


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
def list_my_photos(engine: Engine, owner: Identity, album: str | None = None) -> dict:
    """The owner's photos (optionally one album) plus per-album counts."""
    with get_session(engine) as session:
        q = select(Photo).where(Photo.username == owner.username)
        if album:
            q = q.where(Photo.album == album)
        photos = session.scalars(q.order_by(Photo.created_at.desc(), Photo.id.desc())).all()

        counts = dict(session.execute(
            select(Photo.album, func.count())
            .where(Photo.username == owner.username)
            .group_by(Photo.album)
        ).all())
        named = session.scalars(
            select(Album.name).where(Album.username == owner.username).order_by(Album.name)
        ).all()
        album_names = sorted(set(counts) | set(named) | {DEFAULT_ALBUM})

        return {
            "photos": _serialize(session, photos, owner.username),
            "albums": [{"name": n, "count": counts.get(n, 0)} for n in album_names],
        }


def list_public_photos(
    engine: Engine,
    viewer: str | None = None,
    sort: str = "newest",
    page: int = 1,
    limit: int = 30,
) -> dict:
    """Public photos from everyone, newest / most liked / oldest first."""
    if sort not in PUBLIC_SORTS:
        raise ValidationError(f"Неизвестная сортировка: {sort!r}")

    with get_session(engine) as session:
        q = select(Photo).where(Photo.is_public.is_(True))
        if sort == "popular":
            likes = (
                select(PhotoLike.photo_id, func.count().label("n"))
                .group_by(PhotoLike.photo_id)
                .subquery()
            )
            q = q.outerjoin(likes, likes.c.photo_id == Photo.id).order_by(
                func.coalesce(likes.c.n, 0).desc(), Photo.views.desc(), Photo.id.desc()
            )
        elif sort == "oldest":
            q = q.order_by(Photo.created_at.asc(), Photo.id.asc())
        else:
            q = q.order_by(Photo.created_at.desc(), Photo.id.desc())

        total = session.scalar(
            select(func.count()).select_from(Photo).where(Photo.is_public.is_(True))
        ) or 0
        photos = session.scalars(q.offset((page - 1) * limit).limit(limit)).all()
        return {
            "photos": _serialize(session, photos, viewer),
            "total": total,
            "page": page,
            "totalPages": ceil(total / limit) if limit else 0,
        }


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------
def add_photos(
    engine: Engine,
    owner: Identity,
    files: list[StoredFile],
    album: str | None = None,
    description: str = "",
    is_public: bool = True,
) -> list[dict]:
    """Record already-stored files as photos of *owner*."""
    album = _normalize_album(album)
    with get_session(engine) as session:
        if album != DEFAULT_ALBUM:
            exists = session.scalar(
                select(Album.id).where(Album.username == owner.username, Album.name == album)
            )
            if exists is None:
                session.add(Album(username=owner.username, name=album))

        photos = [
            Photo(
                username=owner.username,
                filename=f.filename,
                original_name=f.original_name,
                url=f.url,
                album=album,
                is_public=is_public,
                description=description or "",
            )
            for f in files
        ]
        session.add_all(photos)
        session.execute(
            update(User)
            .where(User.id == owner.id)
            .values(photos_count=User.photos_count + len(photos))
        )
        session.flush()
        return [photo_to_dict(p) for p in photos]


def create_album(engine: Engine, owner: Identity, name: str) -> dict:
    name = (name or "").strip()
    if len(name) < ALBUM_NAME_MIN_LENGTH:
        raise ValidationError(
            f"Название альбома должно содержать минимум {ALBUM_NAME_MIN_LENGTH} символа"
        )
    name = _normalize_album(name)
    with get_session(engine) as session:
        clash = session.scalar(
            select(Album.id).where(Album.username == owner.username, Album.name == name)
        )
        if clash is not None or name == DEFAULT_ALBUM:
            raise ValidationError("Альбом с таким названием уже существует")
        album = Album(username=owner.username, name=name)
        session.add(album)
        session.flush()
        return {"id": album.id, "name": album.name}


def _visible_photo(session, photo_id: int, viewer: str | None) -> Photo:
    photo = session.get(Photo, photo_id)
    if photo is None or (not photo.is_public and photo.username != viewer):
        raise NotFound("Фото не найдено")
    return photo


def _owned_photo(session, photo_id: int, owner: Identity) -> Photo:
    photo = session.get(Photo, photo_id)
    if photo is None:
        raise NotFound("Фото не найдено")
    if photo.username != owner.username:
        raise Forbidden("Это не ваше фото")
    return photo


def toggle_like(engine: Engine, viewer: Identity, photo_id: int) -> dict:
    """Like or un-like a photo.  Returns ``{"liked": bool, "likes": n}``."""
    with get_session(engine) as session:
        _visible_photo(session, photo_id, viewer.username)
        existing = session.get(PhotoLike, (photo_id, viewer.username))
        if existing is not None:
            session.delete(existing)
            liked = False
        else:
            session.add(PhotoLike(photo_id=photo_id, username=viewer.username))
            liked = True
        session.flush()
        count = _like_counts(session, [photo_id]).get(photo_id, 0)
        return {"liked": liked, "likes": count}


def record_view(engine: Engine, photo_id: int, viewer: str | None = None) -> dict:
    with get_session(engine) as session:
        photo = _visible_photo(session, photo_id, viewer)
        photo.views = (photo.views or 0) + 1
        session.flush()
        return _serialize(session, [photo], viewer)[0]


def set_visibility(engine: Engine, owner: Identity, photo_id: int, is_public: bool) -> dict:
    with get_session(engine) as session:
        photo = _owned_photo(session, photo_id, owner)
        photo.is_public = is_public
        session.flush()
        return _serialize(session, [photo], owner.username)[0]


def delete_photo(engine: Engine, owner: Identity, photo_id: int) -> str:
    """Delete *photo_id*; returns its URL so the caller can remove the file."""
    with get_session(engine) as session:
        photo = _owned_photo(session, photo_id, owner)
        url = photo.url
        session.delete(photo)
        session.execute(
            update(User)
            .where(User.id == owner.id, User.photos_count > 0)
            .values(photos_count=User.photos_count - 1)
        )
    logger.info("Photo #%d deleted by '%s'", photo_id, owner.username)
    return url
