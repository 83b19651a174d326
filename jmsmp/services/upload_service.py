"""
jmsmp.services.upload_service — Image upload handling
=====================================================

Stores avatars, profile banners and gallery photos under
``$JMSMP_UPLOAD_DIR`` (default ``uploads/``), one sub-directory per kind,
served read-only at ``/api/uploads``.  The database only ever keeps the
resulting URL path.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from pathlib import Path

from jmsmp.errors import ValidationError

UPLOAD_DIR = Path(os.getenv("JMSMP_UPLOAD_DIR", "uploads"))
UPLOAD_URL_PREFIX = "/api/uploads/"
UPLOAD_KINDS = ("avatars", "banners", "gallery")

ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
ALLOWED_MIME_TYPES = {
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
}


def ensure_upload_dir() -> None:
    """Create the upload directory tree if it doesn't exist."""
    for kind in UPLOAD_KINDS:
        (UPLOAD_DIR / kind).mkdir(parents=True, exist_ok=True)


def validate_image(
    filename: str, content: bytes, content_type: str | None, max_size: int,
) -> str:
    """Check size, extension and MIME type; return the normalized extension.

    Raises
    ------
    ValidationError
        If the file is empty, too large or not an allowed image type.
    """
    if not content:
        raise ValidationError("Файл пуст")
    if len(content) > max_size:
        raise ValidationError(
            f"Файл слишком большой (максимум {max_size // 1024 // 1024} МБ)"
        )

    ext = Path(filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationError(
            "Разрешены только изображения: "
            f"{', '.join(sorted(e.lstrip('.') for e in ALLOWED_EXTENSIONS))}"
        )
    if content_type and content_type not in ALLOWED_MIME_TYPES:
        raise ValidationError(f"Недопустимый тип файла: {content_type}")
    return ext


async def save_upload(
    kind: str,
    filename: str,
    content: bytes,
    content_type: str | None,
    max_size: int,
) -> tuple[str, str]:
    """Validate and persist an uploaded image.

    Returns
    -------
    tuple[str, str]
        ``(stored_filename, url_path)``, e.g.
        ``("3f2a….png", "/api/uploads/gallery/3f2a….png")``.
    """
    if kind not in UPLOAD_KINDS:
        raise ValueError(f"Unknown upload kind: {kind!r}")
    ext = validate_image(filename, content, content_type, max_size)

    unique_name = f"{uuid.uuid4().hex}{ext}"
    dest = UPLOAD_DIR / kind / unique_name
    dest.parent.mkdir(parents=True, exist_ok=True)

    # Keep blocking file I/O off the event loop
    await asyncio.to_thread(dest.write_bytes, content)

    return unique_name, f"{UPLOAD_URL_PREFIX}{kind}/{unique_name}"


def delete_upload(url_path: str | None) -> bool:
    """Remove an uploaded file by its URL path.

    Returns True if the file existed and was deleted.  Paths outside the
    upload tree are ignored.
    """
    if not url_path or not url_path.startswith(UPLOAD_URL_PREFIX):
        return False
    relative = url_path[len(UPLOAD_URL_PREFIX):]
    filepath = (UPLOAD_DIR / relative).resolve()
    if UPLOAD_DIR.resolve() not in filepath.parents:
        return False
    if filepath.exists() and filepath.is_file():
        filepath.unlink()
        return True
    return False
