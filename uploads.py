"""
Multipart file uploads stored on local disk and served under /uploads.
"""

import logging
import os
import secrets
import time
from pathlib import Path
from typing import Dict, FrozenSet, Optional

from fastapi import APIRouter, Depends, File, UploadFile

from config import Settings
from context import get_settings
from errors import ValidationError
from security import require_admin

logger = logging.getLogger(__name__)

IMAGE_TYPES: FrozenSet[str] = frozenset({"image/jpeg", "image/jpg", "image/png", "image/webp"})
CV_TYPES: FrozenSet[str] = frozenset({"application/pdf"})

EXTENSIONS: Dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
}

# category -> (allowed MIME types, filename prefix)
CATEGORIES = {
    "projects": (IMAGE_TYPES, "project"),
    "certifications": (IMAGE_TYPES, "certification"),
    "images": (IMAGE_TYPES, "image"),
    "profiles": (IMAGE_TYPES, "profile"),
    "cv": (CV_TYPES, "cv"),
}

CHUNK_SIZE = 64 * 1024


def _extension(upload: UploadFile) -> str:
    ext = os.path.splitext(upload.filename or "")[1].lower()
    if ext in (".jpg", ".jpeg", ".png", ".webp", ".pdf"):
        return ext
    return EXTENSIONS.get(upload.content_type or "", "")


def _read_limited(upload: UploadFile, limit: int) -> bytes:
    chunks = []
    size = 0
    while True:
        chunk = upload.file.read(CHUNK_SIZE)
        if not chunk:
            break
        size += len(chunk)
        if size > limit:
            raise ValidationError.for_field(
                "file", f"File is too large, the maximum allowed size is {limit // (1024 * 1024)}MB"
            )
        chunks.append(chunk)
    return b"".join(chunks)


def save_upload(settings: Settings, upload: Optional[UploadFile], category: str) -> str:
    """Validate and store an upload; returns its relative URL (/uploads/<category>/<name>)."""
    if category not in CATEGORIES:
        raise ValidationError.for_field("category", f"Unknown upload category '{category}'")
    allowed, prefix = CATEGORIES[category]
    if upload is None or not upload.filename:
        raise ValidationError.for_field("file", "No file uploaded")
    if upload.content_type not in allowed:
        kinds = "PDF files" if allowed is CV_TYPES else "image files (JPEG, PNG, WebP)"
        raise ValidationError.for_field("file", f"Only {kinds} are allowed")

    content = _read_limited(upload, settings.max_upload_size)
    if not content:
        raise ValidationError.for_field("file", "Uploaded file is empty")

    directory = Path(settings.upload_dir) / category
    directory.mkdir(parents=True, exist_ok=True)
    filename = f"{prefix}-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{_extension(upload)}"
    (directory / filename).write_bytes(content)
    logger.info(f"Stored upload {category}/{filename} ({len(content)} bytes)")
    return f"/uploads/{category}/{filename}"


def delete_upload(settings: Settings, url: Optional[str]) -> bool:
    """Best-effort removal of a previously stored file."""
    if not url or not url.startswith("/uploads/"):
        return False
    root = Path(settings.upload_dir).resolve()
    path = (root / url[len("/uploads/"):]).resolve()
    if root not in path.parents:
        return False
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Could not delete {path}: {e}")
        return False
    return True


router = APIRouter(prefix="/api/v1/uploads", tags=["uploads"])


@router.post("/{category}", status_code=201)
def upload_file(
    category: str,
    file: UploadFile = File(None),
    settings: Settings = Depends(get_settings),
    _: dict = Depends(require_admin),
):
    url = save_upload(settings, file, category)
    return {"success": True, "data": {"url": url}}
