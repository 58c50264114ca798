from __future__ import annotations

import re
import uuid
from datetime import datetime

from vestnik.core.config import settings
from vestnik.models.common import utcnow
from vestnik.models.media import MediaKind

IMAGE_EXT = ("jpg", "jpeg", "png", "webp", "gif", "avif", "svg")
VIDEO_EXT = ("mp4", "webm", "mov", "m4v", "ogg")

IMAGE_MIME = (
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/avif",
    "image/svg+xml",
)
VIDEO_MIME = (
    "video/mp4",
    "video/webm",
    "video/quicktime",
    "video/x-m4v",
    "video/ogg",
)

_EXT_BY_MIME = {
    "image/svg+xml": "svg",
    "image/avif": "avif",
    "image/webp": "webp",
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "video/x-m4v": "m4v",
    "video/ogg": "ogg",
}

_EXT_RE = re.compile(r"^[a-z0-9]{1,10}$")


def _lower(value: str | None) -> str:
    return str(value or "").strip().lower()


def guess_ext(filename: str | None) -> str | None:
    name = _lower(filename)
    if "." not in name:
        return None
    ext = name.rsplit(".", 1)[1]
    return ext if _EXT_RE.match(ext) else None


def kind_of(mime: str | None) -> MediaKind:
    m = _lower(mime)
    if m.startswith("image/"):
        return MediaKind.IMAGE
    if m.startswith("video/"):
        return MediaKind.VIDEO
    return MediaKind.OTHER


def is_upload_allowed(mime: str | None, filename: str | None) -> bool:
    m = _lower(mime)
    if m in IMAGE_MIME or m in VIDEO_MIME:
        return True
    ext = guess_ext(filename)
    return ext in IMAGE_EXT or ext in VIDEO_EXT


def guess_kind_and_ext(mime: str | None, filename: str | None) -> tuple[MediaKind, str | None]:
    ext = guess_ext(filename) or _EXT_BY_MIME.get(_lower(mime))
    return kind_of(mime), ext


def build_remote_path(filename: str | None, mime: str | None = None, now: datetime | None = None) -> str:
    """Date-partitioned, collision-free path under the media root, e.g. disk:/media/2024/01/<hex>.jpg."""
    now = now or utcnow()
    _, ext = guess_kind_and_ext(mime, filename)
    name = uuid.uuid4().hex + (f".{ext}" if ext else "")
    root = settings.media_root.rstrip("/")
    return f"{root}/{now:%Y}/{now:%m}/{name}"


def stable_media_url(asset_id: str) -> str:
    return f"/media/{asset_id}"
