from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from vestnik.models.media import MediaKind


class MediaAssetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: MediaKind
    mime: str
    filename: str
    ext: str | None = None
    size: int | None = None
    remote_path: str
    public_url: str | None = None
    title: str | None = None
    alt: str | None = None
    caption: str | None = None
    stable_url: str
    created_at: datetime


class MediaListItem(BaseModel):
    id: str
    kind: MediaKind
    mime: str
    filename: str
    title: str | None = None
    alt: str | None = None
    stable_url: str
    created_at: datetime


class MediaListOut(BaseModel):
    items: list[MediaListItem]
    page: int
    limit: int
    has_more: bool
    next_page: int | None = None


class MediaMetaOut(BaseModel):
    id: str
    kind: MediaKind
    mime: str
    ext: str | None = None
    size: int | None = None
    title: str | None = None
    alt: str | None = None
    caption: str | None = None


class MediaMetaUpdateIn(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    alt: str | None = Field(default=None, max_length=500)
    caption: str | None = Field(default=None, max_length=4000)
