from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from vestnik.db.base import Base
from vestnik.models.common import TimestampMixin


class MediaKind(str, enum.Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    OTHER = "OTHER"


def new_asset_id() -> str:
    return uuid.uuid4().hex


class MediaAsset(TimestampMixin, Base):
    __tablename__ = "media_assets"
    __table_args__ = (Index("ix_media_assets_kind_created", "kind", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_asset_id)
    kind: Mapped[MediaKind] = mapped_column(Enum(MediaKind, name="media_kind"), nullable=False)
    mime: Mapped[str] = mapped_column(String(120), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    ext: Mapped[str | None] = mapped_column(String(16), nullable=True)
    size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    remote_path: Mapped[str] = mapped_column(String(1024), unique=True, nullable=False)
    public_url: Mapped[str | None] = mapped_column(String(1200), nullable=True)
    public_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    cached_href: Mapped[str | None] = mapped_column(Text, nullable=True)
    cached_href_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    alt: Mapped[str | None] = mapped_column(String(500), nullable=True)
    caption: Mapped[str | None] = mapped_column(Text, nullable=True)
