from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vestnik.models.common import as_utc
from vestnik.models.media import MediaAsset, MediaKind

logger = logging.getLogger(__name__)

_WRITABLE_FIELDS = {"public_key", "cached_href", "cached_href_expires_at"}


@dataclass(frozen=True, slots=True)
class AssetRecord:
    id: str
    kind: MediaKind
    mime: str
    remote_path: str
    public_key: str | None = None
    cached_href: str | None = None
    cached_href_expires_at: datetime | None = None


def as_record(row: MediaAsset) -> AssetRecord:
    return AssetRecord(
        id=row.id,
        kind=MediaKind(row.kind),
        mime=row.mime,
        remote_path=row.remote_path,
        public_key=row.public_key,
        cached_href=row.cached_href,
        cached_href_expires_at=as_utc(row.cached_href_expires_at),
    )


class AssetRegistry:
    """Read side of media_assets for the delivery path, plus best-effort write-back
    of derived fields (public key, cached original href)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._pending: set[asyncio.Task[None]] = set()

    async def find_asset(self, asset_id: str) -> AssetRecord | None:
        async with self._session_factory() as db:
            row = (await db.execute(select(MediaAsset).where(MediaAsset.id == asset_id))).scalar_one_or_none()
        return as_record(row) if row is not None else None

    async def update_asset(self, asset_id: str, **fields: Any) -> None:
        unknown = set(fields) - _WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not writable from the delivery path: {sorted(unknown)}")
        if not fields:
            return
        async with self._session_factory() as db:
            await db.execute(update(MediaAsset).where(MediaAsset.id == asset_id).values(**fields))
            await db.commit()

    def update_asset_later(self, asset_id: str, **fields: Any) -> asyncio.Task[None]:
        """Schedule update_asset without awaiting it; failures are logged only.

        The task is detached from the request, so a client disconnect does not
        cancel the write.
        """
        task = asyncio.get_running_loop().create_task(self.update_asset(asset_id, **fields))
        self._pending.add(task)
        task.add_done_callback(lambda t: self._finish(asset_id, t))
        return task

    def _finish(self, asset_id: str, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Media asset write-back failed for id=%s: %s", asset_id, exc)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
