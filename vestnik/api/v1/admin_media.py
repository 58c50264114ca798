from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import ORJSONResponse
from sqlalchemy import and_, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from vestnik.core.config import settings
from vestnik.db.session import get_db
from vestnik.models.common import utcnow
from vestnik.models.media import MediaAsset, MediaKind
from vestnik.schemas.common import MessageResponse
from vestnik.schemas.media import (
    MediaAssetOut,
    MediaListItem,
    MediaListOut,
    MediaMetaOut,
    MediaMetaUpdateIn,
)
from vestnik.services.audit import audit_log
from vestnik.services.auth import EDITOR_ROLES, STAFF_ROLES, AuthUser, role_guard
from vestnik.services.jobs import enqueue_remote_delete
from vestnik.services.media import build_remote_path, guess_kind_and_ext, is_upload_allowed, stable_media_url
from vestnik.services.yadisk import DISK_FAILURES, OperationTimeout, YaDiskClient, get_disk_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/media", tags=["admin-media"])


def _clean(value: str | None, limit: int) -> str | None:
    return (value or "").strip()[:limit] or None


def _parse_kinds(raw: str | None) -> list[MediaKind]:
    wanted = {x.strip().upper() for x in (raw or "").split(",") if x.strip()}
    return [kind for kind in MediaKind if kind.value in wanted]


def _as_asset_out(row: MediaAsset) -> MediaAssetOut:
    return MediaAssetOut(
        id=row.id,
        kind=row.kind,
        mime=row.mime,
        filename=row.filename,
        ext=row.ext,
        size=row.size,
        remote_path=row.remote_path,
        public_url=row.public_url,
        title=row.title,
        alt=row.alt,
        caption=row.caption,
        stable_url=stable_media_url(row.id),
        created_at=row.created_at,
    )


def _stage_failed(stage: str, exc: Exception) -> HTTPException:
    logger.warning("Media upload failed at stage=%s: %s", stage, exc)
    return HTTPException(status_code=502, detail={"code": "UPLOAD_FAILED", "stage": stage, "message": str(exc)})


async def _get_asset(db: AsyncSession, asset_id: str) -> MediaAsset:
    row = (await db.execute(select(MediaAsset).where(MediaAsset.id == asset_id))).scalar_one_or_none()
    if row is None:
        raise HTTPException(status_code=404, detail="Media not found")
    return row


@router.post("/upload", response_model=MediaAssetOut, status_code=201)
async def upload_media(
    request: Request,
    file: UploadFile = File(...),
    title: str | None = Form(default=None),
    alt: str | None = Form(default=None),
    caption: str | None = Form(default=None),
    db: AsyncSession = Depends(get_db),
    disk: YaDiskClient = Depends(get_disk_client),
    current_user: AuthUser = Depends(role_guard(STAFF_ROLES)),
) -> MediaAssetOut:
    filename = (file.filename or "").strip() or "upload"
    content_type = str(file.content_type or "application/octet-stream")
    if not is_upload_allowed(content_type, filename):
        raise HTTPException(status_code=400, detail="Unsupported media type")

    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty file")
    max_bytes = int(settings.max_upload_size_mb) * 1024 * 1024
    if len(data) > max_bytes:
        raise HTTPException(status_code=413, detail=f"File too large (max {settings.max_upload_size_mb} MB)")

    remote_path = build_remote_path(filename, content_type)

    try:
        upload_href = await disk.get_upload_link_ensuring(remote_path, overwrite=True)
    except DISK_FAILURES as exc:
        raise _stage_failed("UPLOAD_LINK", exc) from exc
    try:
        await disk.put_bytes(upload_href, data)
    except DISK_FAILURES as exc:
        raise _stage_failed("PUT_BYTES", exc) from exc
    try:
        await disk.publish(remote_path)
    except DISK_FAILURES as exc:
        raise _stage_failed("PUBLISH", exc) from exc
    try:
        meta = await disk.get_meta(remote_path, "name,mime_type,size,public_url,public_key")
    except DISK_FAILURES as exc:
        raise _stage_failed("META", exc) from exc

    public_key = str(meta.get("public_key") or "").strip() or None
    mime = str(meta.get("mime_type") or content_type)
    size = meta.get("size") if isinstance(meta.get("size"), int) else len(data)
    kind, ext = guess_kind_and_ext(mime, filename)

    cached_href = None
    cached_href_expires_at = None
    if public_key:
        try:
            cached_href = await disk.get_public_download_href(public_key)
            cached_href_expires_at = utcnow() + timedelta(seconds=settings.media_link_ttl_seconds)
        except DISK_FAILURES as exc:
            logger.warning("Could not pre-warm download href for %s: %s", remote_path, exc)

    row = MediaAsset(
        kind=kind,
        mime=mime,
        filename=filename[:255],
        ext=ext,
        size=size,
        remote_path=remote_path,
        public_url=str(meta.get("public_url") or "") or None,
        public_key=public_key,
        cached_href=cached_href,
        cached_href_expires_at=cached_href_expires_at,
        title=_clean(title, 255),
        alt=_clean(alt, 500),
        caption=_clean(caption, 4000),
    )
    db.add(row)
    await db.commit()
    await db.refresh(row)

    await audit_log(
        db,
        action="MEDIA_UPLOAD",
        target_type="MEDIA",
        target_id=row.id,
        summary=f"Uploaded {row.filename}",
        detail={"remote_path": row.remote_path, "mime": row.mime, "size": row.size},
        actor_id=current_user.user_id,
        request=request,
    )
    return _as_asset_out(row)


@router.get("", response_model=MediaListOut)
async def list_media(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=40, ge=1, le=100),
    kinds: str | None = Query(default=None),
    q: str | None = Query(default=None, max_length=200),
    db: AsyncSession = Depends(get_db),
    _current_user: AuthUser = Depends(role_guard(STAFF_ROLES)),
) -> ORJSONResponse:
    conditions = []
    selected = _parse_kinds(kinds)
    if selected:
        conditions.append(MediaAsset.kind.in_(selected))
    needle = (q or "").strip().lower()
    if needle:
        pattern = f"%{needle}%"
        conditions.append(
            or_(
                func.lower(MediaAsset.filename).like(pattern),
                func.lower(MediaAsset.title).like(pattern),
                func.lower(MediaAsset.mime).like(pattern),
            )
        )

    stmt = select(MediaAsset).order_by(desc(MediaAsset.created_at)).offset((page - 1) * limit).limit(limit + 1)
    if conditions:
        stmt = stmt.where(and_(*conditions))
    rows = (await db.execute(stmt)).scalars().all()

    has_more = len(rows) > limit
    items = [
        MediaListItem(
            id=row.id,
            kind=row.kind,
            mime=row.mime,
            filename=row.filename,
            title=row.title,
            alt=row.alt,
            stable_url=stable_media_url(row.id),
            created_at=row.created_at,
        )
        for row in rows[:limit]
    ]
    payload = MediaListOut(
        items=items,
        page=page,
        limit=limit,
        has_more=has_more,
        next_page=page + 1 if has_more else None,
    )
    return ORJSONResponse(payload.model_dump(mode="json"), headers={"Cache-Control": "no-store"})


@router.get("/{asset_id}/meta", response_model=MediaMetaOut)
async def get_media_meta(asset_id: str, db: AsyncSession = Depends(get_db)) -> ORJSONResponse:
    row = await _get_asset(db, asset_id)
    payload = MediaMetaOut(
        id=row.id,
        kind=row.kind,
        mime=row.mime,
        ext=row.ext,
        size=row.size,
        title=row.title,
        alt=row.alt,
        caption=row.caption,
    )
    return ORJSONResponse(payload.model_dump(mode="json"), headers={"Cache-Control": "public, max-age=3600"})


@router.patch("/{asset_id}", response_model=MediaAssetOut)
async def update_media(
    asset_id: str,
    payload: MediaMetaUpdateIn,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: AuthUser = Depends(role_guard(STAFF_ROLES)),
) -> MediaAssetOut:
    row = await _get_asset(db, asset_id)
    changed = payload.model_dump(exclude_unset=True)
    for field, value in changed.items():
        setattr(row, field, (value or "").strip() or None)
    await db.commit()
    await db.refresh(row)

    await audit_log(
        db,
        action="MEDIA_UPDATE",
        target_type="MEDIA",
        target_id=row.id,
        summary=f"Updated {', '.join(sorted(changed)) or 'nothing'} on {row.filename}",
        detail={"fields": sorted(changed)},
        actor_id=current_user.user_id,
        request=request,
    )
    return _as_asset_out(row)


@router.delete("/{asset_id}", response_model=MessageResponse)
async def delete_media(
    asset_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    disk: YaDiskClient = Depends(get_disk_client),
    current_user: AuthUser = Depends(role_guard(EDITOR_ROLES)),
) -> MessageResponse:
    row = await _get_asset(db, asset_id)
    remote_path = row.remote_path
    filename = row.filename

    pending = False
    try:
        await disk.delete_resource(remote_path)
    except OperationTimeout:
        # The provider accepted the delete but has not finished it yet.
        logger.info("Disk delete still running for %s, confirming in background", remote_path)
        await enqueue_remote_delete(remote_path)
        pending = True
    except DISK_FAILURES as exc:
        logger.warning("Disk delete failed for %s: %s", remote_path, exc)
        raise HTTPException(status_code=502, detail=str(exc) or "Disk delete failed") from exc

    await db.delete(row)
    await db.commit()

    await audit_log(
        db,
        action="MEDIA_DELETE",
        target_type="MEDIA",
        target_id=asset_id,
        summary=f"Deleted {filename}",
        detail={"remote_path": remote_path, "pending": pending},
        actor_id=current_user.user_id,
        request=request,
    )
    return MessageResponse(message="deletion pending" if pending else "deleted")
