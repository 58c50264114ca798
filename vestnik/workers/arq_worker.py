from __future__ import annotations

import logging

import httpx
from arq import Retry
from arq.connections import RedisSettings
from arq.cron import cron
from sqlalchemy import and_, update

from vestnik.core.config import settings
from vestnik.db.session import SessionLocal
from vestnik.models.common import utcnow
from vestnik.models.media import MediaAsset
from vestnik.services.yadisk import DISK_FAILURES, OperationTimeout, UpstreamError, get_disk_client

logger = logging.getLogger(__name__)


async def purge_expired_links_job(ctx) -> dict:
    session_factory = ctx.get("session_factory", SessionLocal)
    now = utcnow()
    async with session_factory() as db:
        result = await db.execute(
            update(MediaAsset)
            .where(
                and_(
                    MediaAsset.cached_href_expires_at.is_not(None),
                    MediaAsset.cached_href_expires_at <= now,
                )
            )
            .values(cached_href=None, cached_href_expires_at=None)
        )
        await db.commit()
    purged = int(result.rowcount or 0)
    if purged:
        logger.info("Purged %s expired cached media hrefs", purged)
    return {"purged": purged}


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, UpstreamError):
        return exc.status >= 500
    return isinstance(exc, (OperationTimeout, httpx.HTTPError))


async def delete_remote_media_job(ctx, remote_path: str) -> dict:
    disk = ctx.get("disk") or get_disk_client()
    try:
        await disk.delete_resource(remote_path)
    except DISK_FAILURES as exc:
        if not _is_transient(exc):
            raise
        job_try = int(ctx.get("job_try") or 1)
        logger.warning("Remote delete of %s not confirmed on try %s: %s", remote_path, job_try, exc)
        raise Retry(defer=job_try * 5) from exc
    return {"deleted": remote_path}


class WorkerSettings:
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    functions = [purge_expired_links_job, delete_remote_media_job]
    cron_jobs = [cron(purge_expired_links_job, minute={7})]
    max_tries = 5
