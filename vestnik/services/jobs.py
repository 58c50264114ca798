from __future__ import annotations

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from vestnik.core.config import settings

_pool: ArqRedis | None = None


async def get_job_queue() -> ArqRedis:
    global _pool
    if _pool is None:
        _pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
    return _pool


async def enqueue_remote_delete(remote_path: str) -> None:
    queue = await get_job_queue()
    await queue.enqueue_job("delete_remote_media_job", remote_path, _job_id=f"delete:{remote_path}")
