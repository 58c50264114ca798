from __future__ import annotations

import hashlib
import logging
from typing import Any

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from vestnik.core.config import settings
from vestnik.models.audit import AuditLog

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = {"MEDIA_UPLOAD", "MEDIA_UPDATE", "MEDIA_DELETE"}
AUDIT_TARGETS = {"MEDIA", "SYSTEM"}


def hash_ip(ip: str | None) -> str | None:
    value = str(ip or "").strip()
    if not value:
        return None
    return hashlib.sha256(f"{settings.jwt_secret}:{value}".encode("utf-8")).hexdigest()


def client_ip(request: Request) -> str | None:
    forwarded = (request.headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


async def audit_log(
    db: AsyncSession,
    *,
    action: str,
    target_type: str,
    summary: str,
    target_id: str | None = None,
    detail: dict[str, Any] | None = None,
    actor_id: str | None = None,
    request: Request | None = None,
) -> None:
    if action not in AUDIT_ACTIONS or target_type not in AUDIT_TARGETS:
        logger.warning("Skipping audit entry with unknown action=%s target=%s", action, target_type)
        return

    ip_hash = None
    user_agent = None
    if request is not None:
        ip_hash = hash_ip(client_ip(request))
        user_agent = (request.headers.get("user-agent") or "")[:400] or None

    row = AuditLog(
        action=action,
        target_type=target_type,
        target_id=target_id,
        summary=summary[:400],
        detail=detail or {},
        actor_id=actor_id,
        ip_hash=ip_hash,
        user_agent=user_agent,
    )
    try:
        db.add(row)
        await db.commit()
    except Exception:
        logger.exception("Audit log write failed for action=%s target=%s", action, target_id)
        await db.rollback()
