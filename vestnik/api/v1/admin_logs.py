from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from vestnik.db.session import get_db
from vestnik.models.audit import AuditLog
from vestnik.schemas.audit import AuditLogOut
from vestnik.services.auth import ADMIN_ROLES, AuthUser, role_guard

router = APIRouter(prefix="/admin/logs", tags=["admin-logs"])


@router.get("", response_model=list[AuditLogOut])
async def list_audit_logs(
    limit: int = Query(default=50, ge=1, le=200),
    action: str | None = Query(default=None, max_length=40),
    target_id: str | None = Query(default=None, max_length=64),
    db: AsyncSession = Depends(get_db),
    _current_user: AuthUser = Depends(role_guard(ADMIN_ROLES)),
) -> list[AuditLogOut]:
    stmt = select(AuditLog).order_by(desc(AuditLog.created_at), desc(AuditLog.id)).limit(limit)
    if action:
        stmt = stmt.where(AuditLog.action == action.strip().upper())
    if target_id:
        stmt = stmt.where(AuditLog.target_id == target_id.strip())
    rows = (await db.execute(stmt)).scalars().all()
    return [AuditLogOut.model_validate(row) for row in rows]
