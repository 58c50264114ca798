from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class AuditLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    target_type: str
    target_id: str | None = None
    summary: str
    detail: dict[str, Any]
    actor_id: str | None = None
    created_at: datetime
