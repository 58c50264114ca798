from vestnik.models.audit import AuditLog
from vestnik.models.media import MediaAsset, MediaKind

__all__ = [
    "AuditLog",
    "MediaAsset",
    "MediaKind",
]
