from fastapi import APIRouter

from vestnik.api.v1.admin_logs import router as admin_logs_router
from vestnik.api.v1.admin_media import router as admin_media_router

api_router = APIRouter()
api_router.include_router(admin_media_router)
api_router.include_router(admin_logs_router)
