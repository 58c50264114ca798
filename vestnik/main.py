from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from vestnik.api.v1.media import router as media_router
from vestnik.api.v1.router import api_router
from vestnik.core.config import settings
from vestnik.core.logging import configure_logging
from vestnik.middleware.rate_limit import RedisRateLimitMiddleware
from vestnik.services.media_delivery import get_media_delivery


configure_logging()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    if get_media_delivery.cache_info().currsize:
        await get_media_delivery().aclose()


app = FastAPI(
    title=settings.app_name,
    default_response_class=ORJSONResponse,
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_origin_regex=settings.cors_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
)
app.add_middleware(RedisRateLimitMiddleware)

app.include_router(api_router, prefix=settings.api_prefix)
app.include_router(media_router)

Instrumentator().instrument(app).expose(app)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


def run() -> None:
    uvicorn.run("vestnik.main:app", host=settings.app_host, port=settings.app_port, log_level=settings.log_level.lower())
