from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from vestnik.services.media_delivery import (
    DeliveryError,
    InvalidMediaRequest,
    MediaDeliveryService,
    MediaNotFound,
    get_media_delivery,
)

router = APIRouter(tags=["media"])


@router.get("/media/{asset_id}")
async def get_media(
    asset_id: str,
    request: Request,
    size: str | None = Query(default=None, max_length=16),
    delivery: MediaDeliveryService = Depends(get_media_delivery),
) -> StreamingResponse:
    try:
        stream = await delivery.open(asset_id, size=size, range_header=request.headers.get("range"))
    except MediaNotFound as exc:
        raise HTTPException(status_code=404, detail="Media not found") from exc
    except InvalidMediaRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DeliveryError as exc:
        raise HTTPException(status_code=502, detail="Upstream error") from exc

    headers = dict(stream.headers)
    media_type = headers.pop("Content-Type")
    return StreamingResponse(
        stream.iter_bytes(),
        status_code=stream.status_code,
        media_type=media_type,
        headers=headers,
    )
