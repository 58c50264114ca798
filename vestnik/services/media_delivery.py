"""Serves Disk-hosted media through stable local URLs.

Per request: resolve a working href (memory cache, then the href persisted on
the asset row, then the provider), stream the bytes, and recover locally from
two upstream failures at most once each:

* a preview rendition the provider cannot serve (404/502) falls back to the
  original rendition;
* a signed href rejected before its local expiry (401/403) is re-issued,
  bypassing both cache tiers, and the fetch is retried.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Protocol

import httpx

from vestnik.core.config import settings
from vestnik.db.session import SessionLocal
from vestnik.models.common import as_utc, utcnow
from vestnik.models.media import MediaKind
from vestnik.services.link_cache import LinkCache
from vestnik.services.registry import AssetRecord, AssetRegistry
from vestnik.services.yadisk import DISK_FAILURES, PreviewUnavailable, UpstreamError, get_disk_client

logger = logging.getLogger(__name__)

PREVIEW_MISSING_STATUSES = frozenset({404, 502})
REJECTED_STATUSES = frozenset({401, 403})
FORWARDED_HEADERS = ("content-length", "content-range", "accept-ranges")

_PREVIEW_SIZE_RE = re.compile(r"^(?:S|M|L|XL|XXL|XXXL|\d{1,4}x?|x\d{1,4}|\d{1,4}x\d{1,4})$")


class MediaNotFound(Exception):
    pass


class InvalidMediaRequest(Exception):
    pass


class PreviewNotSupported(InvalidMediaRequest):
    pass


class DeliveryError(Exception):
    def __init__(self, message: str, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class Registry(Protocol):
    async def find_asset(self, asset_id: str) -> AssetRecord | None: ...

    def update_asset_later(self, asset_id: str, **fields: Any) -> Any: ...

    async def drain(self) -> None: ...


class LinkSource(Protocol):
    auth_headers: dict[str, str]

    async def publish(self, path: str) -> None: ...

    async def get_meta(self, path: str, fields: str | None = None) -> dict[str, Any]: ...

    async def get_public_download_href(self, public_key: str) -> str: ...

    async def get_private_download_href(self, path: str) -> str: ...

    async def get_preview_href(self, path: str, size: str, public_key: str | None = None) -> str: ...


def normalize_preview_size(raw: str | None) -> str | None:
    value = str(raw or "").strip()
    if not value:
        return None
    if value.isalpha():
        value = value.upper()
    if not _PREVIEW_SIZE_RE.match(value):
        raise InvalidMediaRequest(f"Unsupported preview size: {raw}")
    return value


@dataclass(slots=True)
class MediaStream:
    status_code: int
    headers: dict[str, str]
    upstream: httpx.Response

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        # Closing in finally also covers a client that disconnects mid-stream.
        try:
            async for chunk in self.upstream.aiter_raw():
                yield chunk
        finally:
            await self.upstream.aclose()

    async def aclose(self) -> None:
        await self.upstream.aclose()


class MediaDeliveryService:
    def __init__(
        self,
        registry: Registry,
        storage: LinkSource,
        cache: LinkCache,
        *,
        http: httpx.AsyncClient | None = None,
        link_ttl: timedelta = timedelta(hours=23),
        clock: Callable[[], datetime] = utcnow,
        image_max_age: int = 31_536_000,
        preview_max_age: int = 604_800,
        other_max_age: int = 600,
    ) -> None:
        self.registry = registry
        self.storage = storage
        self.cache = cache
        self.http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, read=120.0),
            follow_redirects=True,
        )
        self.link_ttl = link_ttl
        self._clock = clock
        self.image_max_age = image_max_age
        self.preview_max_age = preview_max_age
        self.other_max_age = other_max_age

    async def open(self, asset_id: str, size: str | None = None, range_header: str | None = None) -> MediaStream:
        asset = await self.registry.find_asset(asset_id)
        if asset is None:
            raise MediaNotFound(asset_id)

        size = normalize_preview_size(size)
        if size and asset.kind != MediaKind.IMAGE:
            raise PreviewNotSupported(f"Previews are only available for images, asset {asset.id} is {asset.kind.value}")

        public_key = await self._ensure_public_key(asset)

        try:
            upstream, served_size = await self._fetch_with_fallbacks(asset, public_key, size, range_header)
        except DISK_FAILURES as exc:
            logger.warning("Media %s: upstream failure while resolving: %s", asset.id, exc)
            status = exc.status if isinstance(exc, UpstreamError) else None
            raise DeliveryError(f"Upstream failure for media {asset.id}", status) from exc

        if upstream.status_code not in (200, 206):
            await upstream.aclose()
            logger.warning("Media %s: upstream answered %s", asset.id, upstream.status_code)
            raise DeliveryError(f"Upstream {upstream.status_code}", upstream.status_code)

        return MediaStream(
            status_code=206 if upstream.headers.get("content-range") else 200,
            headers=self._response_headers(asset, upstream, served_size),
            upstream=upstream,
        )

    async def _ensure_public_key(self, asset: AssetRecord) -> str | None:
        if asset.public_key:
            return asset.public_key
        try:
            await self.storage.publish(asset.remote_path)
            meta = await self.storage.get_meta(asset.remote_path, "public_key")
        except DISK_FAILURES as exc:
            logger.warning("Media %s: publish failed, serving via private href: %s", asset.id, exc)
            return None

        public_key = str(meta.get("public_key") or "").strip() or None
        if public_key:
            self.registry.update_asset_later(asset.id, public_key=public_key)
        return public_key

    async def _fetch_with_fallbacks(
        self,
        asset: AssetRecord,
        public_key: str | None,
        size: str | None,
        range_header: str | None,
    ) -> tuple[httpx.Response, str | None]:
        href, size = await self._rendition_href(asset, public_key, size, fresh=False)
        upstream = await self._fetch(href, range_header, preview=bool(size))

        if size and upstream.status_code in PREVIEW_MISSING_STATUSES:
            await upstream.aclose()
            logger.info("Media %s: preview %s unavailable (%s), serving original", asset.id, size, upstream.status_code)
            size = None
            href = await self._resolve_href(asset, public_key, None)
            upstream = await self._fetch(href, range_header)

        # A rejected range request is not retried; players re-request anyway.
        if upstream.status_code in REJECTED_STATUSES and not range_header:
            await upstream.aclose()
            logger.info("Media %s: href rejected upstream (%s), re-issuing", asset.id, upstream.status_code)
            href, size = await self._rendition_href(asset, public_key, size, fresh=True)
            upstream = await self._fetch(href, range_header, preview=bool(size))

            if size and upstream.status_code in PREVIEW_MISSING_STATUSES:
                await upstream.aclose()
                size = None
                href = await self._refresh_href(asset, public_key, None)
                upstream = await self._fetch(href, range_header)

        return upstream, size

    async def _rendition_href(
        self,
        asset: AssetRecord,
        public_key: str | None,
        size: str | None,
        *,
        fresh: bool,
    ) -> tuple[str, str | None]:
        resolve = self._refresh_href if fresh else self._resolve_href
        if size:
            try:
                return await resolve(asset, public_key, size), size
            except PreviewUnavailable as exc:
                logger.info("Media %s: %s, serving original", asset.id, exc)
        return await resolve(asset, public_key, None), None

    async def _resolve_href(self, asset: AssetRecord, public_key: str | None, size: str | None) -> str:
        now = self._clock()
        entry = self.cache.get(asset.id, size, now)
        if entry is not None:
            return entry.href

        # Preview hrefs are never persisted.
        if size is None:
            expires_at = as_utc(asset.cached_href_expires_at)
            if asset.cached_href and expires_at is not None and now < expires_at:
                self.cache.put(asset.id, None, asset.cached_href, expires_at)
                return asset.cached_href

        return await self._refresh_href(asset, public_key, size)

    async def _refresh_href(self, asset: AssetRecord, public_key: str | None, size: str | None) -> str:
        href = await self._issue_href(asset, public_key, size)
        expires_at = self._clock() + self.link_ttl
        self.cache.put(asset.id, size, href, expires_at)
        if size is None:
            self.registry.update_asset_later(asset.id, cached_href=href, cached_href_expires_at=expires_at)
        return href

    async def _issue_href(self, asset: AssetRecord, public_key: str | None, size: str | None) -> str:
        if size:
            return await self.storage.get_preview_href(asset.remote_path, size, public_key)
        if public_key:
            try:
                return await self.storage.get_public_download_href(public_key)
            except DISK_FAILURES as exc:
                logger.warning("Media %s: public href failed, trying private href: %s", asset.id, exc)
        return await self.storage.get_private_download_href(asset.remote_path)

    async def _fetch(self, href: str, range_header: str | None, *, preview: bool = False) -> httpx.Response:
        headers = {"Accept-Encoding": "identity"}
        if range_header:
            headers["Range"] = range_header
        if preview:
            # Preview URLs are served only to the owner's OAuth token.
            headers.update(self.storage.auth_headers)
        request = self.http.build_request("GET", href, headers=headers)
        return await self.http.send(request, stream=True)

    def _cache_control(self, kind: MediaKind, size: str | None) -> str:
        if size:
            return f"public, max-age={self.preview_max_age}, immutable"
        if kind == MediaKind.IMAGE:
            return f"public, max-age={self.image_max_age}, immutable"
        return f"public, max-age={self.other_max_age}, must-revalidate"

    def _response_headers(self, asset: AssetRecord, upstream: httpx.Response, size: str | None) -> dict[str, str]:
        headers = {
            "Content-Type": upstream.headers.get("content-type") or asset.mime or "application/octet-stream",
            "Content-Disposition": "inline",
            "Cache-Control": self._cache_control(asset.kind, size),
        }
        for name in FORWARDED_HEADERS:
            value = upstream.headers.get(name)
            if value:
                headers[name.title()] = value
        return headers

    async def aclose(self) -> None:
        # Pending write-backs finish before the client goes away.
        await self.registry.drain()
        await self.http.aclose()


@lru_cache(maxsize=1)
def get_media_delivery() -> MediaDeliveryService:
    return MediaDeliveryService(
        AssetRegistry(SessionLocal),
        get_disk_client(),
        LinkCache(settings.media_link_cache_max_entries),
        link_ttl=timedelta(seconds=settings.media_link_ttl_seconds),
        image_max_age=settings.media_image_max_age_seconds,
        preview_max_age=settings.media_preview_max_age_seconds,
        other_max_age=settings.media_other_max_age_seconds,
    )
