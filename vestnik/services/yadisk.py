"""Yandex Disk REST client.

Every method maps to one upstream call, or to a bounded poll loop for the
operations the provider completes asynchronously (202 + operation href).
Nothing here is cached or retried.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from functools import lru_cache
from typing import Any

import httpx

from vestnik.core.config import settings

logger = logging.getLogger(__name__)

DISK_ROOT = "disk:/"


class DiskError(Exception):
    pass


class UpstreamError(DiskError):
    def __init__(self, context: str, status: int, message: str = "") -> None:
        self.context = context
        self.status = status
        self.message = message
        text = f"{context}: {status}"
        if message:
            text = f"{text} ({message})"
        super().__init__(text)


class UploadFailed(UpstreamError):
    pass


class InvalidPath(DiskError, ValueError):
    pass


class OperationTimeout(DiskError):
    pass


class OperationFailed(DiskError):
    pass


class PreviewUnavailable(DiskError):
    pass


# Everything a Disk call can raise once the request has left the process.
DISK_FAILURES = (DiskError, httpx.HTTPError)


def dirname_disk(path: str) -> str:
    i = path.rfind("/")
    if i <= len(DISK_ROOT) - 1:
        return DISK_ROOT
    return path[:i]


def _require_disk_path(path: str, context: str) -> None:
    if not str(path or "").startswith(DISK_ROOT):
        raise InvalidPath(f"{context}: path must start with {DISK_ROOT}")


def _error_message(res: httpx.Response) -> str:
    try:
        payload = res.json()
    except ValueError:
        return res.text.strip()[:300]
    if not isinstance(payload, dict):
        return ""
    parts = [str(payload.get(k) or "").strip() for k in ("error", "message")]
    return " ".join(p for p in parts if p)


def _raise_for(res: httpx.Response, context: str) -> None:
    raise UpstreamError(context, res.status_code, _error_message(res))


def _json_body(res: httpx.Response, context: str) -> dict[str, Any]:
    try:
        payload = res.json()
    except ValueError as exc:
        raise UpstreamError(context, res.status_code, "invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise UpstreamError(context, res.status_code, "invalid JSON body")
    return payload


def _href_from(res: httpx.Response, context: str) -> str:
    href = _json_body(res, context).get("href")
    if not isinstance(href, str) or not href:
        raise UpstreamError(context, res.status_code, "response has no href")
    return href


class YaDiskClient:
    def __init__(
        self,
        token: str,
        *,
        api_url: str = "https://cloud-api.yandex.net/v1/disk",
        timeout: float = 30.0,
        operation_timeout: float = 15.0,
        poll_interval: float = 0.4,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.operation_timeout = operation_timeout
        self.poll_interval = poll_interval
        self._token = token
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    @property
    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"OAuth {self._token}"}

    def _client(self, *, authorized: bool = True) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers=self.auth_headers if authorized else None,
        )

    async def _call(self, method: str, endpoint: str, params: dict[str, str] | None = None) -> httpx.Response:
        url = endpoint if endpoint.startswith(("http://", "https://")) else f"{self.api_url}{endpoint}"
        async with self._client() as client:
            return await client.request(method, url, params=params)

    async def ensure_folder(self, path: str) -> None:
        res = await self._call("PUT", "/resources", {"path": path})
        # 409: the folder already exists
        if res.is_success or res.status_code == 409:
            return
        _raise_for(res, "YaDisk mkdir failed")

    async def ensure_dir_recursive(self, path: str) -> None:
        _require_disk_path(path, "YaDisk mkdir")
        prefix = DISK_ROOT
        for part in [p for p in path[len(DISK_ROOT) :].split("/") if p]:
            prefix += part
            await self.ensure_folder(prefix)
            prefix += "/"

    async def get_upload_link(self, path: str, overwrite: bool = True) -> str:
        params = {"path": path, "overwrite": "true" if overwrite else "false"}
        res = await self._call("GET", "/resources/upload", params)
        if not res.is_success:
            _raise_for(res, "YaDisk upload link failed")
        return _href_from(res, "YaDisk upload link failed")

    async def get_upload_link_ensuring(self, path: str, overwrite: bool = True) -> str:
        await self.ensure_dir_recursive(dirname_disk(path))
        return await self.get_upload_link(path, overwrite)

    async def put_bytes(self, upload_href: str, payload: bytes) -> None:
        # The upload href is pre-signed; it must not carry the OAuth header.
        async with self._client(authorized=False) as client:
            res = await client.put(
                upload_href,
                content=payload,
                headers={"Content-Type": "application/octet-stream"},
            )
        if not res.is_success:
            raise UploadFailed("YaDisk PUT failed", res.status_code, res.text.strip()[:300])

    async def publish(self, path: str) -> None:
        res = await self._call("PUT", "/resources/publish", {"path": path})
        # 409: already published
        if res.is_success or res.status_code == 409:
            return
        _raise_for(res, "YaDisk publish failed")

    async def get_meta(self, path: str, fields: str | None = None, *, preview_size: str | None = None) -> dict[str, Any]:
        params = {"path": path}
        if fields:
            params["fields"] = fields
        if preview_size:
            params["preview_size"] = preview_size
            params["preview_crop"] = "false"
        res = await self._call("GET", "/resources", params)
        if not res.is_success:
            _raise_for(res, "YaDisk meta failed")
        return _json_body(res, "YaDisk meta failed")

    async def get_public_download_href(self, public_key: str) -> str:
        res = await self._call("GET", "/public/resources/download", {"public_key": public_key})
        if not res.is_success:
            _raise_for(res, "YaDisk public download failed")
        return _href_from(res, "YaDisk public download failed")

    async def get_private_download_href(self, path: str) -> str:
        res = await self._call("GET", "/resources/download", {"path": path})
        if not res.is_success:
            _raise_for(res, "YaDisk private download failed")
        return _href_from(res, "YaDisk private download failed")

    async def get_preview_href(self, path: str, size: str, public_key: str | None = None) -> str:
        if public_key:
            params = {"public_key": public_key, "fields": "preview", "preview_size": size, "preview_crop": "false"}
            res = await self._call("GET", "/public/resources", params)
        else:
            params = {"path": path, "fields": "preview", "preview_size": size, "preview_crop": "false"}
            res = await self._call("GET", "/resources", params)
        if not res.is_success:
            _raise_for(res, "YaDisk preview failed")
        preview = _json_body(res, "YaDisk preview failed").get("preview")
        if not isinstance(preview, str) or not preview:
            raise PreviewUnavailable(f"no {size} preview for {path}")
        return preview

    async def get_operation_status(self, operation_href: str) -> str:
        res = await self._call("GET", operation_href)
        if not res.is_success:
            _raise_for(res, "YaDisk get operation failed")
        return str(_json_body(res, "YaDisk get operation failed").get("status") or "")

    async def wait_operation(self, operation_href: str) -> None:
        started = self._clock()
        status = await self.get_operation_status(operation_href)
        while status == "in-progress":
            if self._clock() - started > self.operation_timeout:
                raise OperationTimeout(f"YaDisk operation timed out after {self.operation_timeout}s")
            await self._sleep(self.poll_interval)
            status = await self.get_operation_status(operation_href)
        if status != "success":
            raise OperationFailed(f"YaDisk operation finished with status {status or 'unknown'}")

    async def _wait_accepted(self, res: httpx.Response) -> None:
        try:
            payload = res.json()
        except ValueError:
            payload = None
        href = payload.get("href") if isinstance(payload, dict) else None
        if href:
            await self.wait_operation(str(href))

    async def delete_resource(self, path: str, permanently: bool = False) -> None:
        _require_disk_path(path, "YaDisk delete")
        params = {"path": path}
        if permanently:
            params["permanently"] = "true"
        res = await self._call("DELETE", "/resources", params)
        if res.status_code in (204, 404, 410):
            return
        if res.status_code == 202:
            await self._wait_accepted(res)
            return
        _raise_for(res, "YaDisk delete failed")

    async def move_resource(self, src: str, dst: str, overwrite: bool = False) -> None:
        _require_disk_path(src, "YaDisk move")
        _require_disk_path(dst, "YaDisk move")
        await self.ensure_dir_recursive(dirname_disk(dst))

        params = {"from": src, "path": dst}
        if overwrite:
            params["overwrite"] = "true"
        res = await self._call("POST", "/resources/move", params)
        if res.status_code == 201:
            return
        if res.status_code == 202:
            await self._wait_accepted(res)
            return
        _raise_for(res, "YaDisk move failed")


@lru_cache(maxsize=1)
def get_disk_client() -> YaDiskClient:
    if not settings.yadisk_oauth_token:
        logger.warning("YADISK_OAUTH_TOKEN is not set; Disk calls will be rejected upstream")
    return YaDiskClient(
        settings.yadisk_oauth_token,
        api_url=settings.yadisk_api_url,
        timeout=settings.yadisk_timeout_seconds,
        operation_timeout=settings.yadisk_operation_timeout_seconds,
        poll_interval=settings.yadisk_operation_poll_seconds,
    )
