from __future__ import annotations

import asyncio
from types import SimpleNamespace

import httpx
import jwt
import pytest
from fastapi import FastAPI
from fastapi.responses import ORJSONResponse
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from tests.helpers.media import make_session_factory
from vestnik.api.v1.router import api_router
from vestnik.core.config import settings
from vestnik.db.session import get_db
from vestnik.models.audit import AuditLog
from vestnik.models.media import MediaAsset
from vestnik.services.yadisk import OperationTimeout, UpstreamError, get_disk_client


class UploadDisk:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, Exception] = {}
        self.uploaded: dict[str, bytes] = {}

    def _step(self, name: str, arg: str) -> None:
        self.calls.append((name, arg))
        if name in self.failures:
            raise self.failures[name]

    async def get_upload_link_ensuring(self, path: str, *, overwrite: bool = False) -> str:
        self._step("upload_link", path)
        return f"https://uploader.test/{path}"

    async def put_bytes(self, href: str, data: bytes) -> None:
        self._step("put_bytes", href)
        self.uploaded[href] = data

    async def publish(self, path: str) -> None:
        self._step("publish", path)

    async def get_meta(self, path: str, fields: str | None = None) -> dict:
        self._step("get_meta", path)
        mime = "video/mp4" if path.endswith(".mp4") else "image/jpeg"
        return {"mime_type": mime, "size": 6, "public_url": "https://yadi.sk/i/abc", "public_key": "PK-new"}

    async def get_public_download_href(self, public_key: str) -> str:
        self._step("public_href", public_key)
        return "https://downloader.test/warm"

    async def delete_resource(self, path: str) -> None:
        self._step("delete", path)


def auth(*roles: str, sub: str = "user-1") -> dict[str, str]:
    token = jwt.encode({"sub": sub, "roles": list(roles)}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def env(tmp_path):
    session_factory = asyncio.run(make_session_factory(tmp_path))
    disk = UploadDisk()

    app = FastAPI(default_response_class=ORJSONResponse)
    app.include_router(api_router, prefix="/api/v1")

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_disk_client] = lambda: disk

    def count(model) -> int:
        async def _count() -> int:
            async with session_factory() as db:
                return int((await db.execute(select(func.count()).select_from(model))).scalar_one())

        return asyncio.run(_count())

    return SimpleNamespace(client=TestClient(app), disk=disk, count=count)


def upload(env, filename: str = "town-hall.jpg", content_type: str = "image/jpeg", roles=("author",), **form):
    return env.client.post(
        "/api/v1/admin/media/upload",
        files={"file": (filename, b"\xff\xd8\xffjpg", content_type)},
        data=form,
        headers=auth(*roles),
    )


def test_upload_stores_publishes_and_audits(env) -> None:
    response = upload(env, title="  Town hall  ")

    assert response.status_code == 201
    body = response.json()
    assert body["stable_url"] == f"/media/{body['id']}"
    assert body["kind"] == "IMAGE"
    assert body["title"] == "Town hall"
    assert body["public_url"] == "https://yadi.sk/i/abc"
    assert body["remote_path"].startswith("disk:/media/")
    assert body["remote_path"].endswith(".jpg")
    assert [name for name, _ in env.disk.calls] == ["upload_link", "put_bytes", "publish", "get_meta", "public_href"]
    assert env.count(MediaAsset) == 1
    assert env.count(AuditLog) == 1


def test_upload_rejects_unsupported_type(env) -> None:
    response = upload(env, filename="notes.exe", content_type="application/x-msdownload")

    assert response.status_code == 400
    assert env.disk.calls == []


def test_upload_stage_failure_is_reported(env) -> None:
    env.disk.failures["publish"] = UpstreamError("YaDisk publish", 500, "boom")

    response = upload(env)

    assert response.status_code == 502
    assert response.json()["detail"]["stage"] == "PUBLISH"
    assert response.json()["detail"]["code"] == "UPLOAD_FAILED"
    assert env.count(MediaAsset) == 0


def test_upload_transport_failure_is_tagged_bad_gateway(env) -> None:
    env.disk.failures["upload_link"] = httpx.ConnectError("dns")

    response = upload(env)

    assert response.status_code == 502
    assert response.json()["detail"]["stage"] == "UPLOAD_LINK"
    assert env.count(MediaAsset) == 0


def test_upload_survives_prewarm_timeout(env) -> None:
    env.disk.failures["public_href"] = httpx.ConnectTimeout("slow downloader")

    response = upload(env)

    assert response.status_code == 201
    assert env.count(MediaAsset) == 1
    assert env.count(AuditLog) == 1


def test_upload_requires_token_and_staff_role(env) -> None:
    anonymous = env.client.post(
        "/api/v1/admin/media/upload",
        files={"file": ("a.jpg", b"jpg", "image/jpeg")},
    )
    reader = upload(env, roles=("reader",))

    assert anonymous.status_code == 401
    assert reader.status_code == 403
    assert env.disk.calls == []


def test_list_filters_by_kind_and_query(env) -> None:
    upload(env, filename="council.jpg", title="Council session")
    upload(env, filename="parade.mp4", content_type="video/mp4")

    everything = env.client.get("/api/v1/admin/media", headers=auth("editor"))
    images = env.client.get("/api/v1/admin/media", params={"kinds": "image"}, headers=auth("editor"))
    searched = env.client.get("/api/v1/admin/media", params={"q": "COUNCIL"}, headers=auth("editor"))

    assert everything.status_code == 200
    assert everything.headers["cache-control"] == "no-store"
    assert len(everything.json()["items"]) == 2
    assert everything.json()["has_more"] is False
    assert [item["filename"] for item in images.json()["items"]] == ["council.jpg"]
    assert [item["title"] for item in searched.json()["items"]] == ["Council session"]


def test_list_paginates(env) -> None:
    for i in range(3):
        upload(env, filename=f"p{i}.jpg")

    first = env.client.get("/api/v1/admin/media", params={"limit": 2}, headers=auth("author")).json()
    second = env.client.get("/api/v1/admin/media", params={"limit": 2, "page": 2}, headers=auth("author")).json()

    assert len(first["items"]) == 2
    assert first["has_more"] is True
    assert first["next_page"] == 2
    assert len(second["items"]) == 1
    assert second["next_page"] is None


def test_meta_is_public_and_cacheable(env) -> None:
    asset_id = upload(env, alt="Square at noon").json()["id"]

    response = env.client.get(f"/api/v1/admin/media/{asset_id}/meta")

    assert response.status_code == 200
    assert response.headers["cache-control"] == "public, max-age=3600"
    assert response.json()["alt"] == "Square at noon"
    assert env.client.get("/api/v1/admin/media/missing/meta").status_code == 404


def test_patch_updates_descriptive_fields(env) -> None:
    asset_id = upload(env).json()["id"]

    response = env.client.patch(
        f"/api/v1/admin/media/{asset_id}",
        json={"caption": " New caption ", "alt": ""},
        headers=auth("author"),
    )

    assert response.status_code == 200
    assert response.json()["caption"] == "New caption"
    assert response.json()["alt"] is None
    assert env.count(AuditLog) == 2


def test_delete_removes_remote_file_and_row(env) -> None:
    asset = upload(env).json()

    response = env.client.delete(f"/api/v1/admin/media/{asset['id']}", headers=auth("editor"))

    assert response.status_code == 200
    assert response.json() == {"ok": True, "message": "deleted"}
    assert ("delete", asset["remote_path"]) in env.disk.calls
    assert env.count(MediaAsset) == 0


def test_delete_requires_editor(env) -> None:
    asset_id = upload(env).json()["id"]

    response = env.client.delete(f"/api/v1/admin/media/{asset_id}", headers=auth("author"))

    assert response.status_code == 403
    assert env.count(MediaAsset) == 1


def test_delete_keeps_row_when_disk_refuses(env) -> None:
    asset_id = upload(env).json()["id"]
    env.disk.failures["delete"] = UpstreamError("YaDisk delete", 500, "boom")

    response = env.client.delete(f"/api/v1/admin/media/{asset_id}", headers=auth("admin"))

    assert response.status_code == 502
    assert env.count(MediaAsset) == 1


def test_delete_keeps_row_on_transport_timeout(env) -> None:
    asset_id = upload(env).json()["id"]
    env.disk.failures["delete"] = httpx.ReadTimeout("disk api hung")

    response = env.client.delete(f"/api/v1/admin/media/{asset_id}", headers=auth("editor"))

    assert response.status_code == 502
    assert env.count(MediaAsset) == 1


def test_delete_hands_slow_operation_to_worker(env, monkeypatch) -> None:
    asset = upload(env).json()
    env.disk.failures["delete"] = OperationTimeout("still running")
    queued: list[str] = []

    async def fake_enqueue(remote_path: str) -> None:
        queued.append(remote_path)

    monkeypatch.setattr("vestnik.api.v1.admin_media.enqueue_remote_delete", fake_enqueue)

    response = env.client.delete(f"/api/v1/admin/media/{asset['id']}", headers=auth("editor"))

    assert response.status_code == 200
    assert response.json()["message"] == "deletion pending"
    assert queued == [asset["remote_path"]]
    assert env.count(MediaAsset) == 0


def test_admin_logs_are_admin_only_and_filterable(env) -> None:
    asset_id = upload(env).json()["id"]
    env.client.delete(f"/api/v1/admin/media/{asset_id}", headers=auth("editor"))

    forbidden = env.client.get("/api/v1/admin/logs", headers=auth("editor"))
    logs = env.client.get("/api/v1/admin/logs", params={"action": "media_delete"}, headers=auth("admin"))

    assert forbidden.status_code == 403
    assert logs.status_code == 200
    entries = logs.json()
    assert [entry["action"] for entry in entries] == ["MEDIA_DELETE"]
    assert entries[0]["target_id"] == asset_id
    assert entries[0]["detail"]["pending"] is False
