import asyncio
from io import BytesIO
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from conftest import InMemoryObjectStore
from mediaflow.db.base import Base
from mediaflow.db.session import get_session
from mediaflow.main import app
from mediaflow.models.media import FormConfig, ProvisionalUpload, ProvisionalUploadStatus
from mediaflow.services.object_store import get_object_store


def _png_bytes() -> bytes:
    buf = BytesIO()
    Image.new("RGB", (8, 8), color=(255, 0, 0)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def upload_app() -> Dict[str, object]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
    store = InMemoryObjectStore()

    async def init_models() -> str:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with SessionLocal() as session:
            form = FormConfig(
                name="Careers",
                fields={
                    "en": [
                        {
                            "fieldName": "cv",
                            "fieldType": "file",
                            "validation": {"maxSize": 2, "accept": "image/*,.pdf"},
                        }
                    ]
                },
            )
            session.add(form)
            await session.commit()
            return str(form.id)

    form_id = asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_object_store] = lambda: store
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal, "store": store, "form_id": form_id}
    client.close()
    app.dependency_overrides.clear()


def _post_file(client: TestClient, form_id: str, *, content: bytes | None = None, ip: str = "198.51.100.20"):
    return client.post(
        "/api/v1/uploads/form-file",
        data={"formConfigId": form_id, "fieldName": "cv"},
        files={"file": ("cv.png", content or _png_bytes(), "image/png")},
        headers={"X-Forwarded-For": ip},
    )


def _rows(session_factory) -> list[ProvisionalUpload]:
    async def load() -> list[ProvisionalUpload]:
        async with session_factory() as session:
            return list((await session.execute(select(ProvisionalUpload))).scalars().all())

    return asyncio.run(load())


def test_form_file_upload_returns_camel_case_payload(upload_app: Dict[str, object]) -> None:
    client: TestClient = upload_app["client"]  # type: ignore[assignment]
    res = _post_file(client, upload_app["form_id"])  # type: ignore[arg-type]

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["success"] is True
    assert body["fileUrl"].startswith(f"https://cdn.example.com/form-attachments/{upload_app['form_id']}/")
    assert body["fileName"] == "cv.png"
    assert body["fileType"] == "image/png"
    assert body["fileSize"] == len(_png_bytes())
    assert "uploadedAt" in body
    rows = _rows(upload_app["session_factory"])
    assert [row.status for row in rows] == [ProvisionalUploadStatus.pending]


def test_form_file_validation_errors_use_error_body(upload_app: Dict[str, object]) -> None:
    client: TestClient = upload_app["client"]  # type: ignore[assignment]
    res = _post_file(client, upload_app["form_id"], content=b"GIF89a-but-not-really" * 10)
    assert res.status_code == 200  # GIF signature is an image/* match

    res = _post_file(client, upload_app["form_id"], content=b"PK\x03\x04 zip archive")
    assert res.status_code == 400
    assert res.json()["error"] == "Invalid file type. Accepted types: image/*,.pdf"

    res = _post_file(client, upload_app["form_id"], content=b"%PDF" + b"0" * (2 * 1024 * 1024))
    assert res.status_code == 400
    assert res.json()["error"] == "File too large. Maximum size: 2MB"


def test_eleventh_upload_from_same_ip_is_rate_limited(upload_app: Dict[str, object]) -> None:
    client: TestClient = upload_app["client"]  # type: ignore[assignment]
    for _ in range(10):
        assert _post_file(client, upload_app["form_id"]).status_code == 200  # type: ignore[arg-type]

    res = _post_file(client, upload_app["form_id"])  # type: ignore[arg-type]
    assert res.status_code == 429
    assert res.json()["error"] == "Too many uploads. Please try again later."
    assert res.json()["code"] == "rate_limited"
    assert int(res.headers["Retry-After"]) > 0

    other = _post_file(client, upload_app["form_id"], ip="198.51.100.99")  # type: ignore[arg-type]
    assert other.status_code == 200


def test_store_failure_returns_upload_failed(upload_app: Dict[str, object]) -> None:
    client: TestClient = upload_app["client"]  # type: ignore[assignment]
    store: InMemoryObjectStore = upload_app["store"]  # type: ignore[assignment]
    store.fail_put_prefixes.add("form-attachments/")

    res = _post_file(client, upload_app["form_id"])  # type: ignore[arg-type]

    assert res.status_code == 500
    assert res.json()["error"] == "Upload failed"
    assert "put_object failed" in res.json()["message"]
    assert _rows(upload_app["session_factory"]) == []


def test_presigned_endpoint_rejects_oversized_batch(upload_app: Dict[str, object]) -> None:
    client: TestClient = upload_app["client"]  # type: ignore[assignment]
    files = [{"filename": f"f{i}.jpg", "contentType": "image/jpeg"} for i in range(25)]

    res = client.post("/api/v1/uploads/presigned", json={"files": files})

    assert res.status_code == 400
    assert res.json() == {"error": "Maximum 20 files per request", "code": "bad_request"}


def test_presigned_endpoint_issues_urls(upload_app: Dict[str, object]) -> None:
    client: TestClient = upload_app["client"]  # type: ignore[assignment]
    res = client.post(
        "/api/v1/uploads/presigned",
        json={"files": [{"filename": "a.jpg", "contentType": "image/jpeg", "size": 10}], "expiresIn": 600},
    )

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["accelerationEnabled"] is False
    item = body["urls"][0]
    assert set(item) == {"filename", "uploadUrl", "key", "cdnUrl"}
    assert item["key"].startswith("uploads/")
    assert "X-Amz-Expires=600" in item["uploadUrl"]


def test_upload_config_endpoint(upload_app: Dict[str, object]) -> None:
    client: TestClient = upload_app["client"]  # type: ignore[assignment]
    res = client.get("/api/v1/uploads/config")
    assert res.status_code == 200
    assert res.json()["maxFilesPerRequest"] == 20
    assert res.json()["maxFileSize"] == 50 * 1024 * 1024


def test_attach_marks_uploads_used(upload_app: Dict[str, object]) -> None:
    client: TestClient = upload_app["client"]  # type: ignore[assignment]
    file_url = _post_file(client, upload_app["form_id"]).json()["fileUrl"]  # type: ignore[arg-type]

    res = client.post("/api/v1/uploads/attach", json={"fileUrls": [file_url, "https://cdn.example.com/nope"]})

    assert res.status_code == 200
    assert res.json() == {"markedUsed": 1, "alreadyUsed": 0, "notPending": 0}
    rows = _rows(upload_app["session_factory"])
    assert rows[0].status == ProvisionalUploadStatus.used
    assert rows[0].used_at is not None

    again = client.post("/api/v1/uploads/attach", json={"fileUrls": [file_url]})
    assert again.json()["alreadyUsed"] == 1


def test_attach_requires_urls(upload_app: Dict[str, object]) -> None:
    client: TestClient = upload_app["client"]  # type: ignore[assignment]
    res = client.post("/api/v1/uploads/attach", json={"fileUrls": []})
    assert res.status_code == 422
    assert res.json()["code"] == "validation_error"
