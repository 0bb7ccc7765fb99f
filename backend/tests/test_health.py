import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from mediaflow.core import metrics
from mediaflow.db.base import Base
from mediaflow.db.session import get_session
from mediaflow.main import app


@pytest.fixture
def client() -> TestClient:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    test_client = TestClient(app)
    yield test_client
    test_client.close()
    app.dependency_overrides.clear()


def test_healthcheck(client: TestClient) -> None:
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_readiness(client: TestClient) -> None:
    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready", "database": "ok", "redis": "disabled"}


def test_readiness_reports_unreachable_redis(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    from mediaflow.api.v1 import routes

    async def failing_ping() -> bool:
        return False

    monkeypatch.setattr(routes, "redis_ping", failing_ping)

    response = client.get("/api/v1/health/ready")

    assert response.status_code == 503
    assert response.json() == {"status": "not_ready", "database": "ok", "redis": "error"}


def test_request_id_header(client: TestClient) -> None:
    response = client.get("/api/v1/health")
    assert response.headers.get("X-Request-ID")


def test_incoming_request_id_is_echoed(client: TestClient) -> None:
    response = client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_metrics_snapshot(client: TestClient) -> None:
    metrics.record_upload_rejected("too_large")
    metrics.record_cleanup(marked=2, deleted=1, pruned=0)

    body = client.get("/api/v1/metrics").json()

    assert body["uploads_rejected"] == 1
    assert body["uploads_rejected_too_large"] == 1
    assert body["orphans_marked"] == 2
    assert "used_records_pruned" not in body
