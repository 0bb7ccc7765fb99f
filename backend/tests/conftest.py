import os
from collections.abc import AsyncGenerator, Generator
from typing import Any

import pytest

# Tests never talk to Postgres/Redis; leader election falls back to direct execution on sqlite.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = ""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from mediaflow.core import metrics  # noqa: E402
from mediaflow.core.config import Settings  # noqa: E402
from mediaflow.db.base import Base  # noqa: E402
from mediaflow.services import upload_intake  # noqa: E402
from mediaflow.services.object_store import ObjectStore, ObjectStoreError  # noqa: E402


class InMemoryObjectStore(ObjectStore):
    """Keeps objects in a dict; URL policy is inherited from the real adapter."""

    def __init__(self, config: Settings | None = None) -> None:
        super().__init__(config or Settings(s3_bucket_name="test-bucket", cdn_domain="cdn.example.com"), client=object())
        self.objects: dict[str, bytes] = {}
        self.put_calls: list[dict[str, Any]] = []
        self.deleted: list[str] = []
        self.fail_get: set[str] = set()
        self.fail_put_prefixes: set[str] = set()
        self.fail_delete: set[str] = set()

    async def put_object(self, key, body, *, content_type=None, metadata=None, tagging=None, cache_control=None):
        if any(key.startswith(prefix) for prefix in self.fail_put_prefixes):
            raise ObjectStoreError(f"put_object failed for {key}", key=key, code="InternalError")
        self.objects[key] = bytes(body)
        self.put_calls.append(
            {
                "key": key,
                "content_type": content_type,
                "metadata": metadata,
                "tagging": tagging,
                "cache_control": cache_control,
            }
        )

    async def get_object(self, key):
        if key in self.fail_get or key not in self.objects:
            raise ObjectStoreError(f"get_object failed for {key}", key=key, code="NoSuchKey")
        return self.objects[key]

    async def delete_object(self, key):
        if key in self.fail_delete:
            raise ObjectStoreError(f"delete_object failed for {key}", key=key, code="AccessDenied")
        self.objects.pop(key, None)
        self.deleted.append(key)

    async def presigned_put(self, key, *, content_type, expires_in, content_length=None):
        return f"https://test-bucket.s3.amazonaws.com/{key}?X-Amz-Expires={int(expires_in)}&ct={content_type}"


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_process_state() -> Generator[None, None, None]:
    # The limiter map and counters are process-global and would leak across tests.
    upload_intake.upload_rate_limiter.reset()
    metrics.reset()
    yield
    upload_intake.upload_rate_limiter.reset()
    metrics.reset()


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    finally:
        await engine.dispose()

