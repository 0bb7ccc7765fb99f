import pytest

from mediaflow.core import redis_client


class PingingRedis:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.closed = False

    async def ping(self) -> bool:
        if self.fail:
            raise ConnectionError("connection refused")
        return True

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.anyio
async def test_ping_is_skipped_without_redis_url() -> None:
    assert redis_client.get_redis() is None
    assert await redis_client.redis_ping() is None


@pytest.mark.anyio
async def test_ping_reports_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(redis_client, "get_redis", lambda: PingingRedis(fail=True))
    assert await redis_client.redis_ping() is False

    monkeypatch.setattr(redis_client, "get_redis", lambda: PingingRedis())
    assert await redis_client.redis_ping() is True


@pytest.mark.anyio
async def test_close_redis_drops_shared_client(monkeypatch: pytest.MonkeyPatch) -> None:
    client = PingingRedis()
    monkeypatch.setattr(redis_client, "_shared", client)

    await redis_client.close_redis()

    assert client.closed
    assert redis_client._shared is None
