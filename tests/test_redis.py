from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from rolloutagent.services.redis import KEY_PREFIX, RedisStore, get_redis_store


@pytest.fixture
def mock_redis() -> MagicMock:
    """Mock Redis client with async methods."""
    m = MagicMock()
    m.get = AsyncMock(return_value=None)
    m.set = AsyncMock(return_value=True)
    m.setex = AsyncMock(return_value=True)
    m.delete = AsyncMock(return_value=1)
    m.ping = AsyncMock(return_value=True)
    m.aclose = AsyncMock(return_value=None)
    return m


@pytest.fixture
def store(mock_redis: MagicMock) -> RedisStore:
    s = RedisStore("redis://localhost:6379/0")
    s._client = mock_redis
    return s


@pytest.mark.asyncio
async def test_connect_pings(mock_redis: MagicMock) -> None:
    with patch("rolloutagent.services.redis.Redis") as redis_cls:
        redis_cls.from_url.return_value = mock_redis
        s = RedisStore("redis://localhost:6379/0")
        await s.connect()
        await s.connect()
    redis_cls.from_url.assert_called_once_with("redis://localhost:6379/0", decode_responses=True)
    mock_redis.ping.assert_awaited_once()
    assert s.connected


@pytest.mark.asyncio
async def test_connect_failure_resets_client(mock_redis: MagicMock) -> None:
    mock_redis.ping.side_effect = RedisConnectionError("refused")
    with patch("rolloutagent.services.redis.Redis") as redis_cls:
        redis_cls.from_url.return_value = mock_redis
        s = RedisStore("redis://localhost:6379/0")
        with pytest.raises(RedisConnectionError):
            await s.connect()
    assert not s.connected
    mock_redis.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_keys_are_prefixed(store: RedisStore, mock_redis: MagicMock) -> None:
    mock_redis.get.return_value = "stored"
    assert await store.get("k") == "stored"
    mock_redis.get.assert_awaited_once_with(f"{KEY_PREFIX}k")


@pytest.mark.asyncio
async def test_set_without_ttl(store: RedisStore, mock_redis: MagicMock) -> None:
    assert await store.set("k", "v") is True
    mock_redis.set.assert_awaited_once_with(f"{KEY_PREFIX}k", "v")
    mock_redis.setex.assert_not_called()


@pytest.mark.asyncio
async def test_set_with_ttl(store: RedisStore, mock_redis: MagicMock) -> None:
    assert await store.set("k", "v", ttl_seconds=60) is True
    mock_redis.setex.assert_awaited_once_with(f"{KEY_PREFIX}k", 60, "v")
    mock_redis.set.assert_not_called()


@pytest.mark.asyncio
async def test_json_round_trip(store: RedisStore, mock_redis: MagicMock) -> None:
    assert await store.set_json("doc", {"a": [1, 2]}, ttl_seconds=10) is True
    payload = mock_redis.setex.call_args[0][2]
    mock_redis.get.return_value = payload
    assert await store.get_json("doc") == {"a": [1, 2]}


@pytest.mark.asyncio
async def test_get_json_invalid(store: RedisStore, mock_redis: MagicMock) -> None:
    mock_redis.get.return_value = "not json"
    assert await store.get_json("doc") is None


@pytest.mark.asyncio
async def test_set_json_unserializable(store: RedisStore, mock_redis: MagicMock) -> None:
    assert await store.set_json("doc", {"x": object()}) is False
    mock_redis.set.assert_not_called()


@pytest.mark.asyncio
async def test_errors_degrade_to_none_and_false(store: RedisStore, mock_redis: MagicMock) -> None:
    mock_redis.get.side_effect = RedisConnectionError("down")
    mock_redis.setex.side_effect = RedisConnectionError("down")
    mock_redis.delete.side_effect = RedisConnectionError("down")
    assert await store.get("k") is None
    assert await store.set("k", "v", ttl_seconds=5) is False
    assert await store.delete("k") is False


@pytest.mark.asyncio
async def test_not_connected() -> None:
    s = RedisStore("redis://localhost:6379/0")
    assert await s.get("any") is None
    assert await s.set("any", "v") is False
    assert await s.delete("any") is False


def test_get_redis_store_without_url() -> None:
    with patch("rolloutagent.services.redis.get_settings") as get_settings:
        get_settings.return_value = MagicMock(redis_url=None)
        assert get_redis_store() is None
        get_settings.return_value = MagicMock(redis_url="  ")
        assert get_redis_store() is None


def test_get_redis_store_with_url() -> None:
    with patch("rolloutagent.services.redis.get_settings") as get_settings:
        get_settings.return_value = MagicMock(redis_url="redis://localhost:6379/0")
        assert isinstance(get_redis_store(), RedisStore)
