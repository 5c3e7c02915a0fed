"""Unit tests for db.redis."""

from unittest.mock import AsyncMock

import pytest

pytest.importorskip("redis")

import redis.asyncio as aioredis

from db import redis as redis_module
from db.redis import EmbeddingCache, pack_embedding, redis_key, unpack_embedding


def test_pack_embedding_is_float32_little_endian() -> None:
    raw = pack_embedding([1.0, -0.5, 0.25])
    assert len(raw) == 12
    assert unpack_embedding(raw) == [1.0, -0.5, 0.25]


def test_redis_key_uses_env_prefix(mocker) -> None:
    mocker.patch.object(redis_module, "ENV_PREFIX", "test")
    assert redis_key("embedding", "m", "abc") == "test:embedding:m:abc"


def test_key_for_depends_on_model_and_text() -> None:
    a = EmbeddingCache.key_for("model-a", "hello")
    assert a == EmbeddingCache.key_for("model-a", "hello")
    assert a != EmbeddingCache.key_for("model-b", "hello")
    assert a != EmbeddingCache.key_for("model-a", "hello!")


@pytest.mark.asyncio
async def test_get_returns_unpacked_vector() -> None:
    client = AsyncMock()
    client.get.return_value = pack_embedding([0.5, 1.5])
    cache = EmbeddingCache(client)
    assert await cache.get("m", "hello") == [0.5, 1.5]
    client.get.assert_awaited_once_with(EmbeddingCache.key_for("m", "hello"))


@pytest.mark.asyncio
async def test_get_miss_returns_none() -> None:
    client = AsyncMock()
    client.get.return_value = None
    assert await EmbeddingCache(client).get("m", "hello") is None


@pytest.mark.asyncio
async def test_set_writes_with_ttl() -> None:
    client = AsyncMock()
    await EmbeddingCache(client, ttl_seconds=60).set("m", "hello", [1.0])
    args, kwargs = client.set.await_args
    assert args == (EmbeddingCache.key_for("m", "hello"), pack_embedding([1.0]))
    assert kwargs == {"ex": 60}


@pytest.mark.asyncio
async def test_redis_errors_are_treated_as_misses() -> None:
    client = AsyncMock()
    client.get.side_effect = aioredis.RedisError("down")
    client.set.side_effect = aioredis.RedisError("down")
    cache = EmbeddingCache(client)
    assert await cache.get("m", "hello") is None
    await cache.set("m", "hello", [1.0])


@pytest.mark.asyncio
async def test_check_redis_without_init_reports_error(mocker) -> None:
    mocker.patch.object(redis_module, "_redis_client", None)
    assert "not initialized" in await redis_module.check_redis()


@pytest.mark.asyncio
async def test_check_redis_ok(mocker) -> None:
    client = AsyncMock()
    mocker.patch.object(redis_module, "_redis_client", client)
    assert await redis_module.check_redis() == "ok"
    client.ping.assert_awaited_once()
