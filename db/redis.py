"""
Redis async connection pool and query-embedding cache.

Uses redis.asyncio with an explicit ConnectionPool. decode_responses is False
because the embedding cache stores raw packed float32 bytes, not strings.
"""

import hashlib
import logging
import os
from typing import Optional

import numpy as np
import redis.asyncio as aioredis
from redis.asyncio.connection import ConnectionPool

logger = logging.getLogger(__name__)

_redis_pool: ConnectionPool | None = None
_redis_client: aioredis.Redis | None = None

ENV_PREFIX: str = os.getenv("REDIS_ENV", "unknown_env")

# Query embeddings are deterministic for a given model, so a long TTL is fine.
_EMBEDDING_TTL_SECONDS = int(os.getenv("EMBEDDING_CACHE_TTL_SECONDS", str(7 * 24 * 3600)))


def get_redis_client() -> aioredis.Redis:
    """Return the shared async Redis client backed by a connection pool."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() at startup.")
    return _redis_client


def redis_key(*parts: str) -> str:
    """Build an environment-prefixed Redis key from one or more parts."""
    return f"{ENV_PREFIX}:{':'.join(parts)}"


async def init_redis(
    host: str = os.getenv("REDIS_HOST", "redis"),
    port: int = int(os.getenv("REDIS_PORT", "6379")),
    max_connections: int = 10,
) -> aioredis.Redis:
    """Call once at application startup (e.g. FastAPI lifespan)."""
    global _redis_pool, _redis_client
    _redis_pool = ConnectionPool(
        host=host,
        port=port,
        max_connections=max_connections,
        decode_responses=False,  # embedding cache values are raw bytes
    )
    _redis_client = aioredis.Redis(connection_pool=_redis_pool)
    await _redis_client.ping()  # Fail fast if Redis is unreachable at startup
    return _redis_client


async def close_redis() -> None:
    """Call at application shutdown."""
    global _redis_pool, _redis_client
    if _redis_client:
        await _redis_client.aclose()
    if _redis_pool:
        await _redis_pool.aclose()
    _redis_client = None
    _redis_pool = None


async def check_redis() -> str:
    """Ping Redis and return 'ok' or an error message string."""
    try:
        client = get_redis_client()
        await client.ping()
        return "ok"
    except Exception as e:
        return str(e)


# ---------------------------------------------------------------------------
# Query embedding cache
# ---------------------------------------------------------------------------

def pack_embedding(vector: list[float]) -> bytes:
    """Serialize an embedding as little-endian float32 bytes."""
    return np.asarray(vector, dtype="<f4").tobytes()


def unpack_embedding(raw: bytes) -> list[float]:
    return np.frombuffer(raw, dtype="<f4").astype(float).tolist()


class EmbeddingCache:
    """
    Read-through cache for freeform query embeddings.

    Keys hash the model name together with the exact (stripped) text so a
    model change never serves stale vectors. Cache failures are logged and
    treated as misses; the provider is always the source of truth.
    """

    def __init__(self, client: aioredis.Redis, ttl_seconds: int = _EMBEDDING_TTL_SECONDS):
        self._client = client
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def key_for(model: str, text: str) -> str:
        digest = hashlib.sha256(f"{model}\x00{text}".encode("utf-8")).hexdigest()
        return redis_key("embedding", model, digest)

    async def get(self, model: str, text: str) -> Optional[list[float]]:
        try:
            raw: Optional[bytes] = await self._client.get(self.key_for(model, text))
        except aioredis.RedisError as e:
            logger.warning("Embedding cache read failed: %s", e)
            return None
        if raw is None:
            return None
        return unpack_embedding(raw)

    async def set(self, model: str, text: str, vector: list[float]) -> None:
        try:
            await self._client.set(
                self.key_for(model, text),
                pack_embedding(vector),
                ex=self._ttl_seconds,
            )
        except aioredis.RedisError as e:
            logger.warning("Embedding cache write failed: %s", e)
