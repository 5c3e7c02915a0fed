"""
Environment-driven configuration for the discovery service.

All values are read from the process environment (a local .env file is
loaded first). `load_settings()` validates everything once so that a bad
deployment fails at startup instead of on the first request.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from implementation.classes.errors import ConfigurationError

load_dotenv()


# text-embedding-3-small produces 1536-dimensional vectors
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_EMBEDDING_DIMENSIONS = 1536

DEFAULT_MOVIE_COLLECTION = "movie-embeddings"
DEFAULT_CONCEPT_COLLECTION = "concept-vectors"

# Damping applied to every concept vector before it is summed into a target.
# Override via CONCEPT_SCALE_FACTOR.
DEFAULT_CONCEPT_SCALE_FACTOR = 0.3


@dataclass(frozen=True, slots=True)
class Settings:
    openai_api_key: Optional[str]
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS
    embedding_batch_size: int = 100
    embedding_max_concurrency: int = 4
    qdrant_url: Optional[str] = None
    qdrant_host: str = "localhost"
    qdrant_port: int = 6333
    qdrant_api_key: Optional[str] = None
    qdrant_timeout: int = 10
    movie_collection: str = DEFAULT_MOVIE_COLLECTION
    concept_collection: str = DEFAULT_CONCEPT_COLLECTION
    concept_scale_factor: float = DEFAULT_CONCEPT_SCALE_FACTOR
    default_result_limit: int = 10
    max_result_limit: int = 100
    random_sample_min_rating: float = 6.0

    @property
    def qdrant_base_url(self) -> str:
        """REST base URL used for snapshot transfers."""
        if self.qdrant_url:
            return self.qdrant_url.rstrip("/")
        return f"http://{self.qdrant_host}:{self.qdrant_port}"

    def require_openai_key(self) -> str:
        if not self.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY environment variable is not set")
        return self.openai_api_key


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def load_settings() -> Settings:
    """
    Build a validated Settings object from environment variables.

    The OpenAI key is allowed to be absent here so that index-only tooling
    can run; the embedding provider calls `require_openai_key()` on
    construction.

    Raises:
        ConfigurationError: If a numeric variable is malformed or the concept
            scale factor falls outside (0, 1).
    """
    scale_factor = _env_float("CONCEPT_SCALE_FACTOR", DEFAULT_CONCEPT_SCALE_FACTOR)
    if not 0.0 < scale_factor < 1.0:
        raise ConfigurationError(
            f"CONCEPT_SCALE_FACTOR must be in (0, 1), got {scale_factor}"
        )

    return Settings(
        openai_api_key=os.getenv("OPENAI_API_KEY") or os.getenv("OPEN_AI_API_KEY"),
        embedding_model=os.getenv("EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
        embedding_dimensions=_env_int("EMBEDDING_DIMENSIONS", DEFAULT_EMBEDDING_DIMENSIONS),
        embedding_batch_size=_env_int("EMBEDDING_BATCH_SIZE", 100),
        embedding_max_concurrency=_env_int("EMBEDDING_MAX_CONCURRENCY", 4),
        qdrant_url=os.getenv("QDRANT_URL") or None,
        qdrant_host=os.getenv("QDRANT_HOST", "localhost"),
        qdrant_port=_env_int("QDRANT_PORT", 6333),
        qdrant_api_key=os.getenv("QDRANT_API_KEY") or None,
        qdrant_timeout=_env_int("QDRANT_TIMEOUT", 10),
        movie_collection=os.getenv("QDRANT_MOVIE_COLLECTION", DEFAULT_MOVIE_COLLECTION),
        concept_collection=os.getenv("QDRANT_CONCEPT_COLLECTION", DEFAULT_CONCEPT_COLLECTION),
        concept_scale_factor=scale_factor,
        default_result_limit=_env_int("DEFAULT_RESULT_LIMIT", 10),
        max_result_limit=_env_int("MAX_RESULT_LIMIT", 100),
        random_sample_min_rating=_env_float("RANDOM_SAMPLE_MIN_RATING", 6.0),
    )
