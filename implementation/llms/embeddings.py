"""
OpenAI embedding adapter.

Converts free text into fixed-length float vectors. The single-text form is
used for queries; the batch form is used whenever more than one text needs
embedding (concept bootstrap, favorites, re-embedding) so the number of
external calls stays bounded.
"""

import asyncio
import logging
from typing import Optional, Sequence

from openai import AsyncOpenAI, OpenAIError

from db.redis import EmbeddingCache
from implementation.classes.errors import (
    ConfigurationError,
    InvalidInputError,
    RemoteServiceError,
)
from implementation.settings import Settings

logger = logging.getLogger(__name__)


def _clean_text(text: str) -> str:
    if not isinstance(text, str) or not text.strip():
        raise InvalidInputError("Text to embed must be a non-empty string")
    return text.strip()


class EmbeddingProvider:
    """
    Wraps `AsyncOpenAI.embeddings.create`.

    Every vector returned is checked against `dimensions`; a provider that
    answers with a different size means the deployment is misconfigured
    (wrong model for the existing collections) and is never truncated.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        dimensions: int,
        batch_size: int = 100,
        max_concurrency: int = 4,
        cache: Optional[EmbeddingCache] = None,
    ):
        if batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {batch_size}")
        self._client = client
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_concurrency = max(1, max_concurrency)
        self._cache = cache

    async def embed(self, text: str) -> list[float]:
        """
        Embed a single text.

        Raises:
            InvalidInputError: If the text is empty after trimming.
            RemoteServiceError: If the provider call fails.
            ConfigurationError: If the provider returns the wrong dimensionality.
        """
        cleaned = _clean_text(text)

        if self._cache is not None:
            cached = await self._cache.get(self.model, cleaned)
            if cached is not None and len(cached) == self.dimensions:
                return cached

        vector = (await self._create([cleaned]))[0]

        if self._cache is not None:
            await self._cache.set(self.model, cleaned, vector)
        return vector

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed many texts, preserving input order.

        Texts are split into chunks of `batch_size`; chunks run concurrently
        with at most `max_concurrency` requests in flight.
        """
        cleaned = [_clean_text(text) for text in texts]
        if not cleaned:
            return []

        chunks = [
            cleaned[start : start + self.batch_size]
            for start in range(0, len(cleaned), self.batch_size)
        ]
        sem = asyncio.Semaphore(self.max_concurrency)

        async def _run(chunk: list[str]) -> list[list[float]]:
            async with sem:
                return await self._create(chunk)

        results = await asyncio.gather(*(_run(chunk) for chunk in chunks))
        return [vector for chunk_vectors in results for vector in chunk_vectors]

    async def _create(self, inputs: list[str]) -> list[list[float]]:
        try:
            response = await self._client.embeddings.create(
                model=self.model,
                input=inputs,
                encoding_format="float",
            )
        except OpenAIError as e:
            logger.error(
                "Embedding request failed (model=%s, inputs=%d): %s",
                self.model, len(inputs), e,
            )
            raise RemoteServiceError(
                "Embedding provider request failed",
                operation="embed",
                details=str(e),
            ) from e

        # The API tags each item with its input index; don't rely on list order.
        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(inputs):
            raise RemoteServiceError(
                f"Embedding provider returned {len(data)} vectors for {len(inputs)} inputs",
                operation="embed",
            )

        vectors = [list(item.embedding) for item in data]
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise ConfigurationError(
                    f"Embedding model {self.model} returned {len(vector)} dimensions, "
                    f"expected {self.dimensions}"
                )
        return vectors


def create_embedding_provider(
    settings: Settings,
    cache: Optional[EmbeddingCache] = None,
    client: Optional[AsyncOpenAI] = None,
) -> EmbeddingProvider:
    """Build the provider from settings, failing fast when the API key is missing."""
    if client is None:
        client = AsyncOpenAI(api_key=settings.require_openai_key())
    return EmbeddingProvider(
        client=client,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        batch_size=settings.embedding_batch_size,
        max_concurrency=settings.embedding_max_concurrency,
        cache=cache,
    )
