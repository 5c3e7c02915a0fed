"""Unit tests for db.ingest_movie methods."""

from unittest.mock import AsyncMock

import pytest

from db import ingest_movie
from db.ingest_movie import build_movie_embedding_text, movie_point_id, reembed_all_movies
from implementation.classes.errors import RemoteServiceError
from unit_tests.fakes import MOVIE_COLLECTION, TEST_DIM, FakeEmbeddingProvider, FakeVectorIndex


def _movies(n: int) -> list[dict]:
    return [
        {"id": str(i), "title": f"Movie {i}", "overview": f"Plot {i}", "genres": ["Drama"], "vote_average": 7.5}
        for i in range(1, n + 1)
    ]


# ===============================
#          TEXT BUILDER
# ===============================

def test_build_movie_embedding_text_joins_parts() -> None:
    movie = {
        "title": "Spirited Away",
        "original_title": "Sen to Chihiro no Kamikakushi",
        "overview": "A girl wanders into a world of spirits",
        "genres": ["Animation", "Fantasy"],
    }
    assert build_movie_embedding_text(movie) == (
        "Spirited Away. Sen to Chihiro no Kamikakushi. "
        "A girl wanders into a world of spirits. Genres: Animation, Fantasy"
    )


def test_build_movie_embedding_text_drops_duplicate_original_title() -> None:
    movie = {"title": "Alien", "original_title": "Alien", "overview": None, "genres": []}
    assert build_movie_embedding_text(movie) == "Alien"


def test_build_movie_embedding_text_empty_movie() -> None:
    assert build_movie_embedding_text({}) == ""


def test_payload_carries_filter_fields() -> None:
    payload = ingest_movie._build_qdrant_payload(
        {"id": 42, "title": "Heat", "genres": ["Crime", "Thriller"], "vote_average": 8.3}
    )
    assert payload["movieId"] == "42"
    assert payload["type"] == "movie"
    assert payload["genres"] == "Crime, Thriller"
    assert payload["vote_average"] == 8.3


def test_movie_point_id_is_stable() -> None:
    assert movie_point_id("42") == movie_point_id(42)
    assert movie_point_id("42") != movie_point_id("43")


# ===============================
#        BATCHED REBUILD
# ===============================

@pytest.mark.asyncio
async def test_reembed_batches_embed_and_upsert_calls() -> None:
    """Five movies at batch size 2 means three embed calls and three upserts."""
    index = FakeVectorIndex()
    provider = FakeEmbeddingProvider()

    summary = await reembed_all_movies(_movies(5), index, provider, MOVIE_COLLECTION, batch_size=2)

    assert [len(batch) for batch in provider.batch_calls] == [2, 2, 1]
    assert [len(call["points"]) for call in index.calls_named("upsert")] == [2, 2, 1]
    assert provider.embed_calls == []
    assert summary["total"] == 5
    assert summary["ingested"] == 5
    assert summary["failed"] == 0
    assert summary["qdrant_ids"] == {str(i): movie_point_id(str(i)) for i in range(1, 6)}
    stored = index.collections[MOVIE_COLLECTION]
    assert len(stored[movie_point_id("3")][0]) == TEST_DIM
    assert stored[movie_point_id("3")][1]["movieId"] == "3"


@pytest.mark.asyncio
async def test_reembed_resets_collection_first() -> None:
    index = FakeVectorIndex()
    index.add_point(MOVIE_COLLECTION, "stale", [0.0] * TEST_DIM, {"movieId": "old"})

    await reembed_all_movies(_movies(1), index, FakeEmbeddingProvider(), MOVIE_COLLECTION)

    assert [name for name, _ in index.calls][:2] == ["delete_collection", "create_collection"]
    assert "stale" not in index.collections[MOVIE_COLLECTION]


@pytest.mark.asyncio
async def test_reembed_without_reset_keeps_collection() -> None:
    index = FakeVectorIndex()
    index.add_point(MOVIE_COLLECTION, "kept", [0.0] * TEST_DIM, {"movieId": "old"})
    await reembed_all_movies(_movies(1), index, FakeEmbeddingProvider(), MOVIE_COLLECTION, reset_collection=False)
    assert "kept" in index.collections[MOVIE_COLLECTION]


@pytest.mark.asyncio
async def test_reembed_skips_movies_without_text() -> None:
    movies = _movies(2) + [{"id": "9", "title": "", "overview": "", "genres": []}]
    summary = await reembed_all_movies(movies, FakeVectorIndex(), FakeEmbeddingProvider(), MOVIE_COLLECTION)
    assert summary["ingested"] == 2
    assert summary["failed"] == 1
    assert "9" not in summary["qdrant_ids"]


@pytest.mark.asyncio
async def test_reembed_continues_after_failed_embedding_batch(mocker) -> None:
    provider = FakeEmbeddingProvider()
    real_embed_batch = provider.embed_batch
    failure = RemoteServiceError("down", operation="embed", details="timeout")
    mocker.patch.object(
        provider, "embed_batch", new=AsyncMock(side_effect=[failure, await real_embed_batch(["x"])])
    )

    summary = await reembed_all_movies(_movies(2), FakeVectorIndex(), provider, MOVIE_COLLECTION, batch_size=1)

    assert summary["ingested"] == 1
    assert summary["failed"] == 1
    assert "timeout" in summary["errors"][0]
    assert list(summary["qdrant_ids"]) == ["2"]


@pytest.mark.asyncio
async def test_reembed_counts_failed_upserts() -> None:
    index = FakeVectorIndex()
    index.upsert = AsyncMock(side_effect=RemoteServiceError("down", operation="upsert"))

    summary = await reembed_all_movies(_movies(3), index, FakeEmbeddingProvider(), MOVIE_COLLECTION)

    assert summary["ingested"] == 0
    assert summary["failed"] == 3
    assert summary["qdrant_ids"] == {}
