"""Shared pytest fixtures for unit tests."""

import sys
from pathlib import Path
from typing import Any, Optional, Sequence

import pytest

# Ensure project root is importable when tests run from repository root.
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from db.concept_vectors import ConceptVectorStore
from db.ingest_movie import movie_point_id
from db.recommendation_engine import RecommendationEngine
from implementation.settings import Settings
from unit_tests.fakes import (
    CONCEPT_COLLECTION,
    MOVIE_COLLECTION,
    TEST_DIM,
    FakeEmbeddingProvider,
    FakeVectorIndex,
    InMemoryMetadataStore,
    deterministic_vector,
)

# ===============================
#           FIXTURES
# ===============================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        openai_api_key="test-key",
        embedding_dimensions=TEST_DIM,
        movie_collection=MOVIE_COLLECTION,
        concept_collection=CONCEPT_COLLECTION,
    )


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def index() -> FakeVectorIndex:
    return FakeVectorIndex()


@pytest.fixture
def movie_factory():
    """Return a factory that builds a movie record with optional overrides."""

    def _factory(movie_id: str, **overrides: Any) -> dict:
        data = {
            "id": str(movie_id),
            "title": f"Movie {movie_id}",
            "original_title": None,
            "overview": f"Overview of movie {movie_id}.",
            "genres": ["Drama"],
            "vote_average": 7.0,
            "qdrant_id": movie_point_id(movie_id),
        }
        data.update(overrides)
        return data

    return _factory


@pytest.fixture
def seed_movies(index: FakeVectorIndex, movie_factory):
    """Add movie records to the fake index and return a metadata store holding them."""

    def _seed(
        movie_ids: Sequence[str],
        favorite_ids: Sequence[str] = (),
        vectors: Optional[dict[str, list[float]]] = None,
    ) -> InMemoryMetadataStore:
        movies = []
        for mid in movie_ids:
            movie = movie_factory(mid)
            movies.append(movie)
            vector = (vectors or {}).get(mid) or deterministic_vector(f"movie:{mid}")
            index.add_point(
                MOVIE_COLLECTION,
                movie["qdrant_id"],
                vector,
                {"movieId": mid, "type": "movie", "vote_average": movie["vote_average"]},
            )
        return InMemoryMetadataStore(movies, favorite_ids=list(favorite_ids))

    return _seed


@pytest.fixture
def make_engine(index, provider, settings):
    """Build a RecommendationEngine wired to the fakes."""

    def _make(metadata_store: InMemoryMetadataStore, concept_store: Optional[ConceptVectorStore] = None):
        store = concept_store or ConceptVectorStore(index, provider, CONCEPT_COLLECTION, TEST_DIM)
        return RecommendationEngine(index, provider, store, metadata_store, settings)

    return _make
