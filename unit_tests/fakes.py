"""In-memory doubles for the vector index, embedding provider and metadata store."""

import hashlib
import math
from typing import Any, Optional, Sequence

from qdrant_client.models import FieldCondition, Filter, HasIdCondition, MatchAny, MatchValue

from db.qdrant import IndexedPoint, PointInput, RecommendSpec
from implementation.classes.errors import RemoteServiceError
from implementation.classes.schemas import FavoriteRecord, SearchHit
from implementation.llms.embeddings import _clean_text

TEST_DIM = 8
MOVIE_COLLECTION = "movie-embeddings"
CONCEPT_COLLECTION = "concept-vectors"


# ===============================
#        FAKE EMBEDDINGS
# ===============================

def deterministic_vector(text: str, dim: int = TEST_DIM) -> list[float]:
    """Stable pseudo-embedding derived from a hash of the text."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(digest[i] - 127.5) / 127.5 for i in range(dim)]


class FakeEmbeddingProvider:
    """Deterministic stand-in for EmbeddingProvider that records every call."""

    def __init__(self, dimensions: int = TEST_DIM):
        self.dimensions = dimensions
        self.model = "fake-embedding"
        self.embed_calls: list[str] = []
        self.batch_calls: list[list[str]] = []

    async def embed(self, text: str) -> list[float]:
        cleaned = _clean_text(text)
        self.embed_calls.append(cleaned)
        return deterministic_vector(cleaned, self.dimensions)

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        cleaned = [_clean_text(t) for t in texts]
        self.batch_calls.append(cleaned)
        return [deterministic_vector(t, self.dimensions) for t in cleaned]


# ===============================
#       FAKE VECTOR INDEX
# ===============================

def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def _condition_matches(cond: Any, point_id: str, payload: dict) -> bool:
    if isinstance(cond, HasIdCondition):
        return point_id in {str(i) for i in cond.has_id}
    if isinstance(cond, FieldCondition):
        value = payload.get(cond.key)
        if isinstance(cond.match, MatchAny):
            return value in cond.match.any
        if isinstance(cond.match, MatchValue):
            return value == cond.match.value
    raise AssertionError(f"Unsupported condition in fake index: {cond!r}")


def filter_matches(flt: Optional[Filter], point_id: str, payload: dict) -> bool:
    if flt is None:
        return True
    for cond in flt.must or []:
        if not _condition_matches(cond, point_id, payload):
            return False
    for cond in flt.must_not or []:
        if _condition_matches(cond, point_id, payload):
            return False
    return True


class FakeVectorIndex:
    """
    In-memory VectorIndexClient double.

    Implements the same coroutine signatures the core calls, with real
    cosine scoring and real evaluation of the Filter objects the core builds.
    """

    def __init__(self):
        self.collections: dict[str, dict[str, tuple[list[float], dict]]] = {}
        self.calls: list[tuple[str, dict]] = []
        self.sample_order: Optional[list[str]] = None
        self.fail_batch = False

    def _record(self, name: str, **kwargs) -> None:
        self.calls.append((name, kwargs))

    def calls_named(self, name: str) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def add_point(self, collection: str, point_id: str, vector: list[float], payload: dict) -> None:
        self.collections.setdefault(collection, {})[point_id] = (list(vector), dict(payload))

    async def collection_exists(self, collection: str) -> bool:
        return collection in self.collections

    async def create_collection(self, collection: str, dimensions: int, distance=None) -> None:
        self._record("create_collection", collection=collection, dimensions=dimensions)
        self.collections[collection] = {}

    async def delete_collection(self, collection: str) -> bool:
        self._record("delete_collection", collection=collection)
        return self.collections.pop(collection, None) is not None

    async def upsert(self, collection: str, points: Sequence[PointInput]) -> None:
        self._record("upsert", collection=collection, points=list(points))
        for p in points:
            self.add_point(collection, p.point_id, p.vector, p.payload)

    async def delete(self, collection: str, point_ids: Sequence[str]) -> None:
        self._record("delete", collection=collection, point_ids=list(point_ids))
        for pid in point_ids:
            self.collections.get(collection, {}).pop(pid, None)

    async def retrieve(self, collection: str, point_ids: Sequence[str], with_vectors: bool = False):
        points = self.collections.get(collection, {})
        return [
            IndexedPoint(pid, dict(points[pid][1]), list(points[pid][0]) if with_vectors else None)
            for pid in point_ids
            if pid in points
        ]

    async def scroll_all(self, collection: str, query_filter=None, page_size: int = 100, with_vectors: bool = False):
        return [
            IndexedPoint(pid, dict(payload), list(vector) if with_vectors else None)
            for pid, (vector, payload) in self.collections.get(collection, {}).items()
            if filter_matches(query_filter, pid, payload)
        ]

    def _rank(self, collection: str, target: Sequence[float], limit: int, query_filter) -> list[SearchHit]:
        hits = [
            SearchHit(
                point_id=pid,
                score=_cosine(target, vector),
                movie_id=payload.get("movieId"),
                payload=dict(payload),
            )
            for pid, (vector, payload) in self.collections.get(collection, {}).items()
            if filter_matches(query_filter, pid, payload)
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    async def search(self, collection: str, vector, limit: int, query_filter=None, with_vectors: bool = False):
        self._record("search", collection=collection, vector=list(vector), limit=limit, query_filter=query_filter)
        return self._rank(collection, vector, limit, query_filter)

    def _centroid(self, collection: str, positive: Sequence[str], negative: Sequence[str]) -> list[float]:
        points = self.collections.get(collection, {})
        dim = len(next(iter(points.values()))[0])
        target = [0.0] * dim
        for pid in positive:
            target = [t + v for t, v in zip(target, points[pid][0])]
        for pid in negative:
            target = [t - v for t, v in zip(target, points[pid][0])]
        return target

    async def recommend(self, collection: str, positive, negative=(), limit: int = 10, query_filter=None, with_vectors: bool = False):
        self._record(
            "recommend",
            collection=collection,
            positive=list(positive),
            negative=list(negative),
            limit=limit,
            query_filter=query_filter,
        )
        return self._rank(collection, self._centroid(collection, positive, negative), limit, query_filter)

    async def recommend_batch(self, collection: str, specs: Sequence[RecommendSpec]):
        self._record("recommend_batch", collection=collection, specs=list(specs))
        if self.fail_batch:
            raise RemoteServiceError("batch failed", operation="recommend_batch", collection=collection)
        return [
            self._rank(collection, self._centroid(collection, s.positive, s.negative), s.limit, s.query_filter)
            for s in specs
        ]

    async def query_batch_by_points(self, collection: str, point_ids, query_filter, limit: int):
        self._record("query_batch_by_points", collection=collection, point_ids=list(point_ids))
        points = self.collections.get(collection, {})
        return [self._rank(collection, points[pid][0], limit, query_filter) for pid in point_ids]

    async def sample(self, collection: str, limit: int, query_filter=None):
        self._record("sample", collection=collection, limit=limit, query_filter=query_filter)
        points = self.collections.get(collection, {})
        order = self.sample_order or list(points)
        matched = [
            IndexedPoint(pid, dict(points[pid][1]))
            for pid in order
            if pid in points and filter_matches(query_filter, pid, points[pid][1])
        ]
        return matched[:limit]


# ===============================
#      FAKE METADATA STORE
# ===============================

class InMemoryMetadataStore:
    """MetadataStore double that returns records in reverse request order."""

    def __init__(self, movies: Optional[list[dict]] = None, favorite_ids: Optional[list[str]] = None):
        self.movies: dict[str, dict] = {str(m["id"]): dict(m) for m in movies or []}
        self.favorite_ids: list[str] = list(favorite_ids or [])
        self.find_by_ids_calls: list[list[str]] = []

    async def find_by_ids(self, movie_ids: Sequence[str]) -> list[dict]:
        self.find_by_ids_calls.append(list(movie_ids))
        found = [dict(self.movies[m]) for m in movie_ids if m in self.movies]
        return list(reversed(found))

    async def find_by_id(self, movie_id: str) -> Optional[dict]:
        movie = self.movies.get(str(movie_id))
        return dict(movie) if movie else None

    async def find_favorites(self) -> list[FavoriteRecord]:
        return [FavoriteRecord(movie_id=m) for m in self.favorite_ids]

    async def find_favorite_movies(self) -> list[dict]:
        return [dict(self.movies[m]) for m in self.favorite_ids if m in self.movies]


