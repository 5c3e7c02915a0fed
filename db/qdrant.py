"""
qdrant.py: Vector index client.

Thin wrapper around AsyncQdrantClient that owns three things the rest of the
core should never have to think about:

  1. Point identity. Every ID in the core is a string. Qdrant only accepts
     unsigned integers or UUIDs, so `to_backing_id` maps decimal strings to
     integers and passes UUID strings through. New points get deterministic
     UUIDs from `point_id_for(point_type, key)`.
  2. Vector shape. Qdrant can hand back a plain list, a named-vector dict, or
     an object with a nested `values` field. `normalize_vector` collapses all
     of them into one `list[float]`.
  3. Errors. Transport and HTTP failures are logged with the operation and
     collection name and re-raised as RemoteServiceError.

The client is constructed explicitly and injected wherever it is needed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

import httpx
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    HasIdCondition,
    MatchAny,
    MatchValue,
    PointIdsList,
    PointStruct,
    QueryRequest,
    RecommendInput,
    RecommendQuery,
    RecommendStrategy,
    Sample,
    SampleQuery,
    SearchParams,
    SnapshotDescription,
    VectorParams,
)

from implementation.classes.enums import PointType
from implementation.classes.errors import ConfigurationError, RemoteServiceError
from implementation.classes.schemas import SearchHit
from implementation.settings import Settings

logger = logging.getLogger(__name__)

# Payload keys written on every point.
MOVIE_ID_KEY = "movieId"
TYPE_KEY = "type"

# Namespace for deterministic point UUIDs. Never change it: existing points
# would no longer be addressable by their keys.
POINT_ID_NAMESPACE = uuid.UUID("6f1c1f8e-4a7e-4d5b-9a57-3c2f0b8d9e11")

_REMOTE_ERRORS = (UnexpectedResponse, ResponseHandlingException, httpx.HTTPError)


# ===========================================================================
# SECTION 1: IDS AND VECTOR NORMALIZATION
# ===========================================================================

def point_id_for(point_type: PointType, key: str) -> str:
    """Deterministic point ID for a (type, key) pair, e.g. (CONCEPT, "romance")."""
    return str(uuid.uuid5(POINT_ID_NAMESPACE, f"{point_type.value}:{key}"))


def to_backing_id(point_id: str | int) -> int | str:
    """
    Map a canonical string point ID to the form Qdrant accepts.

    Decimal strings become unsigned integers (legacy numeric points); any
    other string must already be a UUID.
    """
    text = str(point_id).strip()
    if text.isdigit():
        return int(text)
    try:
        return str(uuid.UUID(text))
    except ValueError:
        raise ValueError(f"Point ID {point_id!r} is neither an unsigned integer nor a UUID")


def from_backing_id(point_id: int | str | uuid.UUID) -> str:
    return str(point_id)


def normalize_vector(raw: Any, vector_name: Optional[str] = None) -> Optional[list[float]]:
    """
    Collapse any vector representation Qdrant returns into a list of floats.

    Accepted shapes:
      - [0.1, 0.2, ...]
      - {"values": [...]} or an object with a `.values` sequence
      - {"<name>": [...]} named vectors (picks `vector_name`, or the only entry)
    Returns None when the point was fetched without vectors.
    """
    if raw is None:
        return None
    if isinstance(raw, (list, tuple)):
        return [float(x) for x in raw]
    if isinstance(raw, dict):
        if "values" in raw and isinstance(raw["values"], (list, tuple)):
            return [float(x) for x in raw["values"]]
        if vector_name is not None and vector_name in raw:
            return normalize_vector(raw[vector_name])
        if len(raw) == 1:
            return normalize_vector(next(iter(raw.values())))
        raise ConfigurationError(
            f"Point has named vectors {sorted(raw)}; specify which one to use"
        )
    values = getattr(raw, "values", None)
    if isinstance(values, (list, tuple)):
        return [float(x) for x in values]
    raise ConfigurationError(f"Unsupported vector representation: {type(raw).__name__}")


def _movie_id_from_payload(payload: Optional[dict]) -> Optional[str]:
    if not payload:
        return None
    value = payload.get(MOVIE_ID_KEY)
    return str(value) if value is not None and value != "" else None


# ===========================================================================
# SECTION 2: FILTER CONSTRUCTION
# ===========================================================================

def build_filter(
    include_movie_ids: Optional[Iterable[str]] = None,
    exclude_movie_ids: Optional[Iterable[str]] = None,
    exclude_types: Optional[Iterable[PointType]] = None,
    only_type: Optional[PointType] = None,
    exclude_point_ids: Optional[Iterable[str]] = None,
) -> Optional[Filter]:
    """
    Translate inclusion/exclusion lists into a Qdrant Filter.

    Pure function. `must` holds the match-any inclusions, `must_not` holds
    the match-none exclusions. Empty lists are ignored. Returns None when no
    condition is active, which Qdrant reads as "no filtering".

    Excluding point types uses must_not rather than must(type=movie) so
    legacy movie points written without a `type` payload still match.
    """
    must: list[Any] = []
    must_not: list[Any] = []

    if include_movie_ids is not None:
        include = list(dict.fromkeys(str(i) for i in include_movie_ids))
        if include:
            must.append(FieldCondition(key=MOVIE_ID_KEY, match=MatchAny(any=include)))

    if only_type is not None:
        must.append(FieldCondition(key=TYPE_KEY, match=MatchValue(value=only_type.value)))

    if exclude_movie_ids is not None:
        excluded = list(dict.fromkeys(str(i) for i in exclude_movie_ids))
        if excluded:
            must_not.append(FieldCondition(key=MOVIE_ID_KEY, match=MatchAny(any=excluded)))

    if exclude_types is not None:
        excluded_types = list(dict.fromkeys(t.value for t in exclude_types))
        if excluded_types:
            must_not.append(FieldCondition(key=TYPE_KEY, match=MatchAny(any=excluded_types)))

    if exclude_point_ids is not None:
        point_ids = [to_backing_id(p) for p in dict.fromkeys(exclude_point_ids)]
        if point_ids:
            must_not.append(HasIdCondition(has_id=point_ids))

    if not must and not must_not:
        return None
    return Filter(must=must or None, must_not=must_not or None)


def movie_only_filter(
    exclude_movie_ids: Optional[Iterable[str]] = None,
    exclude_point_ids: Optional[Iterable[str]] = None,
) -> Filter:
    """Filter every item query uses: no auxiliary points, no excluded movies."""
    return build_filter(
        exclude_movie_ids=exclude_movie_ids,
        exclude_types=[PointType.MOOD, PointType.CONCEPT],
        exclude_point_ids=exclude_point_ids,
    )


# ===========================================================================
# SECTION 3: DATA MODELS
# ===========================================================================

@dataclass(slots=True)
class IndexedPoint:
    """A stored point as returned by scroll/retrieve (no score)."""
    point_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    vector: Optional[list[float]] = None

    @property
    def movie_id(self) -> Optional[str]:
        return _movie_id_from_payload(self.payload)


@dataclass(frozen=True, slots=True)
class PointInput:
    """A point to upsert, keyed by its canonical string ID."""
    point_id: str
    vector: list[float]
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RecommendSpec:
    """One positive/negative recommend query for `recommend_batch`."""
    positive: Sequence[str]
    negative: Sequence[str] = ()
    query_filter: Optional[Filter] = None
    limit: int = 10


def _to_hit(point: Any, vector_name: Optional[str] = None) -> SearchHit:
    payload = dict(point.payload or {})
    return SearchHit(
        point_id=from_backing_id(point.id),
        score=float(point.score),
        movie_id=_movie_id_from_payload(payload),
        payload=payload,
        vector=normalize_vector(getattr(point, "vector", None), vector_name),
    )


def _to_indexed(record: Any, vector_name: Optional[str] = None) -> IndexedPoint:
    return IndexedPoint(
        point_id=from_backing_id(record.id),
        payload=dict(record.payload or {}),
        vector=normalize_vector(getattr(record, "vector", None), vector_name),
    )


def _sorted_hits(points: Iterable[Any]) -> list[SearchHit]:
    # Callers rely on descending score order; the sort is stable on ties.
    return sorted((_to_hit(p) for p in points), key=lambda h: h.score, reverse=True)


# ===========================================================================
# SECTION 4: CLIENT
# ===========================================================================

class VectorIndexClient:
    """
    Async vector index operations used by the discovery core.

    `search` and `recommend` return hits sorted by descending score. Ties are
    not broken in any guaranteed way.
    """

    def __init__(
        self,
        client: AsyncQdrantClient,
        base_url: str,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        search_params: Optional[SearchParams] = None,
    ):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http_client = http_client
        self._search_params = search_params

    # --- lifecycle -----------------------------------------------------------

    async def close(self) -> None:
        await self._client.close()
        if self._http_client is not None:
            await self._http_client.aclose()

    async def check(self) -> str:
        """Return 'ok' or an error message string (health endpoint)."""
        try:
            await self._client.get_collections()
            return "ok"
        except Exception as e:
            return str(e)

    def _fail(self, operation: str, collection: Optional[str], error: Exception) -> RemoteServiceError:
        logger.error("Qdrant %s failed (collection=%s): %s", operation, collection, error)
        return RemoteServiceError(
            f"Vector index {operation} failed",
            operation=operation,
            collection=collection,
            details=str(error),
        )

    # --- collections ---------------------------------------------------------

    async def collection_exists(self, collection: str) -> bool:
        try:
            return await self._client.collection_exists(collection_name=collection)
        except _REMOTE_ERRORS as e:
            raise self._fail("collection_exists", collection, e) from e

    async def create_collection(
        self,
        collection: str,
        dimensions: int,
        distance: Distance = Distance.COSINE,
    ) -> None:
        try:
            await self._client.create_collection(
                collection_name=collection,
                vectors_config=VectorParams(size=dimensions, distance=distance),
            )
        except _REMOTE_ERRORS as e:
            raise self._fail("create_collection", collection, e) from e

    async def delete_collection(self, collection: str) -> bool:
        """
        Delete a collection. Absence is not an error.

        Returns:
            True if a collection was deleted, False if none existed.
        """
        if not await self.collection_exists(collection):
            return False
        try:
            await self._client.delete_collection(collection_name=collection)
        except UnexpectedResponse as e:
            if e.status_code == 404:
                return False
            raise self._fail("delete_collection", collection, e) from e
        except _REMOTE_ERRORS as e:
            raise self._fail("delete_collection", collection, e) from e
        return True

    async def vector_size(self, collection: str) -> Optional[int]:
        """Configured dimensionality of a single-vector collection."""
        try:
            info = await self._client.get_collection(collection_name=collection)
        except _REMOTE_ERRORS as e:
            raise self._fail("get_collection", collection, e) from e
        vectors = info.config.params.vectors
        if isinstance(vectors, VectorParams):
            return vectors.size
        if isinstance(vectors, dict) and len(vectors) == 1:
            return next(iter(vectors.values())).size
        return None

    async def count(self, collection: str, query_filter: Optional[Filter] = None) -> int:
        try:
            result = await self._client.count(
                collection_name=collection,
                count_filter=query_filter,
                exact=True,
            )
        except _REMOTE_ERRORS as e:
            raise self._fail("count", collection, e) from e
        return result.count

    # --- points --------------------------------------------------------------

    async def upsert(self, collection: str, points: Sequence[PointInput]) -> None:
        if not points:
            return
        structs = [
            PointStruct(id=to_backing_id(p.point_id), vector=p.vector, payload=p.payload)
            for p in points
        ]
        try:
            await self._client.upsert(collection_name=collection, points=structs, wait=True)
        except _REMOTE_ERRORS as e:
            raise self._fail("upsert", collection, e) from e

    async def delete(self, collection: str, point_ids: Sequence[str]) -> None:
        if not point_ids:
            return
        try:
            await self._client.delete(
                collection_name=collection,
                points_selector=PointIdsList(points=[to_backing_id(p) for p in point_ids]),
                wait=True,
            )
        except _REMOTE_ERRORS as e:
            raise self._fail("delete", collection, e) from e

    async def retrieve(
        self,
        collection: str,
        point_ids: Sequence[str],
        with_vectors: bool = False,
    ) -> list[IndexedPoint]:
        if not point_ids:
            return []
        try:
            records = await self._client.retrieve(
                collection_name=collection,
                ids=[to_backing_id(p) for p in point_ids],
                with_payload=True,
                with_vectors=with_vectors,
            )
        except _REMOTE_ERRORS as e:
            raise self._fail("retrieve", collection, e) from e
        return [_to_indexed(r) for r in records]

    async def scroll(
        self,
        collection: str,
        query_filter: Optional[Filter] = None,
        limit: int = 100,
        with_vectors: bool = False,
        offset: Optional[str] = None,
    ) -> tuple[list[IndexedPoint], Optional[str]]:
        """One page of unordered points plus the offset of the next page (or None)."""
        try:
            records, next_offset = await self._client.scroll(
                collection_name=collection,
                scroll_filter=query_filter,
                limit=limit,
                offset=to_backing_id(offset) if offset is not None else None,
                with_payload=True,
                with_vectors=with_vectors,
            )
        except _REMOTE_ERRORS as e:
            raise self._fail("scroll", collection, e) from e
        next_id = from_backing_id(next_offset) if next_offset is not None else None
        return [_to_indexed(r) for r in records], next_id

    async def scroll_all(
        self,
        collection: str,
        query_filter: Optional[Filter] = None,
        page_size: int = 100,
        with_vectors: bool = False,
    ) -> list[IndexedPoint]:
        """Every point matching the filter, following scroll pages to the end."""
        points: list[IndexedPoint] = []
        offset: Optional[str] = None
        while True:
            page, offset = await self.scroll(
                collection,
                query_filter=query_filter,
                limit=page_size,
                with_vectors=with_vectors,
                offset=offset,
            )
            points.extend(page)
            if offset is None:
                return points

    # --- queries -------------------------------------------------------------

    async def search(
        self,
        collection: str,
        vector: Sequence[float],
        limit: int,
        query_filter: Optional[Filter] = None,
        with_vectors: bool = False,
    ) -> list[SearchHit]:
        """k-nearest-neighbour search by the collection's distance (cosine)."""
        try:
            response = await self._client.query_points(
                collection_name=collection,
                query=list(vector),
                query_filter=query_filter,
                limit=limit,
                with_payload=True,
                with_vectors=with_vectors,
                search_params=self._search_params,
            )
        except _REMOTE_ERRORS as e:
            raise self._fail("search", collection, e) from e
        return _sorted_hits(response.points)

    async def recommend(
        self,
        collection: str,
        positive: Sequence[str],
        negative: Sequence[str] = (),
        limit: int = 10,
        query_filter: Optional[Filter] = None,
        with_vectors: bool = False,
    ) -> list[SearchHit]:
        """
        Index-native positive/negative search.

        Qdrant averages the positive and negative examples itself; no
        combined vector is computed client side.
        """
        if not positive and not negative:
            return []
        try:
            response = await self._client.query_points(
                collection_name=collection,
                query=self._recommend_query(positive, negative),
                query_filter=query_filter,
                limit=limit,
                with_payload=True,
                with_vectors=with_vectors,
            )
        except _REMOTE_ERRORS as e:
            raise self._fail("recommend", collection, e) from e
        return _sorted_hits(response.points)

    async def recommend_batch(
        self,
        collection: str,
        specs: Sequence[RecommendSpec],
    ) -> list[list[SearchHit]]:
        """Run many recommend queries in one round trip; results align with `specs`."""
        if not specs:
            return []
        requests = [
            QueryRequest(
                query=self._recommend_query(spec.positive, spec.negative),
                filter=spec.query_filter,
                limit=spec.limit,
                with_payload=True,
            )
            for spec in specs
        ]
        try:
            responses = await self._client.query_batch_points(
                collection_name=collection,
                requests=requests,
            )
        except _REMOTE_ERRORS as e:
            raise self._fail("recommend_batch", collection, e) from e
        return [_sorted_hits(r.points) for r in responses]

    async def query_batch_by_points(
        self,
        collection: str,
        point_ids: Sequence[str],
        query_filter: Optional[Filter],
        limit: int,
    ) -> list[list[SearchHit]]:
        """For each point, its nearest neighbours under `query_filter` (one round trip)."""
        if not point_ids:
            return []
        requests = [
            QueryRequest(
                query=to_backing_id(point_id),
                filter=query_filter,
                limit=limit,
                with_payload=True,
                params=SearchParams(exact=True),
            )
            for point_id in point_ids
        ]
        try:
            responses = await self._client.query_batch_points(
                collection_name=collection,
                requests=requests,
            )
        except _REMOTE_ERRORS as e:
            raise self._fail("query_batch", collection, e) from e
        return [_sorted_hits(r.points) for r in responses]

    async def sample(
        self,
        collection: str,
        limit: int,
        query_filter: Optional[Filter] = None,
    ) -> list[IndexedPoint]:
        """Random sample of points matching the filter (unscored)."""
        try:
            response = await self._client.query_points(
                collection_name=collection,
                query=SampleQuery(sample=Sample.RANDOM),
                query_filter=query_filter,
                limit=limit,
                with_payload=True,
                with_vectors=False,
            )
        except _REMOTE_ERRORS as e:
            raise self._fail("sample", collection, e) from e
        return [_to_indexed(p) for p in response.points]

    @staticmethod
    def _recommend_query(positive: Sequence[str], negative: Sequence[str]) -> RecommendQuery:
        # average_vector needs at least one positive example
        strategy = RecommendStrategy.AVERAGE_VECTOR if positive else RecommendStrategy.BEST_SCORE
        return RecommendQuery(
            recommend=RecommendInput(
                positive=[to_backing_id(p) for p in positive] or None,
                negative=[to_backing_id(n) for n in negative] or None,
                strategy=strategy,
            )
        )

    # --- snapshots -----------------------------------------------------------

    async def create_snapshot(self, collection: str) -> SnapshotDescription:
        try:
            snapshot = await self._client.create_snapshot(collection_name=collection, wait=True)
        except _REMOTE_ERRORS as e:
            raise self._fail("create_snapshot", collection, e) from e
        if snapshot is None:
            raise RemoteServiceError(
                "Vector index returned no snapshot description",
                operation="create_snapshot",
                collection=collection,
            )
        logger.info("Created snapshot %s for %s", snapshot.name, collection)
        return snapshot

    async def list_snapshots(self, collection: str) -> list[SnapshotDescription]:
        try:
            return list(await self._client.list_snapshots(collection_name=collection))
        except _REMOTE_ERRORS as e:
            raise self._fail("list_snapshots", collection, e) from e

    async def latest_snapshot(self, collection: str) -> Optional[SnapshotDescription]:
        """Most recent snapshot by creation time; snapshots without a time sort last."""
        snapshots = await self.list_snapshots(collection)
        if not snapshots:
            return None
        return max(snapshots, key=lambda s: s.creation_time or "")

    def _headers(self) -> dict[str, str]:
        return {"api-key": self._api_key} if self._api_key else {}

    def _http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=120.0)
        return self._http_client

    async def download_snapshot(self, collection: str, snapshot_name: str) -> bytes:
        url = f"{self._base_url}/collections/{collection}/snapshots/{snapshot_name}"
        try:
            response = await self._http().get(url, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise self._fail("download_snapshot", collection, e) from e
        return response.content

    async def upload_snapshot(self, collection: str, data: bytes) -> dict[str, Any]:
        """Restore a collection from snapshot bytes (replaces its contents)."""
        if not data:
            raise ValueError("Snapshot payload is empty")
        url = f"{self._base_url}/collections/{collection}/snapshots/upload"
        try:
            response = await self._http().post(
                url,
                params={"wait": "true"},
                headers=self._headers(),
                files={"snapshot": ("snapshot.tar", data, "application/octet-stream")},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise self._fail("upload_snapshot", collection, e) from e
        return response.json()


def create_vector_index_client(settings: Settings) -> VectorIndexClient:
    """Construct the client from settings. QDRANT_URL wins over host/port."""
    if settings.qdrant_url:
        qdrant = AsyncQdrantClient(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            timeout=settings.qdrant_timeout,
        )
    else:
        qdrant = AsyncQdrantClient(
            host=settings.qdrant_host,
            port=settings.qdrant_port,
            api_key=settings.qdrant_api_key,
            timeout=settings.qdrant_timeout,
        )
    return VectorIndexClient(
        client=qdrant,
        base_url=settings.qdrant_base_url,
        api_key=settings.qdrant_api_key,
    )
