import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from db.concept_vectors import ConceptVectorStore
from db.ingest_movie import reembed_all_movies
from db.mood_vectors import MoodVectorStore
from db.postgres import PostgresMetadataStore, check_postgres, pool
from db.qdrant import VectorIndexClient, create_vector_index_client
from db.recommendation_engine import RecommendationEngine
from db.redis import EmbeddingCache, check_redis, close_redis, init_redis
from implementation.classes.errors import (
    ConfigurationError,
    InvalidInputError,
    MovieDiscoveryError,
    NotFoundError,
    RemoteServiceError,
)
from implementation.classes.schemas import (
    ConceptWeights,
    FavoriteRequest,
    MoodRequest,
    MoodSwipeRequest,
    PreviewRequest,
    RecommendationRequest,
    SearchRequest,
    SimilarMoviesRequest,
    SnapshotRequest,
)
from implementation.llms.embeddings import create_embedding_provider
from implementation.settings import Settings, load_settings

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan handler for client and connection pool lifecycle management.

    Opens the Postgres pool, connects Redis (optional, used only as the query
    embedding cache), builds the vector index client and embedding provider,
    and wires them into the engine. Everything is closed on shutdown.
    """
    settings = load_settings()

    # Open the pool and establish initial connections
    await pool.open()
    # Validate that connections actually work (fast-fail if Postgres is unreachable)
    await pool.check()

    cache: Optional[EmbeddingCache] = None
    try:
        cache = EmbeddingCache(await init_redis())
    except (aioredis.RedisError, OSError) as e:
        logger.warning("Redis unavailable, query embeddings will not be cached: %s", e)

    index = create_vector_index_client(settings)
    provider = create_embedding_provider(settings, cache=cache)
    concept_store = ConceptVectorStore(
        index, provider, settings.concept_collection, settings.embedding_dimensions
    )
    metadata_store = PostgresMetadataStore()

    app.state.settings = settings
    app.state.index = index
    app.state.provider = provider
    app.state.concept_store = concept_store
    app.state.metadata_store = metadata_store
    app.state.mood_store = MoodVectorStore(
        index, provider, settings.movie_collection, settings.embedding_dimensions
    )
    app.state.engine = RecommendationEngine(
        index, provider, concept_store, metadata_store, settings
    )
    logger.info(
        "Discovery service ready (movies=%s, concepts=%s)",
        settings.movie_collection, settings.concept_collection,
    )
    yield
    # Gracefully close all connections on shutdown
    await index.close()
    await close_redis()
    await pool.close()


app = FastAPI(lifespan=lifespan)


# ===============================
#        ERROR HANDLING
# ===============================

def _status_for(error: MovieDiscoveryError) -> int:
    if isinstance(error, InvalidInputError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, RemoteServiceError):
        return 502
    if isinstance(error, ConfigurationError):
        return 500
    return 500


def _error_body(message: str, details=None) -> dict:
    return {"success": False, "error": message, "details": details}


@app.exception_handler(MovieDiscoveryError)
async def discovery_error_handler(request: Request, exc: MovieDiscoveryError):
    status = _status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content=_error_body(exc.message, exc.details))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    return JSONResponse(status_code=400, content=_error_body("Invalid request", details))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("%s %s failed unexpectedly", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body("Internal server error", str(exc)))


# ===============================
#         DEPENDENCIES
# ===============================

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_engine(request: Request) -> RecommendationEngine:
    return request.app.state.engine


def get_concept_store(request: Request) -> ConceptVectorStore:
    return request.app.state.concept_store


def get_metadata_store(request: Request) -> PostgresMetadataStore:
    return request.app.state.metadata_store


def get_mood_store(request: Request) -> MoodVectorStore:
    return request.app.state.mood_store


def get_index(request: Request) -> VectorIndexClient:
    return request.app.state.index


# ===============================
#       DISCOVERY ENDPOINTS
# ===============================

@app.get("/explore")
async def explore(
    adventure: float = 0.0,
    romance: float = 0.0,
    complexity: float = 0.0,
    emotion: float = 0.0,
    realism: float = 0.0,
    limit: Optional[int] = None,
    excluded: Optional[List[str]] = Query(None),
    engine: RecommendationEngine = Depends(get_engine),
):
    """Browse by concept sliders. All sliders at 0 returns a random selection."""
    weights = ConceptWeights.from_mapping({
        "adventure": adventure,
        "romance": romance,
        "complexity": complexity,
        "emotion": emotion,
        "realism": realism,
    })
    # Accept both ?excluded=a&excluded=b and ?excluded=a,b
    excluded_ids = [part.strip() for raw in (excluded or []) for part in raw.split(",") if part.strip()]
    result = await engine.explore(weights, limit=limit, excluded=excluded_ids)
    return result.to_dict()


@app.post("/search")
async def search(body: SearchRequest, engine: RecommendationEngine = Depends(get_engine)):
    weights = ConceptWeights.from_mapping(body.concept_weights)
    result = await engine.search_text(body.query, limit=body.limit, weights=weights)
    return result.to_dict()


@app.post("/recommendations")
async def recommendations(
    body: SimilarMoviesRequest,
    engine: RecommendationEngine = Depends(get_engine),
):
    result = await engine.similar_to(body.movie_id, limit=body.limit)
    return result.to_dict()


@app.post("/personal-recommendations")
async def personal_recommendations(
    limit: Optional[int] = None,
    engine: RecommendationEngine = Depends(get_engine),
):
    result = await engine.personalize(limit=limit)
    return result.to_dict()


@app.post("/recommend")
async def recommend(body: RecommendationRequest, engine: RecommendationEngine = Depends(get_engine)):
    """Single entry point that picks the mode from the fields present."""
    result = await engine.recommend(body)
    return result.to_dict()


@app.post("/moodswipe")
async def moodswipe(body: MoodSwipeRequest, engine: RecommendationEngine = Depends(get_engine)):
    result = await engine.moodswipe(body)
    return result.to_dict()


@app.post("/moodswipe/previews")
async def moodswipe_previews(
    body: PreviewRequest,
    engine: RecommendationEngine = Depends(get_engine),
):
    previews = await engine.like_dislike_previews(body.movie_ids, limit=body.limit)
    return {"success": True, "previews": previews}


# ===============================
#          FAVORITES
# ===============================

@app.get("/favorites")
async def list_favorites(store: PostgresMetadataStore = Depends(get_metadata_store)):
    movies = await store.find_favorite_movies()
    return {"success": True, "favorites": movies, "totalFound": len(movies)}


@app.post("/favorites")
async def add_favorite(
    body: FavoriteRequest,
    store: PostgresMetadataStore = Depends(get_metadata_store),
):
    record = await store.add_favorite(body.movie_id)
    return {
        "success": True,
        "movieId": record.movie_id,
        "addedAt": record.added_at.isoformat() if record.added_at else None,
    }


@app.delete("/favorites/{movie_id}")
async def remove_favorite(
    movie_id: str,
    store: PostgresMetadataStore = Depends(get_metadata_store),
):
    removed = await store.remove_favorite(movie_id)
    if not removed:
        raise NotFoundError("Movie is not in favorites", details=movie_id)
    return {"success": True, "movieId": movie_id}


# ===============================
#            ADMIN
# ===============================

@app.post("/admin/concept-vectors")
async def bootstrap_concept_vectors(store: ConceptVectorStore = Depends(get_concept_store)):
    """Regenerate every concept vector (full replace)."""
    concepts = await store.bootstrap()
    return {
        "success": True,
        "message": f"Created {len(concepts)} concept vectors",
        "collection": store.collection,
        "concepts": [c.name.value for c in concepts],
        "dimensions": len(concepts[0].vector) if concepts else store.dimensions,
    }


@app.post("/admin/reembed")
async def reembed_movies(
    request: Request,
    store: PostgresMetadataStore = Depends(get_metadata_store),
    index: VectorIndexClient = Depends(get_index),
    settings: Settings = Depends(get_settings),
):
    """Rebuild the movie collection from Postgres and record the new point IDs."""
    movies = await store.list_movies()
    # Movies that fail to re-embed must not keep a point ID from the dropped collection.
    await store.clear_qdrant_ids()
    summary = await reembed_all_movies(
        movies,
        index,
        request.app.state.provider,
        settings.movie_collection,
        batch_size=settings.embedding_batch_size,
    )
    await store.set_qdrant_ids(summary["qdrant_ids"])
    return {
        "success": True,
        "totalMovies": summary["total"],
        "totalProcessed": summary["ingested"],
        "totalErrors": summary["failed"],
        "errors": summary["errors"] or None,
    }


@app.get("/admin/moods")
async def list_moods(moods: MoodVectorStore = Depends(get_mood_store)):
    items = await moods.list_moods()
    return {
        "success": True,
        "moods": [
            {"moodId": m.mood_id, "title": m.title, "description": m.description, "updatedAt": m.updated_at}
            for m in items
        ],
    }


@app.put("/admin/moods/{mood_id}")
async def upsert_mood(
    mood_id: str,
    body: MoodRequest,
    moods: MoodVectorStore = Depends(get_mood_store),
):
    await moods.ensure_collection()
    mood = await moods.upsert_mood(mood_id, body.description, title=body.title)
    return {"success": True, "moodId": mood.mood_id, "pointId": mood.point_id}


@app.delete("/admin/moods/{mood_id}")
async def delete_mood(mood_id: str, moods: MoodVectorStore = Depends(get_mood_store)):
    await moods.delete_mood(mood_id)
    return {"success": True, "moodId": mood_id}


@app.post("/admin/snapshots")
async def create_snapshot(body: SnapshotRequest, index: VectorIndexClient = Depends(get_index)):
    snapshot = await index.create_snapshot(body.collection)
    return {"success": True, "snapshot": snapshot.model_dump()}


@app.get("/admin/snapshots")
async def list_snapshots(collection: str, index: VectorIndexClient = Depends(get_index)):
    snapshots = await index.list_snapshots(collection)
    latest = await index.latest_snapshot(collection) if snapshots else None
    return {
        "success": True,
        "snapshots": [s.model_dump() for s in snapshots],
        "latest": latest.name if latest else None,
    }


@app.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint that validates connectivity to all external services.

    Returns a dictionary with status for each service:
    - postgres: 'ok' or error message (checked via connection pool)
    - redis: 'ok' or error message
    - qdrant: 'ok' or error message
    """
    results = {}
    results["postgres"] = await check_postgres()
    results["qdrant"] = await request.app.state.index.check()
    results["redis"] = await check_redis()
    return results
