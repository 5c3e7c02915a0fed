"""
Movie re-embedding job.

Rebuilds the movie collection from metadata records. The rebuild is a full
replace: the collection is dropped and recreated, so a crash midway leaves a
partial collection that must be rebuilt again rather than repaired.
"""

import logging
from typing import Mapping, Optional, Sequence

from db.qdrant import PointInput, VectorIndexClient, point_id_for
from implementation.classes.enums import PointType
from implementation.classes.errors import RemoteServiceError
from implementation.llms.embeddings import EmbeddingProvider

logger = logging.getLogger(__name__)


# ================================
#       TEXT AND PAYLOAD
# ================================

def build_movie_embedding_text(movie: Mapping) -> str:
    """
    Text embedded for a movie point.

    Title, original title (only when it differs), overview and a
    "Genres: a, b" clause, joined by ". ". Empty parts are dropped.
    """
    title = (movie.get("title") or "").strip()
    original_title = (movie.get("original_title") or "").strip()
    overview = (movie.get("overview") or "").strip()
    genres = ", ".join(g for g in (movie.get("genres") or []) if g)

    parts = [
        title,
        original_title if original_title != title else "",
        overview,
        f"Genres: {genres}" if genres else "",
    ]
    return ". ".join(part for part in parts if part)


def _build_qdrant_payload(movie: Mapping) -> dict:
    """
    Small denormalized payload stored with each movie point.

    `movieId` drives exclusion filters; the rest is for debugging and for the
    rating filter used by random sampling.
    """
    return {
        "movieId": str(movie["id"]),
        "type": PointType.MOVIE.value,
        "title": str(movie.get("title") or ""),
        "overview": str(movie.get("overview") or ""),
        "genres": ", ".join(movie.get("genres") or []),
        "vote_average": movie.get("vote_average"),
        "release_date": movie.get("release_date"),
    }


def movie_point_id(movie_id: str) -> str:
    return point_id_for(PointType.MOVIE, str(movie_id))


# ================================
#        BATCHED REBUILD
# ================================

async def reembed_all_movies(
    movies: Sequence[Mapping],
    index: VectorIndexClient,
    provider: EmbeddingProvider,
    collection: str,
    *,
    batch_size: int = 50,
    reset_collection: bool = True,
) -> dict:
    """
    Embed every movie and upsert it into `collection` in batches.

    For each batch of N movies:
      1. Build the embedding text for every movie (movies with no text are skipped).
      2. Embed all texts with one batched provider call.
      3. Upsert all N points in a single index call.

    A failed batch is counted and logged; later batches still run.

    Returns:
        {"total", "ingested", "failed", "errors", "qdrant_ids"} where
        `qdrant_ids` maps movie_id -> point ID for every stored movie so the
        metadata store can record it.
    """
    if reset_collection:
        await index.delete_collection(collection)
        await index.create_collection(collection, provider.dimensions)
        logger.info("Reset collection %s", collection)

    total = len(movies)
    ingested = 0
    failed = 0
    errors: list[str] = []
    qdrant_ids: dict[str, str] = {}

    logger.info("Re-embedding %d movies into %s", total, collection)

    for batch_start in range(0, total, batch_size):
        batch = movies[batch_start : batch_start + batch_size]

        # Phase 1: texts, skipping movies with nothing to embed
        kept: list[Mapping] = []
        texts: list[str] = []
        for movie in batch:
            movie_id: Optional[str] = str(movie["id"]) if movie.get("id") is not None else None
            text = build_movie_embedding_text(movie)
            if movie_id is None or not text:
                failed += 1
                errors.append(f"Movie {movie.get('title') or movie_id!r} has no ID or text")
                continue
            kept.append(movie)
            texts.append(text)

        if not texts:
            continue

        # Phase 2: one embedding call for the batch
        try:
            vectors = await provider.embed_batch(texts)
        except RemoteServiceError as e:
            logger.error("Embedding failed for batch starting at %d: %s", batch_start, e.message)
            failed += len(kept)
            errors.append(f"Embedding failed for batch starting at {batch_start}: {e.details or e.message}")
            continue

        # Phase 3: single upsert
        points = [
            PointInput(
                point_id=movie_point_id(movie["id"]),
                vector=vector,
                payload=_build_qdrant_payload(movie),
            )
            for movie, vector in zip(kept, vectors)
        ]
        try:
            await index.upsert(collection, points)
        except RemoteServiceError as e:
            failed += len(points)
            errors.append(f"Upsert failed for batch starting at {batch_start}: {e.details or e.message}")
            continue

        ingested += len(points)
        for movie, point in zip(kept, points):
            qdrant_ids[str(movie["id"])] = point.point_id

    logger.info("Re-embedding finished: %d ingested, %d failed of %d", ingested, failed, total)
    return {
        "total": total,
        "ingested": ingested,
        "failed": failed,
        "errors": errors,
        "qdrant_ids": qdrant_ids,
    }
