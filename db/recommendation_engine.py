"""
recommendation_engine.py: Discovery and recommendation orchestration.

This module owns everything from "I have a caller request" to "here is a
ranked list of movie records with similarity scores."

The flow for every request:
  1. Determine the mode from the fields that are present.
  2. Compose a target vector (or positive/negative point sets) with the
     query composer. Fallback-random and the ID-set path skip the vector.
  3. Query the vector index. Every query excludes auxiliary mood/concept
     points and every movie the caller marked as already seen.
  4. Fetch metadata for the returned movie IDs in one batch and reassemble
     it in index order. Movies the store no longer has are dropped.
  5. Return the list with the resolved mode.

Degraded states (no concept vectors, nothing resolvable, missing metadata)
fall back to a weaker mode or an empty list rather than failing the request.
"""

from __future__ import annotations

import logging
import random
from typing import Iterable, Optional, Sequence

from db.concept_vectors import ConceptVectorStore
from db.metadata_store import MetadataStore
from db.mood_vectors import NEUTRAL_MOOD_ID, mood_point_id
from db.qdrant import (
    RecommendSpec,
    VectorIndexClient,
    build_filter,
    movie_only_filter,
)
from db.query_composer import (
    apply_concept_weights,
    compose_from_concepts,
    compose_from_favorites,
    compose_from_text,
    resolve_swipe_profile,
)
from implementation.classes.enums import PointType, RecommendationMode
from implementation.classes.errors import (
    InvalidInputError,
    NotFoundError,
    RemoteServiceError,
)
from implementation.classes.schemas import (
    ConceptWeights,
    MoodSwipeRequest,
    RankedMovie,
    RecommendationRequest,
    RecommendationResult,
    SearchHit,
    SwipeEvent,
)
from implementation.llms.embeddings import EmbeddingProvider
from implementation.settings import Settings

logger = logging.getLogger(__name__)

# Moods returned per movie when scoring a movie against the mood points.
MOOD_SCORE_LIMIT = 24

# Random sampling over-fetches so the rating filter still leaves enough.
_SAMPLE_OVERFETCH = 3


class RecommendationEngine:
    """
    Stateless per request. All collaborators are injected, so tests can pass
    in-memory doubles for the index, the provider and the metadata store.
    """

    def __init__(
        self,
        index: VectorIndexClient,
        provider: EmbeddingProvider,
        concept_store: ConceptVectorStore,
        metadata_store: MetadataStore,
        settings: Settings,
        neutral_mood_id: str = NEUTRAL_MOOD_ID,
        rng: Optional[random.Random] = None,
    ):
        self._index = index
        self._provider = provider
        self._concepts = concept_store
        self._store = metadata_store
        self._settings = settings
        self._neutral_mood_id = neutral_mood_id
        self._rng = rng or random.Random()

    @property
    def collection(self) -> str:
        return self._settings.movie_collection

    # ===============================
    #          DISPATCH
    # ===============================

    async def recommend(self, request: RecommendationRequest) -> RecommendationResult:
        """
        Pick a mode from the request fields and run it.

        Priority: text, then swipe history, then concept weights, then the
        favorites flag. With none of them present the result is a random
        sample that honours the exclusion list. Text that is present but
        blank is rejected rather than treated as absent.
        """
        if request.text is not None and not request.text.strip():
            raise InvalidInputError("Text query must be a non-empty string")
        if request.text is not None:
            mode = RecommendationMode.TEXT_SEARCH
        elif request.actions:
            mode = RecommendationMode.SWIPE_RECOMMEND
        elif request.concept_weights.has_active():
            mode = RecommendationMode.CONCEPT_SEARCH
        elif request.use_favorites:
            mode = RecommendationMode.PERSONALIZED
        else:
            mode = RecommendationMode.RANDOM_SAMPLE
        logger.info("Resolved recommendation mode %s", mode.value)

        if mode is RecommendationMode.TEXT_SEARCH:
            return await self.search_text(
                request.text,
                limit=request.limit,
                weights=request.concept_weights,
                excluded=request.excluded,
            )
        if mode is RecommendationMode.SWIPE_RECOMMEND:
            return await self.recommend_swipe(
                request.actions, excluded=request.excluded, limit=request.limit
            )
        if mode is RecommendationMode.CONCEPT_SEARCH:
            return await self.explore(
                request.concept_weights, limit=request.limit, excluded=request.excluded
            )
        if mode is RecommendationMode.PERSONALIZED:
            return await self.personalize(limit=request.limit, excluded=request.excluded)
        return await self.random_sample(excluded=request.excluded, limit=request.limit)

    # ===============================
    #            MODES
    # ===============================

    async def explore(
        self,
        weights: ConceptWeights,
        limit: Optional[int] = None,
        excluded: Sequence[str] = (),
    ) -> RecommendationResult:
        """Concept-slider exploration; random sample when no slider is active."""
        limit = self._resolve_limit(limit)
        if not weights.has_active():
            return await self.random_sample(excluded=excluded, limit=limit)

        concept_vectors = await self._concepts.load_all()
        target = compose_from_concepts(
            weights, concept_vectors, self._settings.concept_scale_factor
        )
        if target is None:
            logger.warning("No concept vectors available, falling back to random sample")
            return await self.random_sample(
                excluded=excluded,
                limit=limit,
                message="Concept vectors are not available; showing a random selection",
            )

        hits = await self._index.search(
            self.collection, target, limit, query_filter=movie_only_filter(excluded)
        )
        applied = [
            {"concept": name, "weight": weight}
            for name, weight in weights.active().items()
            if name in concept_vectors
        ]
        return RecommendationResult(
            results=await self._hydrate(hits, excluded),
            mode=RecommendationMode.CONCEPT_SEARCH,
            applied_concepts=applied,
            excluded_count=len(set(excluded)),
            extras={"conceptWeights": weights.as_dict()},
        )

    async def search_text(
        self,
        query: str,
        limit: Optional[int] = None,
        weights: Optional[ConceptWeights] = None,
        excluded: Sequence[str] = (),
    ) -> RecommendationResult:
        """
        Freeform text search, optionally steered by concept sliders.

        Steering adds the damped concept sum to the query embedding; when no
        concept vectors are stored the raw embedding is used.
        """
        if not isinstance(query, str) or not query.strip():
            raise InvalidInputError("Query parameter is required and must be a non-empty string")
        limit = self._resolve_limit(limit)

        vector = await compose_from_text(self._provider, query)

        applied: list[dict] = []
        concepts_enabled = False
        if weights is not None and weights.has_active():
            concept_vectors = await self._concepts.load_all()
            concepts_enabled = bool(concept_vectors)
            if concept_vectors:
                vector = apply_concept_weights(
                    vector, weights, concept_vectors, self._settings.concept_scale_factor
                )
                applied = [
                    {"concept": name, "weight": weight}
                    for name, weight in weights.active().items()
                    if name in concept_vectors
                ]
            else:
                logger.warning("Concept vectors not available, using query vector only")

        hits = await self._index.search(
            self.collection, vector, limit, query_filter=movie_only_filter(excluded)
        )
        results = await self._hydrate(hits, excluded)
        return RecommendationResult(
            results=results,
            mode=RecommendationMode.TEXT_SEARCH,
            applied_concepts=applied,
            excluded_count=len(set(excluded)),
            message=None if results else "No movies found matching your search query",
            extras={"query": query.strip(), "conceptsEnabled": concepts_enabled},
        )

    async def recommend_swipe(
        self,
        events: Sequence[SwipeEvent],
        excluded: Sequence[str] = (),
        limit: Optional[int] = None,
    ) -> RecommendationResult:
        """
        Recommend from a like/dislike history with the index-native recommend query.

        Every swiped movie is excluded from the results, resolvable or not.
        """
        limit = self._resolve_limit(limit)
        point_sets = await resolve_swipe_profile(events, self._store)
        exclusion = list(dict.fromkeys([*excluded, *point_sets.movie_ids]))

        if point_sets.is_empty:
            logger.warning("No swiped movie resolved to an index point, falling back to random sample")
            return await self.random_sample(
                excluded=exclusion,
                limit=limit,
                message="None of the swiped movies could be resolved; showing a random selection",
            )

        hits = await self._index.recommend(
            self.collection,
            positive=point_sets.positive,
            negative=point_sets.negative,
            limit=limit,
            query_filter=movie_only_filter(exclusion),
        )
        return RecommendationResult(
            results=await self._hydrate(hits, exclusion),
            mode=RecommendationMode.SWIPE_RECOMMEND,
            excluded_count=len(exclusion),
            extras={
                "liked": len(point_sets.positive),
                "disliked": len(point_sets.negative),
            },
        )

    async def personalize(
        self,
        limit: Optional[int] = None,
        excluded: Sequence[str] = (),
    ) -> RecommendationResult:
        """
        Recommend from the favorites list.

        Raises:
            InsufficientInputError: If there are no favorites.
        """
        limit = self._resolve_limit(limit)
        favorites = await self._store.find_favorite_movies()
        vector = await compose_from_favorites(self._provider, favorites)

        exclusion = list(dict.fromkeys([*excluded, *(str(m["id"]) for m in favorites)]))
        hits = await self._index.search(
            self.collection, vector, limit, query_filter=movie_only_filter(exclusion)
        )
        results = await self._hydrate(hits, exclusion)
        if results:
            message = f"Personalized recommendations based on {len(favorites)} favorite movies"
        else:
            message = "No personalized recommendations found based on your favorites"
        return RecommendationResult(
            results=results,
            mode=RecommendationMode.PERSONALIZED,
            excluded_count=len(exclusion),
            message=message,
            extras={"favoriteCount": len(favorites)},
        )

    async def similar_to(self, movie_id: str, limit: Optional[int] = None) -> RecommendationResult:
        """
        "More like this" for a single movie, never returning the movie itself.

        Raises:
            NotFoundError: If the movie or its stored vector does not exist.
        """
        movie_id = str(movie_id).strip()
        if not movie_id:
            raise InvalidInputError("Movie ID is required")
        limit = self._resolve_limit(limit)

        movie = await self._store.find_by_id(movie_id)
        if movie is None or not movie.get("qdrant_id"):
            raise NotFoundError("Movie not found or no embedding available", details=movie_id)

        point_id = str(movie["qdrant_id"])
        points = await self._index.retrieve(self.collection, [point_id], with_vectors=True)
        if not points or not points[0].vector:
            raise NotFoundError("Movie vector not found in the index", details=movie_id)

        hits = await self._index.search(
            self.collection,
            points[0].vector,
            limit,
            query_filter=movie_only_filter([movie_id], exclude_point_ids=[point_id]),
        )
        results = await self._hydrate(hits, [movie_id])
        return RecommendationResult(
            results=results,
            mode=RecommendationMode.SIMILAR_MOVIES,
            excluded_count=1,
            message=None if results else "No similar movies found",
            extras={"movie": movie},
        )

    async def random_sample(
        self,
        excluded: Sequence[str] = (),
        limit: Optional[int] = None,
        message: Optional[str] = None,
    ) -> RecommendationResult:
        """
        Unscored random selection from the movie collection.

        Over-samples, keeps movies rated at least RANDOM_SAMPLE_MIN_RATING
        (unrated movies are kept), shuffles and cuts to `limit`.
        """
        limit = self._resolve_limit(limit)
        points = await self._index.sample(
            self.collection,
            limit * _SAMPLE_OVERFETCH,
            query_filter=movie_only_filter(excluded),
        )

        min_rating = self._settings.random_sample_min_rating
        decent = [p for p in points if _rating_ok(p.payload.get("vote_average"), min_rating)]
        self._rng.shuffle(decent)

        hits = [
            SearchHit(point_id=p.point_id, score=0.0, movie_id=p.movie_id, payload=p.payload)
            for p in decent[:limit]
        ]
        return RecommendationResult(
            results=await self._hydrate(hits, excluded, scored=False),
            mode=RecommendationMode.RANDOM_SAMPLE,
            excluded_count=len(set(excluded)),
            message=message,
        )

    async def moodswipe(self, request: MoodSwipeRequest) -> RecommendationResult:
        """
        Next batch for a swipe session: recommendations once there is a
        history, random picks before that. Optionally attaches mood scores.
        """
        if request.actions:
            result = await self.recommend_swipe(
                request.actions, excluded=request.excluded, limit=request.limit
            )
        else:
            result = await self.random_sample(excluded=request.excluded, limit=request.limit)

        if request.include_mood_scores and result.results:
            scores = await self.mood_scores([r.movie["id"] for r in result.results])
            for ranked in result.results:
                ranked.movie["moodScores"] = scores.get(str(ranked.movie["id"]), {})
        return result

    # ===============================
    #         MOOD HELPERS
    # ===============================

    async def mood_scores(self, movie_ids: Sequence[str]) -> dict[str, dict[str, dict]]:
        """
        Similarity of each movie to every stored mood, in one batch query.

        Returns:
            movie_id -> {mood_id: {"score": float, "title": str}}. Movies
            without an index point get no entry. Index failures are logged
            and yield {}.
        """
        point_by_movie = await self._resolve_points(movie_ids)
        if not point_by_movie:
            return {}

        movie_order = list(point_by_movie)
        try:
            batches = await self._index.query_batch_by_points(
                self.collection,
                [point_by_movie[m] for m in movie_order],
                query_filter=build_filter(only_type=PointType.MOOD),
                limit=MOOD_SCORE_LIMIT,
            )
        except RemoteServiceError as e:
            logger.warning("Mood scoring failed: %s", e.message)
            return {}

        scores: dict[str, dict[str, dict]] = {}
        for movie_id, hits in zip(movie_order, batches):
            per_movie: dict[str, dict] = {}
            for hit in hits:
                mood_id = hit.payload.get("moodId")
                if not mood_id:
                    continue
                title = hit.payload.get("title") or hit.payload.get("description") or "Unknown"
                per_movie[str(mood_id)] = {"score": hit.score, "title": title}
            scores[movie_id] = per_movie
        return scores

    async def like_dislike_previews(
        self,
        movie_ids: Sequence[str],
        limit: int = 10,
    ) -> dict[str, dict[str, list[dict]]]:
        """
        For each movie, what a like and what a dislike would surface next.

        "Like" recommends from the movie itself; "dislike" recommends from
        the neutral mood point away from the movie. All queries go out as one
        batch; if the batch call fails each movie is queried on its own.

        Returns:
            movie_id -> {"like": [...], "dislike": [...]} where each entry is
            {"movieId", "score"}.
        """
        point_by_movie = await self._resolve_points(movie_ids)
        if not point_by_movie:
            return {}

        neutral_point = mood_point_id(self._neutral_mood_id)
        has_neutral = bool(await self._index.retrieve(self.collection, [neutral_point]))
        if not has_neutral:
            logger.warning(
                "Neutral mood %s is missing; dislike previews use negative-only queries",
                self._neutral_mood_id,
            )
        anchor = [neutral_point] if has_neutral else []

        movie_order = list(point_by_movie)
        specs: list[RecommendSpec] = []
        for movie_id in movie_order:
            point_id = point_by_movie[movie_id]
            flt = movie_only_filter([movie_id], exclude_point_ids=[point_id])
            specs.append(RecommendSpec(positive=[point_id], query_filter=flt, limit=limit))
            specs.append(
                RecommendSpec(positive=anchor, negative=[point_id], query_filter=flt, limit=limit)
            )

        try:
            batches = await self._index.recommend_batch(self.collection, specs)
        except RemoteServiceError as e:
            logger.warning("Batch recommend failed (%s), querying per movie", e.message)
            batches = []
            for spec in specs:
                batches.append(
                    await self._index.recommend(
                        self.collection,
                        positive=spec.positive,
                        negative=spec.negative,
                        limit=spec.limit,
                        query_filter=spec.query_filter,
                    )
                )

        previews: dict[str, dict[str, list[dict]]] = {}
        for i, movie_id in enumerate(movie_order):
            previews[movie_id] = {
                "like": _preview(batches[2 * i]),
                "dislike": _preview(batches[2 * i + 1]),
            }
        return previews

    # ===============================
    #           HELPERS
    # ===============================

    def _resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self._settings.default_result_limit
        if limit < 1:
            raise InvalidInputError(f"limit must be a positive integer, got {limit}")
        return min(limit, self._settings.max_result_limit)

    async def _resolve_points(self, movie_ids: Sequence[str]) -> dict[str, str]:
        """movie_id -> index point ID, in input order, for movies that have one."""
        wanted = list(dict.fromkeys(str(m) for m in movie_ids))
        if not wanted:
            return {}
        records = await self._store.find_by_ids(wanted)
        by_id = {str(r["id"]): r.get("qdrant_id") for r in records}
        return {m: str(by_id[m]) for m in wanted if by_id.get(m)}

    async def _hydrate(
        self,
        hits: Sequence[SearchHit],
        excluded: Iterable[str] = (),
        scored: bool = True,
    ) -> list[RankedMovie]:
        """
        Attach metadata to index hits, keeping index order.

        Hits without a movie ID, hits for excluded movies, duplicates and
        movies missing from the metadata store are dropped. Ranks are
        assigned after dropping, starting at 1.
        """
        excluded_set = {str(e) for e in excluded}
        ordered: list[SearchHit] = []
        seen: set[str] = set()
        for hit in hits:
            if hit.movie_id is None or hit.movie_id in excluded_set or hit.movie_id in seen:
                continue
            if hit.payload.get("type") in (PointType.MOOD.value, PointType.CONCEPT.value):
                continue
            seen.add(hit.movie_id)
            ordered.append(hit)

        if not ordered:
            return []

        records = await self._store.find_by_ids([h.movie_id for h in ordered])
        by_id = {str(r["id"]): r for r in records}

        missing = len(ordered) - sum(1 for h in ordered if h.movie_id in by_id)
        if missing:
            logger.info("Dropped %d results with no metadata record", missing)

        results: list[RankedMovie] = []
        for hit in ordered:
            record = by_id.get(hit.movie_id)
            if record is None:
                continue
            results.append(
                RankedMovie(
                    movie=dict(record),
                    score=hit.score if scored else None,
                    rank=len(results) + 1,
                )
            )
        return results


def _rating_ok(rating, min_rating: float) -> bool:
    if rating is None:
        return True
    try:
        return float(rating) >= min_rating
    except (TypeError, ValueError):
        return False


def _preview(hits: Sequence[SearchHit]) -> list[dict]:
    return [{"movieId": h.movie_id, "score": h.score} for h in hits if h.movie_id]
