"""
Query composition for the discovery engine.

Turns caller input into something the vector index can answer:

  - concept slider weights  -> one target vector (or None for "no target")
  - freeform text           -> one embedding
  - a swipe history         -> positive / negative point ID sets
  - a favorites list        -> one embedding of a combined preference document

Everything here except the two `compose_from_*` coroutines that call the
embedding provider is pure computation over already-fetched vectors.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

import numpy as np

from db.metadata_store import MetadataStore
from implementation.classes.enums import SwipeAction
from implementation.classes.errors import (
    ConfigurationError,
    InsufficientInputError,
    InvalidInputError,
)
from implementation.classes.schemas import ConceptWeights, SwipeEvent
from implementation.llms.embeddings import EmbeddingProvider

logger = logging.getLogger(__name__)


# ===============================
#        VECTOR HELPERS
# ===============================

def _as_array(vector: Sequence[float], expected_dim: Optional[int], label: str) -> np.ndarray:
    """Convert to a float64 array and enforce a shared dimensionality."""
    arr = np.asarray(vector, dtype=np.float64)
    if arr.ndim != 1:
        raise ConfigurationError(f"Vector for {label} is not one-dimensional")
    if expected_dim is not None and arr.shape[0] != expected_dim:
        raise ConfigurationError(
            f"Dimensionality mismatch for {label}: got {arr.shape[0]}, expected {expected_dim}"
        )
    return arr


def _weights_mapping(weights: ConceptWeights | Mapping[str, float] | None) -> dict[str, float]:
    if weights is None:
        return {}
    if isinstance(weights, ConceptWeights):
        return weights.as_dict()
    return {str(name): float(value) for name, value in weights.items()}


# ===============================
#      CONCEPT COMPOSITION
# ===============================

def compose_from_concepts(
    weights: ConceptWeights | Mapping[str, float] | None,
    concept_vectors: Mapping[str, Sequence[float]],
    scale_factor: float,
) -> Optional[list[float]]:
    """
    Build a target vector as the damped weighted sum of concept vectors.

        target = sum(weight * scale_factor * concept_vector)

    Returns None ("no target vector") when no weight is non-zero or no
    concept vectors are available. A weight naming a concept that is not in
    `concept_vectors` is skipped, so the result equals the result of
    omitting that concept. The output is not normalized.

    Raises:
        ConfigurationError: If the concept vectors do not share one dimensionality.
    """
    active = {name: w for name, w in _weights_mapping(weights).items() if w != 0}
    if not active or not concept_vectors:
        return None

    dim = len(next(iter(concept_vectors.values())))
    target = np.zeros(dim, dtype=np.float64)

    applied = 0
    for name, weight in active.items():
        vector = concept_vectors.get(name)
        if vector is None:
            logger.debug("Concept %s has no stored vector, skipping", name)
            continue
        target += weight * scale_factor * _as_array(vector, dim, f"concept {name}")
        applied += 1

    # Every active concept was skipped: same as no active weights.
    if applied == 0:
        return None
    return target.tolist()


def apply_concept_weights(
    base: Sequence[float],
    weights: ConceptWeights | Mapping[str, float] | None,
    concept_vectors: Mapping[str, Sequence[float]],
    scale_factor: float,
) -> list[float]:
    """
    Steer an existing vector (typically a text embedding) by concept weights.

    Returns `base` unchanged when there is nothing to apply.
    """
    steering = compose_from_concepts(weights, concept_vectors, scale_factor)
    if steering is None:
        return list(base)
    base_arr = _as_array(base, None, "query")
    return (base_arr + _as_array(steering, base_arr.shape[0], "concept steering")).tolist()


# ===============================
#      MULTI-VECTOR BLENDING
# ===============================

def combine_weighted_vectors(
    vectors: Sequence[Sequence[float]],
    weights: Sequence[float],
) -> list[float]:
    """
    Weighted mean normalized by the total absolute weight.

        sum(w_i * v_i) / sum(|w_i|)

    A total weight of zero yields the zero vector, which callers must read as
    "no preference signal".
    """
    if len(vectors) != len(weights):
        raise InvalidInputError(
            f"Got {len(vectors)} vectors but {len(weights)} weights"
        )
    if not vectors:
        return []

    dim = len(vectors[0])
    stacked = np.vstack([_as_array(v, dim, f"vector {i}") for i, v in enumerate(vectors)])
    w = np.asarray(weights, dtype=np.float64)

    total = float(np.abs(w).sum())
    if total == 0.0:
        return np.zeros(dim, dtype=np.float64).tolist()
    return ((w[:, None] * stacked).sum(axis=0) / total).tolist()


# ===============================
#       TEXT COMPOSITION
# ===============================

async def compose_from_text(provider: EmbeddingProvider, text: str) -> list[float]:
    """Embed freeform text. Empty text raises InvalidInputError from the provider."""
    return await provider.embed(text)


# ===============================
#      SWIPE PROFILE (ID SETS)
# ===============================

@dataclass(slots=True)
class SwipePointSets:
    """
    Resolved positive/negative index point IDs for a swipe history.

    `movie_ids` holds every movie referenced by the history (resolved or not)
    so the caller can exclude all of them from the results.
    """
    positive: list[str] = field(default_factory=list)
    negative: list[str] = field(default_factory=list)
    movie_ids: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.positive and not self.negative


async def resolve_swipe_profile(
    events: Sequence[SwipeEvent],
    store: MetadataStore,
) -> SwipePointSets:
    """
    Partition a like/dislike history into index point ID sets.

    Each movie ID is resolved to its index point through the metadata store
    (`qdrant_id`). Movies that cannot be resolved are dropped. A movie both
    liked and disliked keeps its most recent action.
    """
    latest: dict[str, SwipeAction] = {}
    for event in events:
        # Re-insert so dict order follows the most recent action.
        latest.pop(event.movie_id, None)
        latest[event.movie_id] = event.action

    sets = SwipePointSets(movie_ids=list(latest))
    if not latest:
        return sets

    records = await store.find_by_ids(list(latest))
    point_by_movie = {
        str(record["id"]): str(record["qdrant_id"])
        for record in records
        if record.get("qdrant_id")
    }

    for movie_id, action in latest.items():
        point_id = point_by_movie.get(movie_id)
        if point_id is None:
            logger.info("Swipe movie %s has no index point, dropping", movie_id)
            continue
        if action is SwipeAction.LIKE:
            sets.positive.append(point_id)
        else:
            sets.negative.append(point_id)
    return sets


# ===============================
#     FAVORITES (TEXT AGGREGATE)
# ===============================

def _favorite_text(movie: Mapping) -> str:
    parts: list[str] = []
    title = (movie.get("title") or "").strip()
    if title:
        parts.append(title)
    genres = [g for g in (movie.get("genres") or []) if g]
    if genres:
        parts.append(f"Genres: {', '.join(genres)}")
    overview = (movie.get("overview") or "").strip()
    if overview:
        parts.append(overview)
    return ". ".join(parts)


def build_favorites_document(movies: Sequence[Mapping]) -> str:
    """
    Concatenate title, genres and overview of every favorite into one document.

    Raises:
        InsufficientInputError: If there are no favorites or none of them
            carries any text.
    """
    if not movies:
        raise InsufficientInputError(
            "No favorites found. Add some movies to your favorites first!"
        )
    blocks = [text for text in (_favorite_text(m) for m in movies) if text]
    if not blocks:
        raise InsufficientInputError(
            "Favorite movies have no title, genres or overview to build a profile from"
        )
    return "\n\n".join(blocks)


async def compose_from_favorites(
    provider: EmbeddingProvider,
    movies: Sequence[Mapping],
) -> list[float]:
    """Embed the combined favorites document once and use it as the target."""
    document = build_favorites_document(movies)
    logger.info("Composing preference vector from %d favorites", len(movies))
    return await provider.embed(document)
