"""
Pydantic request schemas and plain data models for the discovery core.

Request models validate caller input at the API boundary (camelCase aliases
match the web client). The dataclasses below them are the internal result
types passed between the index client, the engine and the API.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, List, Mapping, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from .enums import Concept, RecommendationMode, SwipeAction
from .errors import InvalidInputError


def _coerce_id(value: Any) -> Any:
    """Movie IDs are always strings in the core; accept numeric input from clients."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(int(value))
    if isinstance(value, str):
        return value.strip()
    return value


MovieId = Annotated[str, BeforeValidator(_coerce_id)]


# -----------------------------
#       CONCEPT WEIGHTS
# -----------------------------

class ConceptWeights(BaseModel):
    """
    One slider value per concept in [-1, 1].

    0 means "this concept contributes nothing". That is different from a
    concept missing from the concept store, which the composer skips.
    """
    model_config = ConfigDict(extra="forbid")

    adventure: float = Field(0.0, ge=-1.0, le=1.0)
    romance: float = Field(0.0, ge=-1.0, le=1.0)
    complexity: float = Field(0.0, ge=-1.0, le=1.0)
    emotion: float = Field(0.0, ge=-1.0, le=1.0)
    realism: float = Field(0.0, ge=-1.0, le=1.0)

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, Any]]) -> "ConceptWeights":
        """
        Build weights from a raw caller mapping (query params or JSON body).

        Raises:
            InvalidInputError: If a key is not a known concept or a value is
                not a number in [-1, 1].
        """
        if not mapping:
            return cls()
        unknown = [key for key in mapping if Concept.from_string(str(key)) is None]
        if unknown:
            raise InvalidInputError(
                "Unknown concept in weight map",
                details=f"unknown concepts: {', '.join(sorted(map(str, unknown)))}",
            )
        normalized = {Concept.from_string(str(key)).value: value for key, value in mapping.items()}
        try:
            return cls(**normalized)
        except ValidationError as e:
            raise InvalidInputError("Malformed concept weight map", details=str(e))

    def as_dict(self) -> dict[str, float]:
        return {concept.value: getattr(self, concept.value) for concept in Concept}

    def active(self) -> dict[str, float]:
        """Concept name -> weight for every non-zero slider, in vocabulary order."""
        return {name: weight for name, weight in self.as_dict().items() if weight != 0}

    def has_active(self) -> bool:
        return bool(self.active())


# -----------------------------
#        API REQUESTS
# -----------------------------

class SwipeEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    movie_id: MovieId = Field(..., alias="movieId", min_length=1)
    action: SwipeAction


class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    concept_weights: Optional[dict[str, float]] = Field(None, alias="conceptWeights")
    limit: Optional[int] = Field(None, ge=1)


class SimilarMoviesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    movie_id: MovieId = Field(..., alias="movieId", min_length=1)
    limit: Optional[int] = Field(None, ge=1)


class MoodSwipeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    actions: List[SwipeEvent] = Field(default_factory=list)
    excluded: List[MovieId] = Field(default_factory=list)
    limit: Optional[int] = Field(None, ge=1)
    include_mood_scores: bool = Field(False, alias="includeMoodScores")


class FavoriteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    movie_id: MovieId = Field(..., alias="movieId", min_length=1)


class RecommendationRequest(BaseModel):
    """
    Mode-agnostic request consumed by `RecommendationEngine.recommend`.

    The engine picks the mode from whichever fields are present.
    """
    model_config = ConfigDict(populate_by_name=True)

    text: Optional[str] = None
    concept_weights: ConceptWeights = Field(default_factory=ConceptWeights, alias="conceptWeights")
    actions: List[SwipeEvent] = Field(default_factory=list)
    excluded: List[MovieId] = Field(default_factory=list)
    use_favorites: bool = Field(False, alias="useFavorites")
    limit: Optional[int] = Field(None, ge=1)


class PreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    movie_ids: List[MovieId] = Field(..., alias="movieIds", min_length=1)
    limit: int = Field(10, ge=1, le=50)


class MoodRequest(BaseModel):
    description: str = Field(..., min_length=1)
    title: Optional[str] = None


class SnapshotRequest(BaseModel):
    collection: str = Field(..., min_length=1)


# -----------------------------
#        DATA MODELS
# -----------------------------

@dataclass(frozen=True, slots=True)
class ConceptVector:
    name: Concept
    vector: list[float]
    source_text: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class FavoriteRecord:
    movie_id: str
    added_at: Optional[datetime] = None


@dataclass(slots=True)
class SearchHit:
    """
    One scored point returned by the vector index.

    `movie_id` is read from the point payload; it is None for auxiliary
    points (moods, concepts).
    """
    point_id: str
    score: float
    movie_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    vector: Optional[list[float]] = None


@dataclass(slots=True)
class RankedMovie:
    movie: dict[str, Any]
    score: Optional[float]
    rank: int

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.movie)
        data["similarityScore"] = self.score
        data["rank"] = self.rank
        return data


@dataclass(slots=True)
class RecommendationResult:
    results: list[RankedMovie]
    mode: RecommendationMode
    applied_concepts: list[dict[str, Any]] = field(default_factory=list)
    excluded_count: int = 0
    message: Optional[str] = None
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def total_found(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": True,
            "results": [ranked.to_dict() for ranked in self.results],
            "totalFound": self.total_found,
            "method": self.mode.value,
            "excluded": self.excluded_count,
        }
        if self.applied_concepts:
            body["appliedConcepts"] = self.applied_concepts
        if self.message:
            body["message"] = self.message
        body.update(self.extras)
        return body
