"""
Enum classes for the discovery and recommendation core.

This module contains the fixed concept vocabulary, the point-type tags stored
in the vector index payloads, swipe actions and the resolved request modes.
"""

from enum import Enum


class Concept(Enum):
    """The fixed vocabulary of concept sliders exposed to callers."""
    ADVENTURE = "adventure"
    ROMANCE = "romance"
    COMPLEXITY = "complexity"
    EMOTION = "emotion"
    REALISM = "realism"

    @classmethod
    def from_string(cls, name: str) -> "Concept | None":
        """
        Match by enum value (e.g. "adventure"), case-insensitively.

        Returns None when the name is not part of the vocabulary.
        """
        normalized = name.strip().lower() if name else ""
        for concept in cls:
            if concept.value == normalized:
                return concept
        return None

    @property
    def description(self) -> str:
        """The text blob whose embedding defines this concept's direction."""
        return CONCEPT_DESCRIPTIONS[self]


# Source texts embedded during concept bootstrap. Changing any of these
# requires re-running the bootstrap so the stored vectors match.
CONCEPT_DESCRIPTIONS: dict[Concept, str] = {
    Concept.ADVENTURE: (
        "adventurous action-packed thrilling exciting dynamic fast-paced energetic intense "
        "physical movement exploration danger stunts chase sequences combat fighting battles "
        "war conflict explosive dramatic tension suspense adrenaline pumping high stakes life "
        "or death scenarios"
    ),
    Concept.ROMANCE: (
        "romantic love intimate emotional relationship tender passionate heartfelt sentimental "
        "affectionate couples dating marriage wedding proposal kiss embrace chemistry connection "
        "soul mate true love heartbreak breakup reunion passionate affair forbidden love "
        "triangle romantic comedy drama"
    ),
    Concept.COMPLEXITY: (
        "complex deep intellectual philosophical thought-provoking intricate sophisticated "
        "layered nuanced cerebral analytical psychological mind-bending plot twists multiple "
        "timelines non-linear narrative symbolism metaphor allegory abstract conceptual "
        "theoretical academic scholarly profound meaningful"
    ),
    Concept.EMOTION: (
        "emotional intense dramatic powerful moving touching heartbreaking uplifting cathartic "
        "overwhelming profound affecting tear-jerking inspirational motivational depression "
        "grief loss trauma healing redemption hope despair joy sadness anger fear anxiety "
        "therapeutic"
    ),
    Concept.REALISM: (
        "realistic grounded true-to-life authentic documentary-style natural believable "
        "everyday ordinary mundane practical factual slice-of-life naturalistic gritty raw "
        "unvarnished honest straightforward down-to-earth relatable human realistic dialogue "
        "believable characters"
    ),
}


class PointType(Enum):
    """Value of the `type` payload field on every point in the vector index."""
    MOVIE = "movie"
    MOOD = "mood"
    CONCEPT = "concept"


class SwipeAction(Enum):
    """A single user reaction in a swipe session."""
    LIKE = "like"
    DISLIKE = "dislike"


class RecommendationMode(Enum):
    """
    The strategy the engine resolved for a request.

    Returned to callers so they can see which path produced the results.
    """
    CONCEPT_SEARCH = "concept_based_search"
    TEXT_SEARCH = "text_search"
    SWIPE_RECOMMEND = "swipe_recommend"
    PERSONALIZED = "personalized"
    SIMILAR_MOVIES = "similar_movies"
    RANDOM_SAMPLE = "random_sample"
