"""Unit tests for enum conversion and vocabulary stability."""

import pytest

from implementation.classes.enums import Concept, PointType, RecommendationMode, SwipeAction


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("adventure", Concept.ADVENTURE),
        ("  Romance ", Concept.ROMANCE),
        ("REALISM", Concept.REALISM),
        ("whimsy", None),
        ("", None),
    ],
)
def test_concept_from_string(raw: str, expected: Concept | None) -> None:
    """Concept.from_string should normalize case/spacing and reject unknown values."""
    assert Concept.from_string(raw) == expected


def test_concept_vocabulary_is_stable() -> None:
    """Stored concept vectors are keyed by these names; renaming breaks lookups."""
    assert [c.value for c in Concept] == ["adventure", "romance", "complexity", "emotion", "realism"]


def test_every_concept_has_a_description() -> None:
    for concept in Concept:
        assert concept.description.strip()
    assert "romantic" in Concept.ROMANCE.description


def test_point_type_values_match_payload_tags() -> None:
    assert [t.value for t in PointType] == ["movie", "mood", "concept"]


def test_swipe_action_values() -> None:
    assert SwipeAction("like") is SwipeAction.LIKE
    assert SwipeAction("dislike") is SwipeAction.DISLIKE
    with pytest.raises(ValueError):
        SwipeAction("superlike")


def test_recommendation_mode_values_are_stable() -> None:
    """Mode values are returned to callers as the `method` field."""
    assert RecommendationMode.CONCEPT_SEARCH.value == "concept_based_search"
    assert RecommendationMode.TEXT_SEARCH.value == "text_search"
    assert RecommendationMode.RANDOM_SAMPLE.value == "random_sample"
