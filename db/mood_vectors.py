"""
Mood vectors: auxiliary `type="mood"` points stored alongside movies.

Moods live in the movie collection so movies can be scored against them with
a single filtered query, which is why every item search excludes them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from db.qdrant import PointInput, VectorIndexClient, build_filter, point_id_for
from implementation.classes.enums import PointType
from implementation.classes.errors import InvalidInputError
from implementation.llms.embeddings import EmbeddingProvider

logger = logging.getLogger(__name__)

# Mood used as the "positive" anchor when recommending away from a disliked movie.
NEUTRAL_MOOD_ID = "neutral"


@dataclass(frozen=True, slots=True)
class Mood:
    mood_id: str
    title: str
    description: str
    point_id: str
    updated_at: Optional[str] = None


def mood_point_id(mood_id: str) -> str:
    return point_id_for(PointType.MOOD, mood_id)


class MoodVectorStore:

    def __init__(
        self,
        index: VectorIndexClient,
        provider: EmbeddingProvider,
        collection: str,
        dimensions: int,
    ):
        self._index = index
        self._provider = provider
        self.collection = collection
        self.dimensions = dimensions

    async def ensure_collection(self) -> bool:
        """Create the movie collection if it is missing. Returns True if created."""
        if await self._index.collection_exists(self.collection):
            return False
        await self._index.create_collection(self.collection, self.dimensions)
        logger.info("Created collection %s", self.collection)
        return True

    async def upsert_mood(self, mood_id: str, description: str, title: Optional[str] = None) -> Mood:
        """
        Embed a mood description and store it, replacing any earlier version.

        The point ID is derived from `mood_id`, so re-upserting overwrites.
        """
        mood_id = (mood_id or "").strip()
        if not mood_id:
            raise InvalidInputError("Mood ID must be a non-empty string")

        vector = await self._provider.embed(description)
        updated_at = datetime.now(timezone.utc).isoformat()
        point_id = mood_point_id(mood_id)
        mood = Mood(
            mood_id=mood_id,
            title=title or description.strip(),
            description=description.strip(),
            point_id=point_id,
            updated_at=updated_at,
        )
        await self._index.upsert(
            self.collection,
            [
                PointInput(
                    point_id=point_id,
                    vector=vector,
                    payload={
                        "moodId": mood.mood_id,
                        "title": mood.title,
                        "description": mood.description,
                        "type": PointType.MOOD.value,
                        "updatedAt": updated_at,
                    },
                )
            ],
        )
        logger.info("Upserted mood %s", mood_id)
        return mood

    async def delete_mood(self, mood_id: str) -> None:
        await self._index.delete(self.collection, [mood_point_id(mood_id)])
        logger.info("Deleted mood %s", mood_id)

    async def list_moods(self) -> list[Mood]:
        points = await self._index.scroll_all(
            self.collection,
            query_filter=build_filter(only_type=PointType.MOOD),
        )
        moods = [
            Mood(
                mood_id=str(p.payload.get("moodId", "")),
                title=str(p.payload.get("title") or p.payload.get("description") or ""),
                description=str(p.payload.get("description", "")),
                point_id=p.point_id,
                updated_at=p.payload.get("updatedAt"),
            )
            for p in points
        ]
        return sorted(moods, key=lambda m: m.mood_id)
