"""
Read interface the discovery engine needs from the movie metadata store.

Movie records are plain dicts keyed by column name. `id` is always a string
and `qdrant_id` (when present) is the movie's point ID in the vector index.
"""

from typing import Optional, Protocol, Sequence

from implementation.classes.schemas import FavoriteRecord


class MetadataStore(Protocol):

    async def find_by_ids(self, movie_ids: Sequence[str]) -> list[dict]:
        """Records for the given IDs, in no particular order. Missing IDs are omitted."""
        ...

    async def find_by_id(self, movie_id: str) -> Optional[dict]:
        ...

    async def find_favorites(self) -> list[FavoriteRecord]:
        ...

    async def find_favorite_movies(self) -> list[dict]:
        """Full movie records for every favorite, most recently added first."""
        ...
