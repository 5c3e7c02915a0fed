"""
Concept vector store.

Owns the small collection of reference vectors, one per concept slider.
Bootstrap is a full replace (delete collection, recreate, re-embed, upsert);
lookup reads every point once and keeps the mapping in a process-local cache
until the next bootstrap or an explicit reload.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from db.qdrant import PointInput, VectorIndexClient, point_id_for
from implementation.classes.enums import CONCEPT_DESCRIPTIONS, Concept, PointType
from implementation.classes.errors import ConfigurationError, RemoteServiceError
from implementation.classes.schemas import ConceptVector
from implementation.llms.embeddings import EmbeddingProvider

logger = logging.getLogger(__name__)


class ConceptVectorCache:
    """
    Holds the concept name -> vector mapping between bootstrap runs.

    `get` returns None when nothing is cached, which is distinct from a
    cached empty mapping (never stored; see ConceptVectorStore.load_all).
    """

    def __init__(self):
        self._vectors: Optional[dict[str, list[float]]] = None

    def get(self) -> Optional[dict[str, list[float]]]:
        if self._vectors is None:
            return None
        return dict(self._vectors)

    def set(self, vectors: dict[str, list[float]]) -> None:
        self._vectors = dict(vectors)

    def invalidate(self) -> None:
        self._vectors = None

    @property
    def is_loaded(self) -> bool:
        return self._vectors is not None


class ConceptVectorStore:

    def __init__(
        self,
        index: VectorIndexClient,
        provider: EmbeddingProvider,
        collection: str,
        dimensions: int,
        cache: Optional[ConceptVectorCache] = None,
    ):
        self._index = index
        self._provider = provider
        self.collection = collection
        self.dimensions = dimensions
        self.cache = cache or ConceptVectorCache()

    async def bootstrap(self) -> list[ConceptVector]:
        """
        Regenerate every concept vector from its description.

        Steps: drop the collection (a missing one is fine), create it for the
        configured dimensionality with cosine distance, embed all descriptions
        in one batch call, upsert one point per concept, then refresh the
        cache. Running it twice produces the same set of concepts.
        """
        concepts = list(Concept)
        logger.info(
            "Bootstrapping %d concept vectors into %s", len(concepts), self.collection
        )

        deleted = await self._index.delete_collection(self.collection)
        if deleted:
            logger.info("Deleted existing collection %s", self.collection)

        await self._index.create_collection(self.collection, self.dimensions)

        descriptions = [concept.description for concept in concepts]
        vectors = await self._provider.embed_batch(descriptions)

        created_at = datetime.now(timezone.utc)
        results: list[ConceptVector] = []
        points: list[PointInput] = []
        for concept, vector in zip(concepts, vectors):
            if len(vector) != self.dimensions:
                raise ConfigurationError(
                    f"Concept {concept.value} embedded to {len(vector)} dimensions, "
                    f"collection expects {self.dimensions}"
                )
            results.append(
                ConceptVector(
                    name=concept,
                    vector=vector,
                    source_text=concept.description,
                    created_at=created_at,
                )
            )
            points.append(
                PointInput(
                    point_id=point_id_for(PointType.CONCEPT, concept.value),
                    vector=vector,
                    payload={
                        "concept": concept.value,
                        "description": concept.description,
                        "type": PointType.CONCEPT.value,
                        "createdAt": created_at.isoformat(),
                    },
                )
            )

        await self._index.upsert(self.collection, points)
        self.cache.set({cv.name.value: cv.vector for cv in results})
        logger.info("Stored %d concept vectors in %s", len(results), self.collection)
        return results

    async def load_all(self) -> dict[str, list[float]]:
        """
        Concept name -> vector for every stored concept.

        A missing or empty collection yields {} so callers can fall back to
        non-concept search. An empty result is not cached, so a bootstrap run
        by another process is picked up on the next call.
        """
        cached = self.cache.get()
        if cached is not None:
            return cached

        try:
            if not await self._index.collection_exists(self.collection):
                logger.warning(
                    "Concept collection %s does not exist; run the concept bootstrap",
                    self.collection,
                )
                return {}
            points = await self._index.scroll_all(self.collection, with_vectors=True)
        except RemoteServiceError as e:
            logger.warning("Could not load concept vectors: %s", e.message)
            return {}

        vectors: dict[str, list[float]] = {}
        for point in points:
            concept = Concept.from_string(str(point.payload.get("concept", "")))
            if concept is None or not point.vector:
                continue
            vectors[concept.value] = point.vector

        if not vectors:
            logger.warning("Concept collection %s is empty", self.collection)
            return {}

        dims = {len(v) for v in vectors.values()}
        if len(dims) > 1:
            raise ConfigurationError(
                f"Concept vectors in {self.collection} have mixed dimensionality {sorted(dims)}"
            )
        if dims != {self.dimensions}:
            raise ConfigurationError(
                f"Concept vectors in {self.collection} have {dims.pop()} dimensions, "
                f"expected {self.dimensions}; rerun the concept bootstrap"
            )

        logger.info("Loaded %d concept vectors: %s", len(vectors), ", ".join(vectors))
        self.cache.set(vectors)
        return dict(vectors)

    async def reload(self) -> dict[str, list[float]]:
        self.cache.invalidate()
        return await self.load_all()
