"""In-memory knowledge store with cosine similarity search.

Handles:
- Embedding units that arrive without vectors
- All-or-nothing replacement of the store contents
- Linear-scan cosine similarity search with a similarity floor
- Readers/writer locking between search and index/clear
- Persistence through the knowledge cache
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from course_rag import config
from course_rag.rag.embeddings import CorpusStats, EmbeddingProvider
from course_rag.rag.models import DocumentType, RetrievalUnit, SearchResult
from course_rag.rag.persistence import KnowledgeCache

logger = structlog.get_logger()


class ReadWriteLock:
    """Asyncio readers/writer lock; waiting writers block new readers."""

    def __init__(self):
        self._condition = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @asynccontextmanager
    async def read(self):
        async with self._condition:
            await self._condition.wait_for(
                lambda: not self._writer and not self._writers_waiting
            )
            self._readers += 1
        try:
            yield
        finally:
            async with self._condition:
                self._readers -= 1
                if not self._readers:
                    self._condition.notify_all()

    @asynccontextmanager
    async def write(self):
        async with self._condition:
            self._writers_waiting += 1
            try:
                await self._condition.wait_for(
                    lambda: not self._writer and not self._readers
                )
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._condition:
                self._writer = False
                self._condition.notify_all()


def _cosine(a: np.ndarray, b: np.ndarray) -> float:
    if a.shape[0] != b.shape[0]:
        n = min(a.shape[0], b.shape[0])
        a, b = a[:n], b[:n]
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    similarity = float(np.dot(a, b)) / (norm_a * norm_b)
    return min(1.0, max(0.0, similarity))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity clamped into [0, 1].

    Vectors of different lengths are truncated to the shorter one.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape[0] != b.shape[0]:
        logger.warning(
            "embedding_dimension_mismatch",
            left_dimension=int(a.shape[0]),
            right_dimension=int(b.shape[0]),
        )
    return _cosine(a, b)


class DuplicateUnitError(ValueError):
    """Raised when units passed to the store share an id."""


class KnowledgeStore:
    """Owns the retrieval units of one corpus and searches them."""

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        cache: Optional[KnowledgeCache] = None,
        max_results: int = None,
        min_similarity: float = None,
    ):
        """Initialize the knowledge store.

        Args:
            provider: Embedding provider (default: remote with fallback)
            cache: Knowledge cache used for persistence (None disables it)
            max_results: Upper bound on results per search (default from config)
            min_similarity: Similarity floor; results must exceed it (default from config)
        """
        self.provider = provider if provider is not None else EmbeddingProvider()
        self.cache = cache
        self.max_results = max_results if max_results is not None else config.MAX_RETRIEVAL_RESULTS
        self.min_similarity = (
            min_similarity if min_similarity is not None else config.MIN_SIMILARITY
        )

        self._units: Tuple[RetrievalUnit, ...] = ()
        self._corpus = CorpusStats()
        self._matrix: Optional[np.ndarray] = None
        self._norms: Optional[np.ndarray] = None

        self._lock = ReadWriteLock()
        self._index_lock = asyncio.Lock()

        logger.info(
            "knowledge_store_initialized",
            max_results=self.max_results,
            min_similarity=self.min_similarity,
            persistent=self.cache is not None,
        )

    def __len__(self) -> int:
        return len(self._units)

    @property
    def units(self) -> List[RetrievalUnit]:
        return list(self._units)

    @property
    def corpus(self) -> CorpusStats:
        return self._corpus

    @staticmethod
    def _check_unique_ids(units: Sequence[RetrievalUnit]) -> None:
        seen = set()
        for unit in units:
            if unit.id in seen:
                raise DuplicateUnitError(f"Duplicate retrieval unit id: {unit.id}")
            seen.add(unit.id)

    async def index(self, units: Iterable[RetrievalUnit], persist: bool = True) -> None:
        """Replace the store contents with ``units``.

        Units lacking an embedding are embedded first (remote with fallback).
        The previous contents stay in place until every unit is ready.

        Args:
            units: Units to index
            persist: Save the embedded set to the knowledge cache

        Raises:
            DuplicateUnitError: If two units share an id (store untouched)
        """
        units = list(units)
        self._check_unique_ids(units)

        async with self._index_lock:
            corpus = CorpusStats(unit.text for unit in units)
            pending = [i for i, unit in enumerate(units) if not unit.has_embedding]

            prepared = list(units)
            if pending:
                vectors = await self.provider.embed([units[i].text for i in pending], corpus)
                for i, vector in zip(pending, vectors):
                    prepared[i] = replace(units[i], embedding=vector)

            async with self._lock.write():
                self._swap(prepared, corpus)

            logger.info(
                "knowledge_store_indexed",
                unit_count=len(prepared),
                embedded=len(pending),
            )

            if persist:
                self.save_to_file()

    async def load(self, units: Iterable[RetrievalUnit]) -> None:
        """Replace the store contents with units read from the cache."""
        await self.index(units, persist=False)

    def _swap(self, units: List[RetrievalUnit], corpus: CorpusStats) -> None:
        self._units = tuple(units)
        self._corpus = corpus

        dimensions = {unit.embedding.shape[0] for unit in units}
        if len(dimensions) == 1:
            self._matrix = np.vstack([unit.embedding for unit in units])
            self._norms = np.linalg.norm(self._matrix, axis=1)
        else:
            # Mixed dimensions (remote and fallback vectors); score row by row
            self._matrix = None
            self._norms = None
            if dimensions:
                logger.warning(
                    "knowledge_store_mixed_dimensions",
                    dimensions=sorted(dimensions),
                )

    def _score(self, query_vector: np.ndarray) -> np.ndarray:
        if self._matrix is not None and self._matrix.shape[1] == query_vector.shape[0]:
            query_norm = float(np.linalg.norm(query_vector))
            if query_norm == 0.0:
                return np.zeros(len(self._units))
            denominators = self._norms * query_norm
            dots = self._matrix @ query_vector
            with np.errstate(divide="ignore", invalid="ignore"):
                scores = np.where(denominators > 0, dots / denominators, 0.0)
            return np.clip(scores, 0.0, 1.0)

        mismatched = sum(
            1 for unit in self._units if unit.embedding.shape[0] != query_vector.shape[0]
        )
        if mismatched:
            logger.warning(
                "embedding_dimension_mismatch",
                query_dimension=int(query_vector.shape[0]),
                mismatched_units=mismatched,
            )
        return np.array([_cosine(query_vector, unit.embedding) for unit in self._units])

    async def search(
        self,
        query: str,
        top_k: int = None,
        min_similarity: Optional[float] = None,
        document_types: Optional[Iterable[DocumentType]] = None,
    ) -> List[SearchResult]:
        """Rank stored units by cosine similarity to the query.

        Args:
            query: Query text
            top_k: Number of results requested (capped by max_results)
            min_similarity: Override of the similarity floor
            document_types: Only return units of these types (None = all)

        Returns:
            Results above the floor, best first (ties keep insertion order)
        """
        top_k = top_k if top_k is not None else self.max_results
        limit = min(top_k, self.max_results)
        floor = self.min_similarity if min_similarity is None else min_similarity
        allowed = set(document_types) if document_types is not None else None

        if limit <= 0 or not query or not query.strip():
            return []

        async with self._lock.read():
            units = self._units
            if not units:
                logger.debug("empty_store_no_results")
                return []

            query_vector = await self.provider.embed_query(query, self._corpus)
            scores = self._score(query_vector)

        results = [
            SearchResult(unit=unit, similarity=float(score))
            for unit, score in zip(units, scores)
            if score > floor and (allowed is None or unit.document_type in allowed)
        ]
        # sort() is stable, so equal scores keep insertion order
        results.sort(key=lambda r: r.similarity, reverse=True)
        results = results[:limit]

        logger.info(
            "vector_search_completed",
            query_length=len(query),
            candidates=len(units),
            results_found=len(results),
            top_similarity=results[0].similarity if results else None,
        )
        return results

    async def top_similarities(self, query: str, top_k: int = None) -> Dict[str, float]:
        """Map ``"<source> - <text preview>"`` to similarity for the best matches."""
        results = await self.search(query, top_k)
        return {
            f"{r.unit.source} - {r.unit.text[:50]}": r.similarity for r in results
        }

    async def clear(self) -> None:
        """Drop all units and the embedding cache."""
        async with self._lock.write():
            self._swap([], CorpusStats())
        self.provider.clear_cache()
        logger.info("knowledge_store_cleared")

    def save_to_file(self) -> bool:
        """Persist the current contents (best effort)."""
        if self.cache is None:
            return False
        return self.cache.save_to_file(list(self._units))

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the knowledge store.

        Returns:
            Dictionary with store statistics
        """
        dimensions = sorted({unit.embedding.shape[0] for unit in self._units})
        return {
            "unit_count": len(self._units),
            "sources": len({unit.source for unit in self._units}),
            "dimensions": dimensions,
            "max_results": self.max_results,
            "min_similarity": self.min_similarity,
            "embedding_cache_size": self.provider.cache_size,
            "embedding_stats": dict(self.provider.stats),
            "cache_exists_on_disk": self.cache.cache_exists() if self.cache else False,
        }
