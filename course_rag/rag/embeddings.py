"""Embedding generation with a deterministic local fallback.

Handles:
- Batched calls to the remote embedding service (at most 25 texts per call)
- Typed outcomes for remote calls (ok / unavailable / rate limited)
- Hashed TF-IDF vectors when the remote service cannot be used
- An in-process cache of computed vectors
"""
import asyncio
import hashlib
import math
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np
import structlog

from course_rag import config
from course_rag.llm_client import LLMClientError, LLMRateLimitError, llm_client

logger = structlog.get_logger()

_NON_WORD = re.compile(r"[^a-z0-9一-龥\s]")
_HASH_MULTIPLIERS = (1, 31, 37)
_HASH_WEIGHTS = (1.0, 0.5, 0.25)


class EmbeddingClient(Protocol):
    """Remote batch embedding service."""

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        ...


@dataclass
class EmbeddingOk:
    vectors: List[np.ndarray]


@dataclass
class ProviderUnavailable:
    reason: str


@dataclass
class RateLimited:
    reason: str
    retry_after: Optional[float] = None


EmbeddingOutcome = Union[EmbeddingOk, ProviderUnavailable, RateLimited]


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value & 0x80000000 else value


def java_string_hash(text: str) -> int:
    """32-bit polynomial string hash over UTF-16 code units.

    Stable across processes (unlike ``hash()``) and identical to the hash used
    by previously persisted fallback vectors.
    """
    data = text.encode("utf-16-be")
    h = 0
    for i in range(0, len(data), 2):
        h = (31 * h + ((data[i] << 8) | data[i + 1])) & 0xFFFFFFFF
    return _to_int32(h)


def tokenize(text: str) -> List[str]:
    """Lowercase, replace non-alphanumeric/non-CJK characters, split on whitespace."""
    return _NON_WORD.sub(" ", text.lower()).split()


class CorpusStats:
    """Snapshot of the indexed texts used for fallback IDF weights."""

    def __init__(self, texts: Iterable[str] = ()):
        self._texts = [t.lower() for t in texts]
        self._document_frequency: Dict[str, int] = {}
        self._fingerprint: Optional[str] = None

    def __len__(self) -> int:
        return len(self._texts)

    def document_frequency(self, term: str) -> int:
        """Count texts containing ``term`` as a case-insensitive substring."""
        term = term.lower()
        count = self._document_frequency.get(term)
        if count is None:
            count = sum(1 for text in self._texts if term in text)
            self._document_frequency[term] = count
        return count

    @property
    def fingerprint(self) -> str:
        if self._fingerprint is None:
            digest = hashlib.sha1()
            for text in self._texts:
                digest.update(text.encode("utf-8"))
                digest.update(b"\x00")
            self._fingerprint = digest.hexdigest()
        return self._fingerprint


class EmbeddingProvider:
    """Turns texts into fixed-length vectors, remote first, fallback second."""

    def __init__(
        self,
        client: Optional[EmbeddingClient] = None,
        dimension: int = None,
        batch_size: int = None,
        model_name: str = None,
    ):
        """Initialize the embedding provider.

        Args:
            client: Remote embedding client (default: shared LLM client)
            dimension: Fallback vector length (default from config)
            batch_size: Texts per remote call, capped at 25 (default from config)
            model_name: Cache namespace for remote vectors (default: client model)
        """
        self.client = client or llm_client
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.batch_size = max(
            1, min(batch_size or config.EMBEDDING_BATCH_SIZE, config.MAX_EMBEDDING_BATCH_SIZE)
        )
        self.model_name = (
            model_name
            or getattr(self.client, "embedding_model", None)
            or config.EMBEDDING_MODEL
        )

        self._cache: Dict[Tuple[str, str], np.ndarray] = {}
        self.stats = {"remote_batches": 0, "fallback_batches": 0, "cache_hits": 0}

        logger.info(
            "embedding_provider_initialized",
            model=self.model_name,
            dimension=self.dimension,
            batch_size=self.batch_size,
        )

    @property
    def remote_configured(self) -> bool:
        return getattr(self.client, "is_configured", True)

    async def embed(
        self, texts: Sequence[str], corpus: Optional[CorpusStats] = None
    ) -> List[np.ndarray]:
        """Embed texts, batch by batch.

        Args:
            texts: Texts to embed
            corpus: Corpus statistics for fallback IDF weights

        Returns:
            One vector per text, in input order
        """
        corpus = corpus if corpus is not None else CorpusStats()
        vectors: List[Optional[np.ndarray]] = [None] * len(texts)
        remote_enabled = self.remote_configured
        remote_key = self.model_name
        fallback_key = f"fallback:{corpus.fingerprint}"

        for start in range(0, len(texts), self.batch_size):
            batch_indices = range(start, min(start + self.batch_size, len(texts)))

            misses = []
            for i in batch_indices:
                cached = self._cache.get((remote_key, texts[i]))
                if cached is None:
                    cached = self._cache.get((fallback_key, texts[i]))
                if cached is not None:
                    vectors[i] = cached
                    self.stats["cache_hits"] += 1
                else:
                    misses.append(i)

            if not misses:
                continue

            miss_texts = [texts[i] for i in misses]
            if remote_enabled:
                outcome = await self._embed_remote(miss_texts)
            else:
                outcome = ProviderUnavailable("missing_credentials")

            if isinstance(outcome, EmbeddingOk):
                self.stats["remote_batches"] += 1
                for i, vector in zip(misses, outcome.vectors):
                    vectors[i] = vector
                    self._cache[(remote_key, texts[i])] = vector
                continue

            if isinstance(outcome, RateLimited):
                logger.warning(
                    "embedding_rate_limited_using_fallback",
                    reason=outcome.reason,
                    retry_after=outcome.retry_after,
                    batch_size=len(misses),
                )
            else:
                if outcome.reason == "missing_credentials":
                    remote_enabled = False
                logger.warning(
                    "embedding_provider_unavailable_using_fallback",
                    reason=outcome.reason,
                    batch_size=len(misses),
                )

            self.stats["fallback_batches"] += 1
            fallback_vectors = await asyncio.to_thread(
                self._fallback_many, miss_texts, corpus
            )
            for i, vector in zip(misses, fallback_vectors):
                vectors[i] = vector
                self._cache[(fallback_key, texts[i])] = vector

        return vectors

    async def embed_query(
        self, text: str, corpus: Optional[CorpusStats] = None
    ) -> np.ndarray:
        """Embed a single query text."""
        vectors = await self.embed([text], corpus)
        return vectors[0]

    async def _embed_remote(self, texts: List[str]) -> EmbeddingOutcome:
        """Call the remote service for one batch and classify the result."""
        try:
            raw_vectors = await self.client.embed_batch(texts)
        except LLMRateLimitError as e:
            return RateLimited(str(e), retry_after=e.retry_after)
        except LLMClientError as e:
            return ProviderUnavailable(f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.error(
                "embedding_client_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return ProviderUnavailable(f"{type(e).__name__}: {e}")

        if raw_vectors is None or len(raw_vectors) != len(texts):
            return ProviderUnavailable("malformed_response")

        vectors = []
        for raw in raw_vectors:
            try:
                vector = np.asarray(raw, dtype=np.float64)
            except (TypeError, ValueError):
                return ProviderUnavailable("malformed_response")
            if vector.ndim != 1 or vector.size == 0 or not np.all(np.isfinite(vector)):
                return ProviderUnavailable("malformed_response")
            vectors.append(vector)

        return EmbeddingOk(vectors)

    def _fallback_many(self, texts: List[str], corpus: CorpusStats) -> List[np.ndarray]:
        return [self.fallback_embed(text, corpus) for text in texts]

    def fallback_embed(self, text: str, corpus: Optional[CorpusStats] = None) -> np.ndarray:
        """Deterministic hashed TF-IDF vector.

        Each term weight ``tf * idf`` is added at three hashed positions with
        weights 1.0, 0.5 and 0.25; the result is L2-normalized unless it is
        all zeros.

        Args:
            text: Text to embed
            corpus: Corpus statistics for IDF (empty corpus if None)

        Returns:
            Vector of length ``self.dimension``
        """
        corpus = corpus if corpus is not None else CorpusStats()
        tokens = tokenize(text)
        total_tokens = max(len(tokens), 1)

        term_counts: Dict[str, int] = {}
        for token in tokens:
            if len(token) > 1:
                term_counts[token] = term_counts.get(token, 0) + 1

        vector = np.zeros(self.dimension, dtype=np.float64)
        corpus_size = len(corpus)

        for term, count in term_counts.items():
            tf = count / total_tokens
            idf = math.log(1 + corpus_size / (1 + corpus.document_frequency(term)))
            weight = tf * idf

            h = java_string_hash(term)
            for multiplier, scale in zip(_HASH_MULTIPLIERS, _HASH_WEIGHTS):
                position = abs(_to_int32(h * multiplier)) % self.dimension
                vector[position] += weight * scale

        norm = math.sqrt(float(np.dot(vector, vector)))
        if norm > 0:
            vector /= norm
        return vector

    def clear_cache(self) -> None:
        """Drop every cached vector."""
        self._cache.clear()
        logger.info("embedding_cache_cleared")

    @property
    def cache_size(self) -> int:
        return len(self._cache)
