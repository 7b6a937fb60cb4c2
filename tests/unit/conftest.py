"""
Unit test fixtures. Fakes stand in for the remote model API; no network.
"""
import asyncio
from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest

from course_rag import config
from course_rag.rag.embeddings import EmbeddingProvider
from course_rag.rag.models import DocumentType, RetrievalUnit
from course_rag.rag.persistence import KnowledgeCache
from course_rag.rag.store import KnowledgeStore


class FakeEmbeddingClient:
    """Embedding client returning fixed vectors and recording each batch."""

    def __init__(
        self,
        vectors: Optional[Dict[str, Sequence[float]]] = None,
        dimension: int = 4,
        error: Optional[Exception] = None,
        is_configured: bool = True,
    ):
        self.vectors = vectors or {}
        self.dimension = dimension
        self.error = error
        self.is_configured = is_configured
        self.embedding_model = "fake-embedding"
        self.calls: List[List[str]] = []

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [list(self.vectors.get(text, self._default(text))) for text in texts]

    def _default(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        vector[len(text) % self.dimension] = 1.0
        return vector


class FakeGenerator:
    """Text generator yielding canned tokens."""

    def __init__(
        self,
        tokens: Sequence[str] = ("Closures ", "capture ", "variables."),
        error: Optional[Exception] = None,
        fail_after: Optional[int] = None,
    ):
        self.tokens = list(tokens)
        self.error = error
        self.fail_after = fail_after
        self.prompts: List[str] = []
        self.stream_closed = False

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return "".join(self.tokens)

    async def stream(self, prompt: str):
        self.prompts.append(prompt)
        try:
            for i, token in enumerate(self.tokens):
                if self.error is not None and i == (self.fail_after or 0):
                    raise self.error
                await asyncio.sleep(0)
                yield token
        finally:
            self.stream_closed = True


class BlockingGenerator(FakeGenerator):
    """Streams one token, then waits until released."""

    def __init__(self):
        super().__init__(tokens=("first",))
        self.release = asyncio.Event()
        self.started = asyncio.Event()

    async def stream(self, prompt: str):
        self.prompts.append(prompt)
        try:
            yield "first"
            self.started.set()
            await self.release.wait()
            yield "late"
        finally:
            self.stream_closed = True


@pytest.fixture(autouse=True)
def isolated_paths(tmp_path, monkeypatch):
    """Point default cache and corpus locations at tmp_path."""
    monkeypatch.setattr(config, "DATA_DIR", tmp_path / "default_data")
    monkeypatch.setattr(
        config, "BUNDLED_CACHE_PATH", tmp_path / "default_bundled" / config.CACHE_FILE_NAME
    )
    monkeypatch.setattr(config, "CORPUS_DIR", tmp_path / "default_materials")


@pytest.fixture
def make_unit():
    """Factory for retrieval units."""

    def _make(
        text: str = "Some course text",
        source: str = "lecture1.pdf",
        locator: int = 1,
        index: int = 0,
        embedding: Optional[Sequence[float]] = None,
        document_type: DocumentType = DocumentType.PDF,
    ) -> RetrievalUnit:
        return RetrievalUnit(
            id=RetrievalUnit.make_id(source, locator, index),
            text=text,
            source=source,
            locator=locator,
            document_type=document_type,
            embedding=np.asarray(embedding, dtype=np.float64) if embedding is not None else None,
        )

    return _make


@pytest.fixture
def cache(tmp_path):
    """Knowledge cache writing under tmp_path, with no bundled snapshot."""
    return KnowledgeCache(
        cache_dir=tmp_path / "data",
        bundled_path=tmp_path / "bundled" / "knowledge_base_with_embeddings.json",
        embedding_model="fake-embedding",
    )


@pytest.fixture
def fallback_provider():
    """Provider with no credentials: every vector comes from the fallback."""
    return EmbeddingProvider(client=FakeEmbeddingClient(is_configured=False))


@pytest.fixture
def fallback_store(fallback_provider, cache):
    return KnowledgeStore(
        provider=fallback_provider, cache=cache, max_results=3, min_similarity=0.0
    )
