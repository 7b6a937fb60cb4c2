"""Unit tests for the knowledge store and cosine similarity search."""
import asyncio

import numpy as np
import pytest

from course_rag.rag.embeddings import EmbeddingProvider
from course_rag.rag.models import DocumentType
from course_rag.rag.store import (
    DuplicateUnitError,
    KnowledgeStore,
    ReadWriteLock,
    cosine_similarity,
)

from conftest import FakeEmbeddingClient


def remote_store(query_vectors, cache=None, max_results=3, min_similarity=0.3):
    client = FakeEmbeddingClient(vectors=query_vectors)
    provider = EmbeddingProvider(client=client)
    return KnowledgeStore(
        provider=provider,
        cache=cache,
        max_results=max_results,
        min_similarity=min_similarity,
    )


@pytest.mark.unit
class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([1, 2, 3], [1, 2, 3]) == pytest.approx(1.0)

    def test_orthogonal_and_opposite(self):
        assert cosine_similarity([1, 0], [0, 1]) == 0.0
        assert cosine_similarity([1, 0], [-1, 0]) == 0.0

    def test_zero_norm(self):
        assert cosine_similarity([0, 0, 0], [1, 2, 3]) == 0.0

    def test_mismatched_lengths_truncate(self):
        assert cosine_similarity([1, 0, 5], [1, 0]) == pytest.approx(1.0)

    @pytest.mark.parametrize("seed", range(5))
    def test_bounds(self, seed):
        rng = np.random.default_rng(seed)
        a, b = rng.normal(size=16), rng.normal(size=16)
        assert 0.0 <= cosine_similarity(a, b) <= 1.0


@pytest.mark.unit
class TestSearch:
    @pytest.mark.asyncio
    async def test_ranked_and_bounded_by_top_k(self, make_unit):
        store = remote_store({"query": [1, 0, 0, 0]}, min_similarity=0.0)
        await store.index(
            [
                make_unit("far", locator=1, embedding=[0.1, 1, 0, 0]),
                make_unit("close", locator=2, embedding=[1, 0.1, 0, 0]),
                make_unit("middle", locator=3, embedding=[1, 1, 0, 0]),
                make_unit("closest", locator=4, embedding=[1, 0, 0, 0]),
            ]
        )

        results = await store.search("query", top_k=3)

        assert [r.unit.text for r in results] == ["closest", "close", "middle"]
        similarities = [r.similarity for r in results]
        assert similarities == sorted(similarities, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in similarities)

    @pytest.mark.asyncio
    async def test_top_k_capped_by_max_results(self, make_unit):
        store = remote_store({"query": [1, 0, 0, 0]}, max_results=2, min_similarity=0.0)
        await store.index(
            [make_unit(f"unit {i}", locator=i, embedding=[1, 0, 0, 0]) for i in range(1, 6)]
        )

        assert len(await store.search("query", top_k=10)) == 2

    @pytest.mark.asyncio
    async def test_floor_is_strict(self, make_unit):
        store = remote_store({"query": [1, 0, 0, 0]}, min_similarity=0.6)
        await store.index(
            [
                make_unit("exactly at floor", locator=1, embedding=[3, 4, 0, 0]),
                make_unit("orthogonal", locator=2, embedding=[0, 0, 1, 0]),
                make_unit("above", locator=3, embedding=[0.9, 0.1, 0, 0]),
            ]
        )

        results = await store.search("query", top_k=3)

        assert [r.unit.text for r in results] == ["above"]
        assert all(r.similarity > 0.6 for r in results)

    @pytest.mark.asyncio
    async def test_ties_keep_insertion_order(self, make_unit):
        store = remote_store({"query": [1, 0, 0, 0]}, min_similarity=0.0)
        await store.index(
            [make_unit(f"tie {i}", locator=i, embedding=[2, 0, 0, 0]) for i in range(1, 4)]
        )

        results = await store.search("query", top_k=3)

        assert [r.unit.text for r in results] == ["tie 1", "tie 2", "tie 3"]

    @pytest.mark.asyncio
    async def test_filter_by_document_type(self, make_unit):
        store = remote_store({"query": [1, 0, 0, 0]}, min_similarity=0.0)
        await store.index(
            [
                make_unit(
                    "slide",
                    source="week1.pptx",
                    embedding=[1, 0, 0, 0],
                    document_type=DocumentType.PPTX,
                ),
                make_unit("handout", source="week1.pdf", embedding=[1, 0.2, 0, 0]),
                make_unit(
                    "notes",
                    source="week1.txt",
                    embedding=[1, 0.5, 0, 0],
                    document_type=DocumentType.TXT,
                ),
            ]
        )

        results = await store.search(
            "query", top_k=3, document_types=[DocumentType.PDF, DocumentType.TXT]
        )

        assert [r.unit.text for r in results] == ["handout", "notes"]
        assert len(await store.search("query", top_k=3, document_types=[])) == 0
        assert len(await store.search("query", top_k=3)) == 3

    @pytest.mark.asyncio
    async def test_empty_store(self):
        store = remote_store({})
        assert await store.search("anything", top_k=3) == []

    @pytest.mark.asyncio
    async def test_blank_query_and_zero_top_k(self, make_unit):
        store = remote_store({"query": [1, 0, 0, 0]}, min_similarity=0.0)
        await store.index([make_unit("text", embedding=[1, 0, 0, 0])])

        assert await store.search("   ", top_k=3) == []
        assert await store.search("query", top_k=0) == []

    @pytest.mark.asyncio
    async def test_mixed_dimensions_are_scored(self, make_unit):
        store = remote_store({"query": [1, 0, 0, 0]}, min_similarity=0.0)
        await store.index(
            [
                make_unit("short", locator=1, embedding=[1, 0]),
                make_unit("long", locator=2, embedding=[0, 1, 0, 0, 0, 0]),
            ]
        )

        results = await store.search("query", top_k=3)

        assert [r.unit.text for r in results] == ["short"]
        assert results[0].similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_fallback_store_finds_matching_text(self, fallback_store, make_unit):
        await fallback_store.index(
            [
                make_unit("Closures capture variables from the enclosing scope", locator=1),
                make_unit("Loops repeat a block of statements", locator=2),
                make_unit("Classes bundle data and behaviour", locator=3),
            ]
        )

        results = await fallback_store.search("what do closures capture", top_k=3)

        assert results
        assert results[0].unit.locator == 1

    @pytest.mark.asyncio
    async def test_top_similarities(self, make_unit):
        store = remote_store({"query": [1, 0, 0, 0]}, min_similarity=0.0)
        await store.index([make_unit("closures", embedding=[1, 0, 0, 0])])

        scores = await store.top_similarities("query")

        assert scores == {"lecture1.pdf - closures": pytest.approx(1.0)}


@pytest.mark.unit
class TestIndex:
    @pytest.mark.asyncio
    async def test_embeds_units_without_vectors(self, fallback_store, make_unit):
        await fallback_store.index([make_unit("Closures capture variables")])

        assert len(fallback_store) == 1
        assert fallback_store.units[0].has_embedding
        assert fallback_store.units[0].embedding.shape == (1536,)

    @pytest.mark.asyncio
    async def test_duplicate_ids_leave_store_untouched(self, make_unit):
        store = remote_store({})
        original = make_unit("original", locator=1, embedding=[1, 0, 0, 0])
        await store.index([original])

        with pytest.raises(DuplicateUnitError):
            await store.index(
                [
                    make_unit("a", locator=2, embedding=[1, 0, 0, 0]),
                    make_unit("b", locator=2, embedding=[0, 1, 0, 0]),
                ]
            )

        assert [u.text for u in store.units] == ["original"]

    @pytest.mark.asyncio
    async def test_index_replaces_contents(self, make_unit):
        store = remote_store({})
        await store.index([make_unit("one", locator=1, embedding=[1, 0, 0, 0])])
        await store.index([make_unit("two", locator=2, embedding=[1, 0, 0, 0])])

        assert [u.text for u in store.units] == ["two"]

    @pytest.mark.asyncio
    async def test_index_persists(self, cache, make_unit):
        store = remote_store({}, cache=cache)
        await store.index([make_unit("persist me", embedding=[1, 0, 0, 0])])

        assert cache.cache_path.exists()
        assert [u.text for u in cache.load_from_file()] == ["persist me"]

    @pytest.mark.asyncio
    async def test_load_does_not_persist(self, cache, make_unit):
        store = remote_store({}, cache=cache)
        await store.load([make_unit("from cache", embedding=[1, 0, 0, 0])])

        assert len(store) == 1
        assert not cache.cache_path.exists()

    @pytest.mark.asyncio
    async def test_clear(self, fallback_store, make_unit):
        await fallback_store.index([make_unit("Closures capture variables")])
        assert fallback_store.provider.cache_size > 0

        await fallback_store.clear()

        assert len(fallback_store) == 0
        assert fallback_store.provider.cache_size == 0
        assert await fallback_store.search("closures", top_k=3) == []

    @pytest.mark.asyncio
    async def test_get_stats(self, make_unit):
        store = remote_store({})
        await store.index(
            [
                make_unit("a", source="a.pdf", embedding=[1, 0, 0, 0]),
                make_unit("b", source="b.pdf", embedding=[0, 1, 0, 0]),
            ]
        )

        stats = store.get_stats()

        assert stats["unit_count"] == 2
        assert stats["sources"] == 2
        assert stats["dimensions"] == [4]


@pytest.mark.unit
class TestReadWriteLock:
    @pytest.mark.asyncio
    async def test_readers_share_writer_excludes(self):
        lock = ReadWriteLock()
        events = []

        async def reader(name):
            async with lock.read():
                events.append(f"{name} in")
                await asyncio.sleep(0.01)
                events.append(f"{name} out")

        async def writer():
            await asyncio.sleep(0)
            async with lock.write():
                events.append("writer in")
                events.append("writer out")

        await asyncio.gather(reader("r1"), reader("r2"), writer())

        assert events.index("r2 in") < events.index("r1 out")
        assert events.index("writer in") > events.index("r1 out")
        assert events.index("writer in") > events.index("r2 out")
