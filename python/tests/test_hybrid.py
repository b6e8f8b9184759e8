"""
Hybrid Index Tests - Fusion arithmetic and store round trips.

Uses an in-memory Qdrant collection and the fake dense encoder.
"""

from pathlib import Path

import pytest

from arborist.errors import PolicyError
from arborist.hybrid import HybridIndex, reciprocal_rank_fusion
from arborist.models import (
    EntryKind, FileRecord, IndexEntry, SparseVector, StoreHit, Summary, point_id_for,
)


def _hits(*ids):
    return [StoreHit(point_id=i, score=0.0, payload={"path": f"/{i}"}) for i in ids]


class TestReciprocalRankFusion:

    def test_worked_example(self):
        """dense A,B,C and sparse B,C,A with k=60 rank B, A, C."""
        fused = reciprocal_rank_fusion([_hits("A", "B", "C"), _hits("B", "C", "A")], k=60)

        assert [h.point_id for h in fused] == ["B", "A", "C"]
        assert fused[0].score == pytest.approx(1 / 62 + 1 / 61)
        assert fused[1].score == pytest.approx(1 / 61 + 1 / 63)
        assert fused[2].score == pytest.approx(1 / 63 + 1 / 62)

    def test_ties_break_by_point_id(self):
        fused = reciprocal_rank_fusion([_hits("Z", "M"), _hits("M", "Z")], k=60)

        assert [h.point_id for h in fused] == ["M", "Z"]
        assert fused[0].score == fused[1].score

    def test_deterministic_across_input_order(self):
        a = reciprocal_rank_fusion([_hits("x", "y", "z"), _hits("q", "y")])
        b = reciprocal_rank_fusion([_hits("q", "y"), _hits("x", "y", "z")])

        assert [h.point_id for h in a] == [h.point_id for h in b]

    def test_single_list_and_empty(self):
        assert [h.point_id for h in reciprocal_rank_fusion([_hits("a", "b")])] == ["a", "b"]
        assert reciprocal_rank_fusion([]) == []
        assert reciprocal_rank_fusion([[], []]) == []

    def test_keeps_payload(self):
        fused = reciprocal_rank_fusion([[], _hits("A")])

        assert fused[0].payload == {"path": "/A"}


def _entry(embedder, path: Path, text: str) -> IndexEntry:
    record = FileRecord(path=path, kind=EntryKind.FILE, size=len(text), mtime=None, extension=path.suffix)
    summary = Summary(path=path, text=text, source_hash="h-" + path.name)
    vector = embedder.embed(text, path)
    return IndexEntry.build(summary, vector, record)


@pytest.fixture
def hybrid(store, embedder, test_config):
    store.ensure_collection(embedder.dimension)
    index = HybridIndex(store, embedder, test_config)
    yield index
    index.close()


class TestHybridIndex:

    @pytest.mark.asyncio
    async def test_upsert_then_fetch_payload(self, hybrid, embedder, temp_dir):
        path = temp_dir / "garden.md"
        await hybrid.upsert(_entry(embedder, path, "Planting schedule for tomatoes"))

        payload = await hybrid.fetch_payload(path)

        assert payload["path"] == str(path)
        assert payload["summary"] == "Planting schedule for tomatoes"
        assert payload["kind"] == "file"
        assert payload["content_hash"] == "h-garden.md"

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, hybrid, embedder, temp_dir):
        path = temp_dir / "notes.txt"
        await hybrid.upsert(_entry(embedder, path, "first version"))
        await hybrid.upsert(_entry(embedder, path, "second version"))

        assert await hybrid.count() == 1
        assert (await hybrid.fetch_payload(path))["summary"] == "second version"

    @pytest.mark.asyncio
    async def test_query_finds_lexical_match(self, hybrid, embedder, temp_dir):
        docs = {
            "taxes.pdf": "Income tax return with W2 forms for 2023",
            "garden.md": "Planting schedule for tomatoes and peppers",
            "car.txt": "Service history of the family car",
        }
        for name, text in docs.items():
            await hybrid.upsert(_entry(embedder, temp_dir / name, text))

        results = await hybrid.query("tomatoes planting", top_k=2)

        assert len(results) == 2
        assert results[0].path == str(temp_dir / "garden.md")
        assert results[0].summary == docs["garden.md"]
        assert results[0].point_id == point_id_for(temp_dir / "garden.md")
        assert results[0].score >= results[1].score

    @pytest.mark.asyncio
    async def test_query_with_only_stopwords_uses_dense(self, hybrid, embedder, temp_dir):
        await hybrid.upsert(_entry(embedder, temp_dir / "a.txt", "anything at all"))

        results = await hybrid.query("the and of", top_k=3)

        assert [r.path for r in results] == [str(temp_dir / "a.txt")]

    @pytest.mark.asyncio
    async def test_rejects_non_positive_top_k(self, hybrid):
        with pytest.raises(PolicyError):
            await hybrid.query("anything", top_k=0)

    @pytest.mark.asyncio
    async def test_delete(self, hybrid, embedder, temp_dir):
        path = temp_dir / "gone.txt"
        await hybrid.upsert(_entry(embedder, path, "soon deleted"))

        await hybrid.delete([point_id_for(path)])

        assert await hybrid.fetch_payload(path) is None
        assert await hybrid.count() == 0

    @pytest.mark.asyncio
    async def test_empty_collection(self, store, embedder, test_config):
        """Querying before anything was indexed returns nothing."""
        index = HybridIndex(store, embedder, test_config)

        assert await index.query("anything") == []
        index.close()


class TestQdrantVectorStore:

    def test_ensure_collection_is_idempotent(self, store):
        store.ensure_collection(32)
        store.ensure_collection(32)

        assert store.collection_exists()
        assert store.count() == 0

    def test_upsert_without_sparse_terms(self, store, temp_dir):
        store.ensure_collection(4)
        point_id = point_id_for(temp_dir / "x")

        store.upsert(point_id, {"path": "x"}, [1.0, 0.0, 0.0, 0.0], SparseVector())

        assert store.fetch_payload(point_id) == {"path": "x"}
        assert store.search_sparse(SparseVector(), limit=5) == []
        assert [h.point_id for h in store.search_dense([1.0, 0.0, 0.0, 0.0], limit=5)] == [point_id]

    def test_ping(self, store):
        store.ping()
