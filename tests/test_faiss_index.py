import math

import pytest

from primer.core.errors import IndexWriteFailure
from primer.core.faiss_index import FaissStoreError, FaissVectorStore, matches_filter
from primer.core.models import ChunkMetadata, IndexedRecord


def make_record(record_id, values, document_id="doc_a", chapter=None, keywords=None):
    metadata = ChunkMetadata(
        document_id=document_id,
        source="book.pdf",
        chunk_id=record_id,
        chunk_index=0,
        total_chunks=1,
        chunk_type="content",
        text=f"text of {record_id}",
        chapter=chapter,
        keywords=keywords or [],
    )
    return IndexedRecord(id=record_id, values=values, metadata=metadata)


@pytest.fixture
def store():
    return FaissVectorStore(2)


@pytest.fixture
def ranked_store(store):
    store.upsert([
        make_record("low", [0.2, math.sqrt(0.96)]),
        make_record("high", [0.9, math.sqrt(0.19)]),
        make_record("mid", [0.5, math.sqrt(0.75)]),
    ])
    return store


class TestQuery:
    """Cosine top-k search."""

    def test_best_matches_first(self, ranked_store):
        matches = ranked_store.query([1.0, 0.0], top_k=2)
        assert [m.id for m in matches] == ["high", "mid"]
        assert matches[0].score == pytest.approx(0.9, abs=1e-5)
        assert matches[1].score == pytest.approx(0.5, abs=1e-5)

    def test_scores_ignore_vector_length(self, ranked_store):
        matches = ranked_store.query([10.0, 0.0], top_k=1)
        assert matches[0].score == pytest.approx(0.9, abs=1e-5)

    def test_top_k_larger_than_index(self, ranked_store):
        assert len(ranked_store.query([1.0, 0.0], top_k=10)) == 3

    def test_metadata_is_returned(self, ranked_store):
        match = ranked_store.query([1.0, 0.0], top_k=1)[0]
        assert match.metadata["chunk_id"] == "high"
        assert match.metadata["text"] == "text of high"
        assert "chapter" not in match.metadata

    def test_ties_keep_insertion_order(self, store):
        store.upsert([make_record("first", [1.0, 0.0]), make_record("second", [2.0, 0.0])])
        assert [m.id for m in store.query([1.0, 0.0], top_k=2)] == ["first", "second"]

        store.upsert([make_record("first", [3.0, 0.0])])
        assert [m.id for m in store.query([1.0, 0.0], top_k=2)] == ["first", "second"]

    def test_invalid_arguments(self, ranked_store):
        with pytest.raises(ValueError):
            ranked_store.query([1.0, 0.0], top_k=0)
        with pytest.raises(ValueError):
            ranked_store.query([1.0, 0.0, 0.0], top_k=1)

    def test_empty_index(self, store):
        assert store.query([1.0, 0.0], top_k=3) == []


class TestFilters:
    def test_exact_match(self, store):
        store.upsert([
            make_record("a", [1.0, 0.0], chapter="Cells"),
            make_record("b", [1.0, 0.1], chapter="Energy"),
        ])
        matches = store.query([1.0, 0.0], top_k=5, metadata_filter={"chapter": "Energy"})
        assert [m.id for m in matches] == ["b"]

    def test_list_membership(self):
        metadata = {"keywords": ["membrane", "protein"], "chapter": "Cells"}
        assert matches_filter(metadata, {"keywords": "membrane"})
        assert not matches_filter(metadata, {"keywords": "enzyme"})
        assert matches_filter(metadata, {"keywords": "protein", "chapter": "Cells"})
        assert not matches_filter(metadata, {"missing": "x"})
        assert matches_filter(metadata, None)

    def test_ids_matching_in_insertion_order(self, store):
        store.upsert([
            make_record("b1", [1.0, 0.0], document_id="doc_b"),
            make_record("a1", [0.0, 1.0]),
            make_record("b2", [1.0, 1.0], document_id="doc_b"),
        ])
        assert store.ids_matching({"document_id": "doc_b"}) == ["b1", "b2"]


class TestWrites:
    def test_upsert_replaces_existing_ids(self, store):
        store.upsert([make_record("a", [1.0, 0.0])])
        store.upsert([make_record("a", [0.0, 1.0])])

        assert store.stats().vector_count == 1
        assert store.query([0.0, 1.0], top_k=1)[0].score == pytest.approx(1.0, abs=1e-5)

    def test_duplicate_ids_in_one_call_keep_the_last(self, store):
        written = store.upsert([make_record("a", [1.0, 0.0]), make_record("a", [0.0, 1.0])])
        assert written == 1
        assert store.query([0.0, 1.0], top_k=1)[0].score == pytest.approx(1.0, abs=1e-5)

    def test_dimension_mismatch_is_rejected(self, store):
        with pytest.raises(IndexWriteFailure):
            store.upsert([make_record("a", [1.0, 0.0, 0.0])])
        assert store.stats().vector_count == 0

    def test_failed_replacement_keeps_previous_vector(self, store, monkeypatch):
        store.upsert([make_record("a", [1.0, 0.0], chapter="Cells")])

        def broken(values):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "_prepare", broken)
        with pytest.raises(IndexWriteFailure):
            store.upsert([make_record("a", [0.0, 1.0], chapter="Energy"), make_record("b", [0.0, 1.0])])
        monkeypatch.undo()

        assert store.stats().vector_count == 1
        match = store.query([1.0, 0.0], top_k=5)[0]
        assert match.id == "a"
        assert match.metadata["chapter"] == "Cells"
        assert store.ids_matching({"chapter": "Cells"}) == ["a"]
        assert store.ids_matching({"chunk_id": "b"}) == []

    def test_delete(self, ranked_store):
        assert ranked_store.delete(["high", "unknown"]) == 1
        assert [m.id for m in ranked_store.query([1.0, 0.0], top_k=3)] == ["mid", "low"]
        assert ranked_store.delete([]) == 0

    def test_stats(self, ranked_store):
        stats = ranked_store.stats()
        assert stats.vector_count == 3
        assert stats.dimensions == 2
        assert stats.total_size == 3 * 2 * 4

    def test_clear(self, ranked_store):
        ranked_store.clear()
        assert ranked_store.stats().vector_count == 0
        assert ranked_store.query([1.0, 0.0], top_k=1) == []


class TestPersistence:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "index"
        store = FaissVectorStore(2, index_path=path)
        store.upsert([make_record("x", [1.0, 0.0]), make_record("y", [1.0, 0.0])])
        store.persist()

        reloaded = FaissVectorStore(2, index_path=path)
        assert reloaded.load()
        assert [m.id for m in reloaded.query([1.0, 0.0], top_k=2)] == ["x", "y"]

        reloaded.upsert([make_record("z", [0.0, 1.0])])
        assert reloaded.stats().vector_count == 3

    def test_nothing_to_load(self, tmp_path):
        assert not FaissVectorStore(2, index_path=tmp_path / "missing").load()
        assert not FaissVectorStore(2).load()

    def test_dimension_mismatch_on_load(self, tmp_path):
        store = FaissVectorStore(2, index_path=tmp_path)
        store.upsert([make_record("x", [1.0, 0.0])])
        store.persist()

        with pytest.raises(FaissStoreError):
            FaissVectorStore(3, index_path=tmp_path).load()

    def test_clear_is_persisted(self, tmp_path):
        store = FaissVectorStore(2, index_path=tmp_path)
        store.upsert([make_record("x", [1.0, 0.0])])
        store.persist()
        store.clear()

        reloaded = FaissVectorStore(2, index_path=tmp_path)
        reloaded.load()
        assert reloaded.stats().vector_count == 0

    def test_clear_replaces_index_with_other_dimensions(self, tmp_path):
        store = FaissVectorStore(2, index_path=tmp_path)
        store.upsert([make_record("x", [1.0, 0.0])])
        store.persist()

        FaissVectorStore(3, index_path=tmp_path).clear()

        reloaded = FaissVectorStore(3, index_path=tmp_path)
        assert reloaded.load()
        assert reloaded.stats().vector_count == 0
