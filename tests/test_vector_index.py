"""Tests for the SQLite vector index."""

import threading

import pytest

from brain.chunker import chunk_note
from brain.errors import VectorIndexError
from brain.vector_index import ChunkVector, VectorIndex


def rows(n, dim=3, tag="v"):
    return [
        ChunkVector(i, f"{tag} {i}", [float(i + 1)] + [0.5] * (dim - 1), f"{tag}-{i}")
        for i in range(n)
    ]


class TestUpsert:
    def test_insert_and_read_checksums(self, index):
        index.upsert_chunks("demo", "notes/a", rows(2), model_id="m")
        assert index.checksums("demo", "notes/a") == {0: "v-0", 1: "v-1"}
        assert index.count("demo") == 2
        assert index.dimension == 3

    def test_replace_drops_trailing_chunks(self, index):
        index.upsert_chunks("demo", "notes/a", rows(3), model_id="m")
        index.upsert_chunks("demo", "notes/a", rows(1, tag="w"), model_id="m")
        assert index.checksums("demo", "notes/a") == {0: "w-0"}

    def test_empty_list_removes_note(self, index):
        index.upsert_chunks("demo", "notes/a", rows(2), model_id="m")
        index.upsert_chunks("demo", "notes/a", [], model_id="m")
        assert index.indexed_notes("demo") == set()

    def test_projects_are_separate(self, index):
        index.upsert_chunks("one", "notes/a", rows(1), model_id="m")
        index.upsert_chunks("two", "notes/b", rows(1), model_id="m")
        assert index.indexed_notes("one") == {"notes/a"}
        assert index.indexed_notes("two") == {"notes/b"}

    def test_dimension_mismatch(self, index):
        index.upsert_chunks("demo", "notes/a", rows(1, dim=3), model_id="m")
        with pytest.raises(VectorIndexError) as exc_info:
            index.upsert_chunks("demo", "notes/b", rows(1, dim=4), model_id="m")
        assert exc_info.value.kind == "dimension_mismatch"
        assert exc_info.value.remediation
        assert index.indexed_notes("demo") == {"notes/a"}

    def test_mixed_dimensions_rejected(self, index):
        bad = [ChunkVector(0, "a", [1.0, 0.0], "c0"), ChunkVector(1, "b", [1.0], "c1")]
        with pytest.raises(VectorIndexError):
            index.upsert_chunks("demo", "notes/a", bad, model_id="m")

    def test_failed_write_keeps_previous_state(self, index):
        index.upsert_chunks("demo", "notes/a", rows(2), model_id="m")
        bad = rows(1, tag="new") + [ChunkVector(1, "x", ["not-a-number", 1, 1], "bad")]
        with pytest.raises((ValueError, TypeError, VectorIndexError)):
            index.upsert_chunks("demo", "notes/a", bad, model_id="m")
        assert index.checksums("demo", "notes/a") == {0: "v-0", 1: "v-1"}

    def test_concurrent_writers_never_mix(self, index):
        def write(tag):
            for _ in range(20):
                index.upsert_chunks("demo", "notes/a", rows(4, tag=tag), model_id="m")

        threads = [threading.Thread(target=write, args=(t,)) for t in ("x", "y")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        tags = {checksum.split("-")[0] for checksum in index.checksums("demo", "notes/a").values()}
        assert len(tags) == 1

    def test_concurrent_first_writes_agree_on_dimension(self, index):
        barrier = threading.Barrier(2)
        errors = []

        def write(note_id, dim):
            barrier.wait()
            try:
                index.upsert_chunks("demo", note_id, rows(1, dim=dim), model_id="m")
            except VectorIndexError as e:
                errors.append(e.kind)

        threads = [
            threading.Thread(target=write, args=("notes/a", 3)),
            threading.Thread(target=write, args=("notes/b", 4)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == ["dimension_mismatch"]
        assert len(index.indexed_notes("demo")) == 1

    def test_dimension_recorded_by_other_handle(self, tmp_path):
        path = tmp_path / "idx.db"
        with VectorIndex(path) as first, VectorIndex(path) as second:
            first.upsert_chunks("demo", "notes/a", rows(1, dim=3), model_id="m")
            with pytest.raises(VectorIndexError) as exc_info:
                second.upsert_chunks("demo", "notes/b", rows(1, dim=4), model_id="m")
        assert exc_info.value.kind == "dimension_mismatch"

    def test_dimension_persists_across_reopen(self, tmp_path):
        path = tmp_path / "idx.db"
        with VectorIndex(path) as idx:
            idx.upsert_chunks("demo", "notes/a", rows(1, dim=5), model_id="m")
        with VectorIndex(path) as idx:
            assert idx.dimension == 5


class TestDelete:
    def test_delete_note(self, index):
        index.upsert_chunks("demo", "notes/a", rows(2), model_id="m")
        assert index.delete_note("demo", "notes/a") == 2
        assert index.count("demo") == 0

    def test_clear_all_resets_dimension(self, index):
        index.upsert_chunks("demo", "notes/a", rows(1), model_id="m")
        index.clear()
        assert index.dimension is None
        index.upsert_chunks("demo", "notes/a", rows(1, dim=6), model_id="m")

    def test_clear_project(self, index):
        index.upsert_chunks("one", "notes/a", rows(1), model_id="m")
        index.upsert_chunks("two", "notes/a", rows(1), model_id="m")
        index.clear("one")
        assert index.count("one") == 0
        assert index.count("two") == 1


class TestSearch:
    def test_best_chunk_per_note(self, index):
        index.upsert_chunks("demo", "notes/a", [
            ChunkVector(0, "a0", [1.0, 0.0], "a0"),
            ChunkVector(1, "a1", [0.0, 1.0], "a1"),
        ], model_id="m")
        index.upsert_chunks("demo", "notes/b", [ChunkVector(0, "b0", [0.7, 0.7], "b0")], model_id="m")

        hits = index.search_ann("demo", [0.0, 1.0], k=10, threshold=0.5)

        assert [h.note_id for h in hits] == ["notes/a", "notes/b"]
        assert hits[0].chunk_ix == 1
        assert hits[0].score == pytest.approx(1.0)

    def test_threshold_and_k(self, index):
        index.upsert_chunks("demo", "notes/a", [ChunkVector(0, "a", [1.0, 0.0], "a")], model_id="m")
        index.upsert_chunks("demo", "notes/b", [ChunkVector(0, "b", [0.0, 1.0], "b")], model_id="m")
        assert [h.note_id for h in index.search_ann("demo", [1.0, 0.0], threshold=0.7)] == ["notes/a"]
        assert len(index.search_ann("demo", [1.0, 1.0], k=1, threshold=0.0)) == 1

    def test_zero_vector_scores_zero(self, index):
        index.upsert_chunks("demo", "notes/a", [ChunkVector(0, "a", [1.0, 0.0], "a")], model_id="m")
        hits = index.search_ann("demo", [0.0, 0.0], threshold=0.0)
        assert hits[0].score == 0.0

    def test_query_dimension_checked(self, index):
        index.upsert_chunks("demo", "notes/a", rows(1, dim=3), model_id="m")
        with pytest.raises(VectorIndexError):
            index.search_ann("demo", [1.0, 0.0])

    def test_empty_project(self, index):
        assert index.search_ann("demo", [1.0]) == []


class TestReconciliation:
    def test_list_missing(self, index):
        index.upsert_chunks("demo", "notes/a", rows(1), model_id="m")
        assert index.list_missing("demo", ["notes/a", "notes/b"]) == ["notes/b"]

    def test_list_stale(self, index):
        chunks = chunk_note("alpha beta")
        index.upsert_chunks("demo", "notes/a", [
            ChunkVector(c.chunk_ix, c.text, [1.0, 0.0], c.checksum) for c in chunks
        ], model_id="m")
        assert index.list_stale("demo", {"notes/a": "alpha beta"}) == []
        assert index.list_stale("demo", {"notes/a": "alpha beta gamma"}) == ["notes/a"]
        assert index.list_stale("demo", {"notes/a": ""}) == ["notes/a"]

    def test_unindexed_notes_are_not_stale(self, index):
        assert index.list_stale("demo", {"notes/x": "text"}) == []
