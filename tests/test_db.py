"""Tests for the SQLite embedding store."""
import math

import pytest

from pdfrag.db import EmbeddingStore, decode_vector, encode_vector
from pdfrag.errors import DataError, StoreError


def reference_cosine(a, b):
    dot = sum(x * y for x, y in zip(a, b))
    return dot / (math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b)))


def count_rows(store):
    return store.conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]


class TestCollections:
    def test_add_and_lookup(self, store):
        assert store.add_collection("/data/a.pdf")
        assert store.add_collection("/data/b.pdf", topic="b")

        assert store.has_collection("/data/a.pdf")
        assert not store.has_collection("/data/c.pdf")
        assert store.list_collections() == ["/data/a.pdf", "/data/b.pdf"]
        assert store.collection_at(0) == "/data/a.pdf"
        assert store.collection_at(1) == "/data/b.pdf"
        assert store.collection_at(2) is None
        assert store.collection_at(-1) is None

    def test_duplicate_name_is_reported_not_raised(self, store, reported_errors):
        assert store.add_collection("doc")
        assert not store.add_collection("doc")

        assert store.list_collections() == ["doc"]
        assert len(reported_errors) == 1
        assert "inserting collection" in reported_errors[0]


class TestAddDocument:
    def test_same_id_same_vector_keeps_one_row(self, store):
        assert store.add_document("a.pdf:1:0", "text", [1.0, 2.0, 3.0])
        assert not store.add_document("a.pdf:1:0", "text", [1.0, 2.0, 3.0])
        assert count_rows(store) == 1

    def test_same_id_different_vector_first_write_wins(self, store):
        assert store.add_document("a.pdf:1:0", "first", [1.0, 2.0, 3.0])
        assert not store.add_document("a.pdf:1:0", "second", [3.0, 2.0, 1.0])

        assert count_rows(store) == 1
        assert store.get_vector("a.pdf:1:0") == [1.0, 2.0, 3.0]
        assert store.document_at(1).text == "first"

    def test_identical_vector_under_new_id_is_skipped(self, store):
        assert store.add_document("a.pdf:1:0", "one", [0.5, 0.25])
        assert not store.add_document("b.pdf:1:0", "two", [0.5, 0.25])
        assert count_rows(store) == 1

    def test_nearly_identical_vector_is_not_deduplicated(self, store):
        assert store.add_document("a", "one", [0.5, 0.25])
        assert store.add_document("b", "two", [0.5, 0.25 + 1e-12])
        assert count_rows(store) == 2

    def test_vector_round_trip_is_bit_exact(self, store):
        vector = [0.1, 1 / 3, -2.5e-300, 1e308, -0.0, 123456.789]
        store.add_document("doc:1:0", "text", vector)

        restored = store.get_vector("doc:1:0")
        assert restored == vector
        assert [math.copysign(1, x) for x in restored] == [math.copysign(1, x) for x in vector]

    def test_rejects_dimension_mismatch(self, store, reported_errors):
        assert store.add_document("a", "one", [1.0, 0.0, 0.0])
        assert not store.add_document("b", "two", [1.0, 0.0])

        assert count_rows(store) == 1
        assert store.dimension == 3
        assert "dimension mismatch" in reported_errors[0]

    def test_insert_document_raises_instead_of_reporting(self, store, reported_errors):
        assert store.insert_document("a", "one", [1.0, 0.0, 0.0])
        assert not store.insert_document("a", "one", [1.0, 0.0, 0.0])

        with pytest.raises(DataError):
            store.insert_document("b", "two", [1.0, 0.0])
        with pytest.raises(DataError):
            store.insert_document("c", "three", [])
        assert reported_errors == []

        store.close()
        with pytest.raises(StoreError):
            store.insert_document("d", "four", [0.0, 1.0, 0.0])

    def test_rejects_empty_embedding(self, store, reported_errors):
        assert not store.add_document("a", "one", [])
        assert count_rows(store) == 0
        assert reported_errors

    def test_sequence_numbers_increase(self, store):
        store.add_document("a", "one", [1.0, 0.0])
        store.add_document("b", "two", [0.0, 1.0])

        first, second = store.document_at(1), store.document_at(2)
        assert (first.id, first.sequence) == ("a", 1)
        assert (second.id, second.text, second.sequence) == ("b", "two", 2)
        assert store.document_at(3) is None

    def test_document_keeps_collection(self, store):
        store.add_document("paper.pdf:2:1", "text", [1.0], collection="/data/paper.pdf")
        chunk = store.document_at(1)
        assert chunk.collection == "/data/paper.pdf"
        assert chunk.source == "paper.pdf"


class TestRemoveDocument:
    def test_removes_row(self, store):
        store.add_document("a", "one", [1.0, 0.0])
        assert store.remove_document("a")
        assert count_rows(store) == 0
        assert store.get_vector("a") is None

    def test_missing_id_still_succeeds(self, store):
        assert store.remove_document("never-added")

    def test_removed_id_can_be_added_again(self, store):
        store.add_document("a", "one", [1.0, 0.0])
        store.remove_document("a")
        assert store.add_document("a", "one", [1.0, 0.0])


class TestFindDocuments:
    VECTORS = {
        "doc.pdf:1:0": [1.0, 0.0, 0.0],
        "doc.pdf:1:1": [0.9, 0.1, 0.0],
        "doc.pdf:2:0": [0.0, 1.0, 0.0],
        "doc.pdf:2:1": [0.5, 0.5, 0.5],
        "doc.pdf:3:4": [-1.0, 0.2, 0.0],
    }

    @pytest.fixture
    def filled_store(self, store):
        for chunk_id, vector in self.VECTORS.items():
            store.add_document(chunk_id, f"text of {chunk_id}", vector)
        return store

    def test_top_k_sorted_by_cosine(self, filled_store):
        query = [0.8, 0.3, 0.1]
        results = filled_store.find_documents(query, 3)

        expected = sorted(self.VECTORS, key=lambda k: -reference_cosine(query, self.VECTORS[k]))[:3]
        assert [r.chunk_id for r in results] == expected
        for result in results:
            assert result.score == pytest.approx(reference_cosine(query, self.VECTORS[result.chunk_id]))
            assert result.text == f"text of {result.chunk_id}"
        assert results[0].chunk_id == "doc.pdf:1:1"
        assert results[0].sequence == 2

    def test_fewer_rows_than_top_k(self, filled_store):
        assert len(filled_store.find_documents([0.0, 0.0, 1.0], 50)) == len(self.VECTORS)

    def test_ties_keep_insertion_order(self, store):
        store.add_document("b", "b", [2.0, 0.0])
        store.add_document("a", "a", [1.0, 0.0])
        store.add_document("c", "c", [0.0, 1.0])

        results = store.find_documents([1.0, 0.0], 2)
        assert [r.chunk_id for r in results] == ["b", "a"]

    def test_zero_vector_ranks_last(self, store):
        store.add_document("zero", "z", [0.0, 0.0])
        store.add_document("far", "f", [-1.0, 0.0])

        results = store.find_documents([1.0, 0.0], 2)
        assert [r.chunk_id for r in results] == ["far", "zero"]
        assert math.isnan(results[1].score)

    def test_malformed_vector_is_skipped(self, filled_store):
        filled_store.conn.execute(
            "INSERT INTO embeddings (operation, topic, id, document, vector) VALUES (1, '', ?, ?, ?)",
            ("broken", "broken", b"\x00\x01\x02"),
        )
        filled_store.conn.commit()

        results = filled_store.find_documents([1.0, 0.0, 0.0], 10)
        assert "broken" not in [r.chunk_id for r in results]
        assert len(results) == len(self.VECTORS)

    def test_malformed_oldest_vector_does_not_fix_dimension(self, tmp_path, reported_errors):
        path = tmp_path / "damaged.db"
        with EmbeddingStore(path) as store:
            store.conn.execute(
                "INSERT INTO embeddings (operation, topic, id, document, vector) VALUES (1, '', ?, ?, ?)",
                ("broken", "broken", b"\x00\x01\x02"),
            )
            store.conn.commit()

        with EmbeddingStore(path, on_error=reported_errors.append) as store:
            assert store.dimension is None
            assert store.add_document("good", "g", [1.0, 0.0])
            assert store.dimension == 2

            results = store.find_documents([1.0, 0.0], 5)

        assert [r.chunk_id for r in results] == ["good"]
        assert reported_errors == []

    def test_query_dimension_mismatch_is_reported(self, filled_store, reported_errors):
        assert filled_store.find_documents([1.0, 0.0], 3) == []
        assert "dimension mismatch" in reported_errors[-1]

    def test_empty_query_is_reported(self, filled_store, reported_errors):
        assert filled_store.find_documents([], 3) == []
        assert reported_errors

    def test_faiss_index_gives_same_ranking(self, tmp_path):
        with EmbeddingStore(tmp_path / "faiss.db", index_kind="faiss") as store:
            for chunk_id, vector in self.VECTORS.items():
                store.add_document(chunk_id, chunk_id, vector)
            query = [0.8, 0.3, 0.1]
            expected = sorted(self.VECTORS, key=lambda k: -reference_cosine(query, self.VECTORS[k]))
            assert [r.chunk_id for r in store.find_documents(query, 5)] == expected


class TestFailures:
    def test_closed_store_reports_instead_of_raising(self, store, reported_errors):
        store.close()

        assert store.has_collection("a") is False
        assert store.list_collections() == []
        assert store.add_document("a", "t", [1.0]) is False
        assert store.remove_document("a") is False
        assert store.find_documents([1.0], 3) == []
        assert store.document_at(1) is None
        assert len(reported_errors) >= 5

    def test_unopenable_path_is_reported(self, tmp_path):
        errors = []
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")

        store = EmbeddingStore(blocker / "db.sqlite", on_error=errors.append)
        assert store.conn is None
        assert errors and "opening database" in errors[0]
        assert store.list_collections() == []

    def test_decode_rejects_bad_blobs(self):
        with pytest.raises(StoreError):
            decode_vector(b"")
        with pytest.raises(StoreError):
            decode_vector(b"\x00" * 9)
        assert decode_vector(encode_vector([1.5, -2.0])).tolist() == [1.5, -2.0]

    def test_stats(self, store):
        store.add_collection("c")
        store.add_document("a", "t", [1.0, 2.0])
        stats = store.get_stats()
        assert stats["document_count"] == 1
        assert stats["collection_count"] == 1
        assert stats["dimension"] == 2
