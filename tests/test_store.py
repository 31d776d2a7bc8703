"""
Tests for SqliteStore: atomic per-document replacement, reads and metadata.
"""
from __future__ import annotations

import threading

import numpy as np
import pytest

from noteindex.errors import StorageError
from noteindex.models import Chunk, Document
from noteindex.store import DocumentRecord, EntryRecord, Posting


def _record(doc_id: str, body: str = "hello world", dims: int = 4, n_chunks: int = 1,
            date_value: float = 10.0, fp: str | None = None) -> DocumentRecord:
    doc = Document(doc_id=doc_id, rel_path=f"{doc_id}.md", title=f"Title {doc_id}", body=body,
                   fingerprint=fp or f"fp-{doc_id}", tags=frozenset({"x"}))
    chunks = tuple(
        Chunk(f"{doc_id}-{i}", doc_id, i, 0, len(body), body, f"h{i}") for i in range(n_chunks)
    )
    vectors = np.ones((n_chunks, dims), dtype=np.float32)
    postings = tuple(Posting("body", term, (i,)) for i, term in enumerate(body.split()))
    return DocumentRecord(doc, postings, (("date", date_value),), chunks, vectors, model_id="m1")


class TestReplaceDocument:
    """A document's rows are replaced as one unit."""

    def test_insert_and_read(self, store):
        store.replace_document(_record("a"))
        assert store.get_fingerprint("a") == "fp-a"
        assert store.document_count() == 1
        assert store.all_doc_ids() == {"a"}
        (hit,) = store.postings("body", "hello")
        assert (hit.doc_id, hit.tf, hit.positions) == ("a", 1, (0,))

    def test_replace_drops_stale_rows(self, store):
        store.replace_document(_record("a", body="rust ownership", n_chunks=2))
        store.replace_document(_record("a", body="go channels", n_chunks=1, fp="fp-2"))
        assert store.postings("body", "rust") == []
        assert [h.doc_id for h in store.postings("body", "go")] == ["a"]
        assert len(store.get_chunks("a")) == 1
        assert store.get_fingerprint("a") == "fp-2"

    def test_chunk_vector_mismatch_rejected(self, store):
        rec = _record("a", n_chunks=2)
        bad = DocumentRecord(rec.document, rec.postings, rec.field_values, rec.chunks, rec.vectors[:1], "m1")
        with pytest.raises(StorageError):
            store.replace_document(bad)
        assert store.get_fingerprint("a") is None

    def test_dims_pinned_on_first_write(self, store):
        store.replace_document(_record("a", dims=4))
        with pytest.raises(StorageError) as exc:
            store.replace_document(_record("b", dims=8))
        assert exc.value.doc_id == "b"
        assert store.all_doc_ids() == {"a"}
        assert store.status()["dims"] == 4

    def test_failed_write_keeps_previous_version(self, store):
        store.replace_document(_record("a", body="original text"))
        with pytest.raises(StorageError):
            store.replace_document(_record("a", body="new text", dims=8, fp="fp-new"))
        assert store.get_fingerprint("a") == "fp-a"
        assert [h.doc_id for h in store.postings("body", "original")] == ["a"]

    def test_empty_document_has_no_vectors(self, store):
        store.replace_document(_record("a", body="", n_chunks=0))
        assert store.get_fingerprint("a") == "fp-a"
        assert store.chunk_vectors(["a"]) == {}


class TestDelete:
    def test_delete_removes_everything(self, store):
        store.replace_document(_record("a", n_chunks=2))
        assert store.delete_document("a") is True
        assert store.get_fingerprint("a") is None
        assert store.postings("body", "hello") == []
        assert store.get_chunks("a") == []
        assert store.filter_values("date", "=", 10.0) == set()

    def test_delete_missing(self, store):
        assert store.delete_document("nope") is False


class TestReads:
    """Typed filters, vectors and document lookups."""

    def test_filter_values(self, store):
        store.replace_document(_record("a", date_value=10.0))
        store.replace_document(_record("b", date_value=20.0))
        assert store.filter_values("date", ">", 10.0) == {"b"}
        assert store.filter_values("date", ">=", 10.0) == {"a", "b"}
        assert store.filter_values("date", "<", 20.0) == {"a"}
        assert store.filter_values("date", "=", 20.0) == {"b"}

    def test_filter_rejects_unknown_operator(self, store):
        with pytest.raises(ValueError):
            store.filter_values("date", "; DROP TABLE documents", 1.0)

    def test_fingerprints(self, store):
        store.replace_document(_record("a"))
        assert store.get_fingerprints() == {"a": ("a.md", "fp-a")}

    def test_chunk_vectors_grouped_by_document(self, store):
        store.replace_document(_record("a", n_chunks=3))
        vectors = store.chunk_vectors(["a", "missing"])
        assert list(vectors) == ["a"]
        assert vectors["a"].shape == (3, 4)
        assert vectors["a"].dtype == np.float32

    def test_nearest_chunks(self, store):
        rec_a = _record("a")
        rec_b = _record("b")
        store.replace_document(DocumentRecord(rec_a.document, rec_a.postings, rec_a.field_values, rec_a.chunks,
                                              np.array([[1, 0, 0, 0]], dtype=np.float32), "m1"))
        store.replace_document(DocumentRecord(rec_b.document, rec_b.postings, rec_b.field_values, rec_b.chunks,
                                              np.array([[0, 1, 0, 0]], dtype=np.float32), "m1"))
        hits = store.nearest_chunks(np.array([0.9, 0.1, 0, 0], dtype=np.float32), k=2)
        assert [h.doc_id for h in hits] == ["a", "b"]
        assert hits[0].score > hits[1].score

    def test_get_documents_decodes_json(self, store):
        store.replace_document(_record("a"))
        doc = store.get_documents(["a"])["a"]
        assert doc["title"] == "Title a"
        assert doc["tags"] == ["x"]
        assert doc["properties"] == {}

    def test_nested_snapshot(self, store):
        store.replace_document(_record("a"))
        with store.snapshot():
            with store.snapshot():
                assert store.document_count() == 1
            assert store.all_doc_ids() == {"a"}

    def test_status(self, store):
        store.replace_document(_record("a", n_chunks=2))
        status = store.status()
        assert status["indexed_documents"] == 1
        assert status["indexed_chunks"] == 2
        assert status["model_id"] == "m1"


def _with_task(rec: DocumentRecord, entry_id: str = "a-task") -> DocumentRecord:
    task = EntryRecord(
        entry_id=entry_id,
        kind="task",
        title="Ship it",
        body="release notes",
        tags=frozenset(),
        status="todo",
        postings=(Posting("type", "task", (0,)), Posting("body", "release", (0,))),
        field_values=(("deadline", 30.0),),
    )
    return DocumentRecord(rec.document, rec.postings, rec.field_values, rec.chunks, rec.vectors,
                          rec.model_id, entries=(task,))


class TestEntries:
    """Tasks, meetings and headings stored alongside their note."""

    def test_entries_are_rows_of_their_own(self, store):
        store.replace_document(_with_task(_record("a", n_chunks=2)))
        assert store.document_count() == 1
        assert store.entry_count() == 2
        assert store.all_doc_ids() == {"a"}
        assert store.all_entry_ids() == {"a", "a-task"}
        assert store.get_fingerprints() == {"a": ("a.md", "fp-a")}
        entry = store.get_documents(["a-task"])["a-task"]
        assert (entry["kind"], entry["parent_id"], entry["rel_path"], entry["status"]) == ("task", "a", "a.md", "todo")
        assert store.status()["indexed_entries"] == 1

    def test_entries_share_note_vectors(self, store):
        store.replace_document(_with_task(_record("a", n_chunks=2)))
        vectors = store.chunk_vectors(["a-task"])
        assert vectors["a-task"].shape == (2, 4)

    def test_replace_and_delete_drop_entries(self, store):
        store.replace_document(_with_task(_record("a")))
        store.replace_document(_record("a", fp="fp-2"))
        assert store.all_entry_ids() == {"a"}
        assert store.postings("body", "release") == []
        assert store.filter_values("deadline", "=", 30.0) == set()

        store.replace_document(_with_task(_record("a", fp="fp-3")))
        assert store.delete_document("a") is True
        assert store.entry_count() == 0
        assert store.postings("type", "task") == []


class TestSnapshotIsolation:
    def test_reader_sees_one_version_while_a_replace_commits(self, store):
        store.replace_document(_record("a", body="old words"))
        writer_error: list[BaseException] = []

        def replace():
            try:
                store.replace_document(_record("a", body="new words", fp="fp-new"))
            except BaseException as e:
                writer_error.append(e)

        with store.snapshot():
            assert store.get_fingerprint("a") == "fp-a"
            writer = threading.Thread(target=replace)
            writer.start()
            writer.join(timeout=10)
            assert not writer.is_alive()
            assert writer_error == []
            assert store.get_fingerprint("a") == "fp-a"
            assert [h.doc_id for h in store.postings("body", "old")] == ["a"]
            assert store.postings("body", "new") == []
            assert store.get_documents(["a"])["a"]["body"] == "old words"

        assert store.get_fingerprint("a") == "fp-new"
        assert store.postings("body", "old") == []
        assert [h.doc_id for h in store.postings("body", "new")] == ["a"]
