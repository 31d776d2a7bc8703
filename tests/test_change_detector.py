"""Tests for the change detector: incremental add/update/delete across a notes root."""
from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from noteindex.errors import ParseError, StorageError
from noteindex.hashing import doc_id_for
from noteindex.indexer import ChangeDetector, IndexingPipeline, Reconciler, matches_ignore_pattern


@pytest.fixture
def detector(store, embedder, notes_root: Path) -> ChangeDetector:
    pipeline = IndexingPipeline(store, embedder)
    reconciler = Reconciler(notes_root, ignore=["**/.DS_Store", "archive/**"])
    return ChangeDetector(pipeline, reconciler, workers=4)


def _write(root: Path, rel: str, text: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestReindexAll:
    """Full reconciliation against the notes root."""

    def test_first_run_adds_everything(self, detector, notes_root):
        _write(notes_root, "a.md", "# A\nalpha\n")
        _write(notes_root, "sub/b.org", "* B\nbeta\n")
        report = detector.reindex_all()
        assert sorted(report.added) == sorted([doc_id_for("a.md"), doc_id_for("sub/b.org")])
        assert report.ok
        assert report.summary().startswith("2 added")

    def test_second_run_is_unchanged(self, detector, notes_root, embedder):
        _write(notes_root, "a.md", "# A\nalpha\n")
        detector.reindex_all()
        report = detector.reindex_all()
        assert report.added == [] and report.updated == []
        assert report.unchanged == 1
        assert embedder.calls == calls

    def test_modified_file_is_updated(self, detector, notes_root, store):
        path = _write(notes_root, "a.md", "# A\nalpha\n")
        detector.reindex_all()
        path.write_text("# A\ngamma\n", encoding="utf-8")
        report = detector.reindex_all()
        assert report.updated == [doc_id_for("a.md")]
        assert store.postings("body", "alpha") == []
        assert store.postings("body", "gamma")

    def test_whitespace_only_edit_is_unchanged(self, detector, notes_root):
        path = _write(notes_root, "a.md", "# A\nalpha\n")
        detector.reindex_all()
        path.write_text("# A   \r\nalpha\n\n\n", encoding="utf-8")
        assert detector.reindex_all().unchanged == 1

    def test_removed_file_is_deleted(self, detector, notes_root, store):
        path = _write(notes_root, "a.md", "# A\nalpha\n")
        _write(notes_root, "b.md", "# B\nbeta\n")
        detector.reindex_all()
        path.unlink()
        report = detector.reindex_all()
        assert report.deleted == [doc_id_for("a.md")]
        assert store.get_fingerprint(doc_id_for("a.md")) is None
        assert store.get_fingerprint(doc_id_for("b.md")) is not None

    def test_force_reindexes_unchanged(self, detector, notes_root):
        _write(notes_root, "a.md", "# A\nalpha\n")
        detector.reindex_all()
        report = detector.reindex_all(force=True)
        assert report.updated == [doc_id_for("a.md")]

    def test_ignored_and_unsupported_files_skipped(self, detector, notes_root, store):
        _write(notes_root, "a.md", "# A\n")
        _write(notes_root, "archive/old.md", "# Old\n")
        _write(notes_root, "sub/.DS_Store", "junk")
        _write(notes_root, "readme.txt", "plain")
        detector.reindex_all()
        assert store.all_doc_ids() == {doc_id_for("a.md")}

    def test_explicit_paths(self, detector, notes_root, store):
        a = _write(notes_root, "a.md", "# A\n")
        _write(notes_root, "b.md", "# B\n")
        detector.reindex_all([a])
        assert store.all_doc_ids() == {doc_id_for("a.md")}


class TestFailures:
    """Per-document failures are reported; storage failures abort."""

    def test_parse_error_is_reported(self, detector, notes_root, store):
        _write(notes_root, "good.md", "# Good\n")
        _write(notes_root, "bad.md", "# Bad\n\x00")
        report = detector.reindex_all()
        assert report.added == [doc_id_for("good.md")]
        assert isinstance(report.failed[doc_id_for("bad.md")], ParseError)
        assert not report.ok

    def test_parse_failure_keeps_previous_version(self, detector, notes_root, store):
        path = _write(notes_root, "a.md", "# A\nalpha\n")
        detector.reindex_all()
        path.write_text("# A\n\x00", encoding="utf-8")
        report = detector.reindex_all()
        assert doc_id_for("a.md") in report.failed
        assert store.postings("body", "alpha")

    def test_unreadable_file_is_not_deleted(self, detector, notes_root, store):
        _write(notes_root, "a.md", "# A\nalpha\n")
        _write(notes_root, "b.md", "# B\nbeta\n")
        detector.reindex_all()

        original = detector.reconciler.entry_for

        def flaky(path: Path):
            if Path(path).name == "b.md":
                raise PermissionError("denied")
            return original(path)

        with patch.object(detector.reconciler, "entry_for", side_effect=flaky):
            report = detector.reindex_all()

        assert isinstance(report.failed[doc_id_for("b.md")], ParseError)
        assert report.deleted == []
        assert store.get_fingerprint(doc_id_for("b.md")) is not None

    def test_storage_error_propagates(self, detector, notes_root, store):
        _write(notes_root, "a.md", "# A\n")
        with patch.object(store, "replace_document", side_effect=StorageError("disk full")):
            with pytest.raises(StorageError):
                detector.reindex_all()


class TestCancellation:
    def test_cancel_stops_between_documents(self, store, embedder, notes_root):
        for name in ("a", "b", "c"):
            _write(notes_root, f"{name}.md", f"# {name}\ntext {name}\n")
        detector = ChangeDetector(IndexingPipeline(store, embedder), Reconciler(notes_root), workers=1)
        embedder.on_call = detector.cancel

        report = detector.reindex_all()

        assert report.cancelled
        assert report.added == [doc_id_for("a.md")]
        assert store.all_doc_ids() == {doc_id_for("a.md")}

    def test_next_run_resumes(self, store, embedder, notes_root):
        for name in ("a", "b"):
            _write(notes_root, f"{name}.md", f"# {name}\ntext {name}\n")
        detector = ChangeDetector(IndexingPipeline(store, embedder), Reconciler(notes_root), workers=1)
        embedder.on_call = detector.cancel
        detector.reindex_all()

        embedder.on_call = None
        report = detector.reindex_all()
        assert not report.cancelled
        assert report.added == [doc_id_for("b.md")]
        assert report.unchanged == 1

    def test_interrupt_drops_queued_documents(self, store, embedder, notes_root):
        for i in range(12):
            _write(notes_root, f"n{i:02d}.md", f"# N{i}\ntext {i}\n")
        detector = ChangeDetector(IndexingPipeline(store, embedder), Reconciler(notes_root), workers=1)

        def interrupt():
            if embedder.calls == 2:
                raise KeyboardInterrupt

        embedder.on_call = interrupt
        with pytest.raises(KeyboardInterrupt):
            detector.reindex_all()

        assert detector.cancel_event.is_set()
        assert embedder.calls < 12
        assert len(store.all_doc_ids()) < 12

        embedder.on_call = None
        report = detector.reindex_all()
        assert not report.cancelled
        assert len(store.all_doc_ids()) == 12


class TestUpdatePaths:
    """Partial updates from the watcher."""

    def test_changed_path_only(self, detector, notes_root, store):
        a = _write(notes_root, "a.md", "# A\nalpha\n")
        _write(notes_root, "b.md", "# B\nbeta\n")
        detector.reindex_all()
        a.write_text("# A\ndelta\n", encoding="utf-8")
        report = detector.update_paths([a])
        assert report.updated == [doc_id_for("a.md")]
        assert store.get_fingerprint(doc_id_for("b.md")) is not None

    def test_vanished_path_is_deleted(self, detector, notes_root, store):
        a = _write(notes_root, "a.md", "# A\n")
        detector.reindex_all()
        a.unlink()
        report = detector.update_paths(["a.md"])
        assert report.deleted == [doc_id_for("a.md")]

    def test_new_path_is_added(self, detector, notes_root):
        detector.reindex_all()
        _write(notes_root, "new.org", "* New\n")
        assert detector.update_paths(["new.org"]).added == [doc_id_for("new.org")]

    def test_ignored_path(self, detector, notes_root, store):
        _write(notes_root, "archive/x.md", "# X\n")
        report = detector.update_paths(["archive/x.md"])
        assert report.added == []
        assert store.document_count() == 0

    def test_worker_connections_are_released(self, store, embedder, notes_root):
        detector = ChangeDetector(IndexingPipeline(store, embedder), Reconciler(notes_root), workers=2)
        path = _write(notes_root, "a.md", "# A\nv0\n")
        for i in range(20):
            path.write_text(f"# A\nversion {i}\n", encoding="utf-8")
            report = detector.update_paths([path, "b.md"])
            assert report.ok
        assert len(store._connections) <= 2
        assert store.postings("body", "19")


class TestIgnorePatterns:
    def test_patterns(self):
        patterns = ["**/.DS_Store", ".git/**", "**/*.org_archive"]
        assert matches_ignore_pattern("a/b/.DS_Store", patterns)
        assert matches_ignore_pattern(".git/config", patterns)
        assert matches_ignore_pattern("x/y.org_archive", patterns)
        assert not matches_ignore_pattern("notes/a.org", patterns)
