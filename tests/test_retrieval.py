"""
End-to-end retrieval tests: notes on disk -> index -> AQL queries -> ranked results.
"""
from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from noteindex import NoteIndex
from noteindex.errors import RangeTypeError, UnknownFieldError
from noteindex.hashing import doc_id_for
from noteindex.retrieval import SearchOptions, make_snippet, max_cosine, phrase_frequency, tfidf

RUST = """---
title: Rust ownership
tags: [rust, work]
status: todo
date: 2025-01-10
---
Borrowing and lifetimes in rust. Memory safety without garbage collection.
"""

GO = """---
title: Go concurrency
tags: [go]
status: done
date: 2025-01-01
---
Goroutines and channels. Memory safety via garbage collection.
"""

JOURNAL = """#+TITLE: Journal
#+FILETAGS: :work:urgent:
#+DATE: <2024-12-31 Tue>

* Entry
Wrote some rust today.
"""


@pytest.fixture
def index(cfg, embedder, notes_root: Path):
    (notes_root / "rust.md").write_text(RUST, encoding="utf-8")
    (notes_root / "go.md").write_text(GO, encoding="utf-8")
    (notes_root / "journal.org").write_text(JOURNAL, encoding="utf-8")
    idx = NoteIndex(cfg, embedder=embedder)
    report = idx.reindex_all()
    assert report.ok, report.failed
    yield idx
    idx.close()


def _paths(results) -> list[str]:
    return [r.rel_path for r in results]


class TestLexicalSearch:
    """Boolean semantics of AQL clauses over the index."""

    def test_fielded_title(self, index):
        assert _paths(index.search("title:rust")) == ["rust.md"]

    def test_negated_title(self, index):
        assert set(_paths(index.search("-title:rust"))) == {"go.md", "journal.org"}

    def test_multivalue_is_and(self, index):
        assert _paths(index.search("tags:work,urgent")) == ["journal.org"]
        assert set(_paths(index.search("tags:work"))) == {"rust.md", "journal.org"}

    def test_negated_multivalue(self, index):
        assert set(_paths(index.search("-tags:work,urgent"))) == {"rust.md", "go.md"}

    def test_date_range_strict_and_inclusive(self, index):
        assert _paths(index.search("date>2025-01-01")) == ["rust.md"]
        assert set(_paths(index.search("date>=2025-01-01"))) == {"rust.md", "go.md"}
        assert _paths(index.search("date<2025-01-01")) == ["journal.org"]

    def test_date_equality(self, index):
        assert _paths(index.search("date:2025-01-01")) == ["go.md"]

    def test_status(self, index):
        assert _paths(index.search("status:done")) == ["go.md"]
        assert set(_paths(index.search("-status:done"))) == {"rust.md", "journal.org"}

    def test_default_fields_rank_title_matches_higher(self, index):
        results = index.search("rust")
        assert _paths(results) == ["rust.md", "journal.org"]
        assert results[0].score > results[1].score

    def test_phrase(self, index):
        assert set(_paths(index.search('"memory safety"'))) == {"rust.md", "go.md"}
        assert index.search('"safety memory"') == []

    def test_conjunction_of_clauses(self, index):
        assert _paths(index.search("rust -tags:urgent")) == ["rust.md"]

    def test_or_unions_branches(self, index):
        assert set(_paths(index.search("title:rust OR title:go"))) == {"rust.md", "go.md"}
        assert _paths(index.search("title:rust OR kubernetes")) == ["rust.md"]

    def test_and_binds_tighter_than_or(self, index):
        assert set(_paths(index.search("rust tags:urgent OR status:done"))) == {"journal.org", "go.md"}

    def test_not_keyword_negates(self, index):
        assert set(_paths(index.search("NOT title:rust"))) == set(_paths(index.search("-title:rust")))

    def test_lowercase_or_is_a_word(self, index):
        assert index.search("rust or go") == []

    def test_no_match(self, index):
        assert index.search("kubernetes") == []

    def test_top_k(self, index):
        assert len(index.search("-title:nothing", k=2)) == 2

    def test_result_fields(self, index):
        (result,) = index.search("title:rust")
        assert result.doc_id == doc_id_for("rust.md")
        assert result.title == "Rust ownership"
        assert set(result.tags) == {"rust", "work"}
        assert result.status == "todo"
        assert result.similarity is None
        assert "rust" in result.snippet.lower()

    def test_unknown_field_raises(self, index):
        with pytest.raises(UnknownFieldError):
            index.search("bogus:x")

    def test_bad_range_raises(self, index):
        with pytest.raises(RangeTypeError):
            index.search("date>soon")


class TestIndexMaintenance:
    """Results follow the state of the notes root."""

    def test_deleted_note_disappears(self, index, notes_root):
        (notes_root / "rust.md").unlink()
        index.update_paths(["rust.md"])
        assert index.search("title:rust") == []
        assert _paths(index.search("rust")) == ["journal.org"]

    def test_edit_is_visible(self, index, notes_root):
        (notes_root / "go.md").write_text(GO.replace("Goroutines", "Rust interop"), encoding="utf-8")
        index.update_paths([notes_root / "go.md"])
        assert set(_paths(index.search("rust"))) == {"rust.md", "go.md", "journal.org"}

    def test_ties_break_by_doc_id(self, index, notes_root):
        for name in ("twin1.md", "twin2.md", "twin3.md"):
            (notes_root / name).write_text("# Twin\nidentical zebra text\n", encoding="utf-8")
        index.reindex_all()
        results = index.search("zebra")
        ids = [r.doc_id for r in results]
        assert len(ids) == 3
        assert ids == sorted(ids)
        assert len({r.score for r in results}) == 1

    def test_index_note_from_text(self, index):
        outcome = index.indexer.index_note("# Quick\nThe brown fox.\n", "inbox/quick.md")
        assert outcome.status == "indexed"
        assert _paths(index.search("fox")) == ["inbox/quick.md"]
        assert index.indexer.delete_note("inbox/quick.md").status == "deleted"
        assert index.search("fox") == []

    def test_status_counts(self, index):
        status = index.status()
        assert status["indexed_documents"] == 3
        assert status["model_id"] == "fake-bow"


PROJECT = """#+TITLE: Project Plan
* Plan
Overview of the release.
** TODO Write report
DEADLINE: <2025-01-20 Mon>
Draft the quarterly report.
** TODO Renew domain
DEADLINE: <2025-03-01 Sat>
** Sync 2025-01-15 :meeting:
Discussed the report.
"""


class TestEntries:
    """Tasks and meetings inside a note are searchable on their own."""

    @pytest.fixture
    def project(self, index, notes_root):
        (notes_root / "project.org").write_text(PROJECT, encoding="utf-8")
        assert index.update_paths(["project.org"]).ok
        return index

    def test_task_query(self, project):
        (result,) = project.search("type:task status:todo deadline<=2025-02-01")
        assert result.kind == "task"
        assert result.title == "Write report"
        assert result.rel_path == "project.org"
        assert result.status == "todo"

    def test_meeting_query(self, project):
        (result,) = project.search("type:meeting date>=2025-01-15")
        assert (result.kind, result.title) == ("meeting", "Sync 2025-01-15")

    def test_default_query_returns_notes_only(self, project):
        results = project.search("report")
        assert [(r.rel_path, r.kind) for r in results] == [("project.org", "note")]

    def test_type_or_note(self, project):
        results = project.search("type:task OR title:rust")
        assert sorted((r.kind, r.title) for r in results) == [
            ("note", "Rust ownership"),
            ("task", "Renew domain"),
            ("task", "Write report"),
        ]

    def test_negated_type(self, project):
        results = project.search("report -type:note")
        assert sorted((r.kind, r.title) for r in results) == [
            ("meeting", "Sync 2025-01-15"),
            ("task", "Write report"),
        ]

    def test_entries_follow_note_deletion(self, project, notes_root):
        (notes_root / "project.org").unlink()
        project.update_paths(["project.org"])
        assert project.search("type:task") == []


class TestHybrid:
    """Similarity blending and pure vector search."""

    def test_include_similarity(self, index):
        results = index.search("rust", include_similarity=True)
        assert _paths(results) == ["rust.md", "journal.org"]
        for r in results:
            assert r.similarity is not None
            assert 0.0 <= r.score <= 1.0 + 1e-6

    def test_similarity_can_reorder_lexical_results(self, cfg, embedder, notes_root):
        # "first" wins on term frequency, "second" is the closer embedding
        (notes_root / "first.md").write_text(
            "---\ntitle: First\n---\nalpha alpha beta " + "padding " * 60 + "\n", encoding="utf-8"
        )
        (notes_root / "second.md").write_text("---\ntitle: Second\n---\nalpha beta\n", encoding="utf-8")
        idx = NoteIndex(cfg, embedder=embedder)
        try:
            assert idx.reindex_all().ok
            lexical = idx.search("alpha beta")
            blended = idx.search("alpha beta", include_similarity=True)
        finally:
            idx.close()
        assert _paths(lexical) == ["first.md", "second.md"]
        assert _paths(blended) == ["second.md", "first.md"]
        assert blended[0].similarity > blended[1].similarity
        assert blended[0].lexical_score < blended[1].lexical_score

    def test_similarity_ignored_for_filter_only_query(self, index):
        results = index.search("status:done", include_similarity=True)
        assert _paths(results) == ["go.md"]
        assert results[0].similarity is None

    def test_similar(self, index):
        results = index.similar("goroutines channels", k=1)
        assert _paths(results) == ["go.md"]
        assert results[0].similarity == results[0].score

    def test_search_options_validate(self):
        with pytest.raises(ValueError):
            SearchOptions(top_k=0)


class TestScoring:
    """Scoring primitives."""

    def test_tfidf_monotonic(self):
        assert tfidf(1.0, 2, 10, 1) > tfidf(1.0, 1, 10, 1)
        assert tfidf(1.0, 1, 10, 1) > tfidf(1.0, 1, 10, 5)
        assert tfidf(2.0, 1, 10, 1) == pytest.approx(2 * tfidf(1.0, 1, 10, 1))
        assert tfidf(1.0, 0, 10, 1) == 0.0

    def test_phrase_frequency(self):
        assert phrase_frequency([(0, 5), (1, 9)]) == 1
        assert phrase_frequency([(0, 5), (1, 6), (2, 7)]) == 2
        assert phrase_frequency([(3,), (1,)]) == 0

    def test_max_cosine(self):
        q = np.array([1.0, 0.0], dtype=np.float32)
        chunks = np.array([[0.0, 1.0], [1.0, 1.0]], dtype=np.float32)
        assert max_cosine(q, chunks) == pytest.approx(1 / np.sqrt(2))
        assert max_cosine(q, None) == 0.0

    def test_snippet_centers_on_term(self):
        body = "intro " * 100 + "needle here"
        snippet = make_snippet(body, ["needle"])
        assert "needle" in snippet
        assert snippet.startswith("...")
        assert make_snippet("", ["x"]) == ""
