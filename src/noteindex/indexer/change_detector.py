"""Incremental updater: drives the indexing pipeline across the corpus.

Compares (path, fingerprint) pairs from the corpus walker against the
fingerprints persisted in the store and schedules the difference:

- absent from the store   -> insert
- fingerprint differs     -> reindex
- stored but not supplied -> delete

Documents run in parallel on a bounded thread pool, serialized per document
id by the pipeline's keyed locks. Cancellation is cooperative and checked
between documents, never in the middle of a document's write.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from ..errors import EmbeddingError, ParseError, StorageError
from ..hashing import doc_id_for
from ..parsing import ParserRegistry, build_registry
from .pipeline import IndexingPipeline
from .reconciler import Reconciler, relpath, safe_read_text
from .types import IndexOutcome, Report, SourceEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Job:
    kind: str  # add | update | delete
    doc_id: str
    rel_path: str
    ticket: int
    entry: Optional[SourceEntry] = None


@dataclass
class ChangeDetector:
    pipeline: IndexingPipeline
    reconciler: Reconciler
    parsers: ParserRegistry = field(default_factory=build_registry)
    workers: int = 4
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self) -> None:
        if self.workers <= 0:
            raise ValueError(f"Invalid workers: {self.workers}. Must be > 0.")

    def cancel(self) -> None:
        """Stop the current run after the documents already in progress."""
        self.cancel_event.set()

    # -- entry points

    def apply(self, entries: Iterable[SourceEntry], force: bool = False) -> Report:
        """Bring the index in line with `entries`, the complete current corpus."""
        return self._apply(list(entries), Report(), keep=set(), force=force)

    def reindex_all(self, paths: Iterable[Path] | None = None, force: bool = False) -> Report:
        """Fingerprint `paths` (default: a full scan of the notes root) and apply them.

        Files that can't be read are reported as failures and keep their
        current index entries.
        """
        report = Report()
        entries: list[SourceEntry] = []
        unreadable: set[str] = set()
        for p in self.reconciler.scan_files() if paths is None else paths:
            try:
                entries.append(self.reconciler.entry_for(Path(p)))
            except (OSError, ValueError) as e:
                rel = self._rel(Path(p))
                doc_id = doc_id_for(rel)
                unreadable.add(doc_id)
                report.failed[doc_id] = ParseError(rel, f"unreadable: {e}")
                logger.warning(f"Cannot read {rel}: {e}")
        return self._apply(entries, report, keep=unreadable, force=force)

    def update_paths(self, paths: Iterable[Path | str]) -> Report:
        """Handle a partial set of changed paths (watch mode).

        Existing candidate files are upserted and vanished ones deleted; no
        other document is touched.
        """
        start = time.time()
        report = Report()
        self.cancel_event.clear()
        jobs: list[_Job] = []
        seen: set[str] = set()
        for p in paths:
            rel = self._rel(Path(p))
            doc_id = doc_id_for(rel)
            if doc_id in seen or not self.reconciler.is_candidate(rel):
                continue
            seen.add(doc_id)
            abs_path = self.reconciler.root / rel
            stored = self.pipeline.store.get_fingerprint(doc_id)
            if not abs_path.is_file():
                if stored is not None:
                    jobs.append(_Job("delete", doc_id, rel, self.pipeline.ticket(doc_id)))
                continue
            try:
                entry = self.reconciler.entry_for(abs_path)
            except (OSError, ValueError) as e:
                report.failed[doc_id] = ParseError(rel, f"unreadable: {e}")
                continue
            if stored == entry.fingerprint:
                report.unchanged += 1
                continue
            kind = "add" if stored is None else "update"
            jobs.append(_Job(kind, doc_id, rel, self.pipeline.ticket(doc_id), entry))
        self._run(jobs, report)
        report.elapsed_seconds = time.time() - start
        return report

    # -- internals

    def _rel(self, path: Path) -> str:
        if path.is_absolute():
            try:
                return relpath(self.reconciler.root, path)
            except ValueError:
                return relpath(self.reconciler.root.resolve(), path.resolve())
        return str(path).replace("\\", "/")

    def _apply(self, entries: list[SourceEntry], report: Report, keep: set[str], force: bool) -> Report:
        start = time.time()
        self.cancel_event.clear()
        stored = self.pipeline.store.get_fingerprints()

        jobs: list[_Job] = []
        seen: set[str] = set(keep)
        for entry in sorted(entries, key=lambda e: e.rel_path):
            doc_id = doc_id_for(entry.rel_path)
            if doc_id in seen:
                continue
            seen.add(doc_id)
            previous = stored.get(doc_id)
            if previous is None:
                jobs.append(_Job("add", doc_id, entry.rel_path, self.pipeline.ticket(doc_id), entry))
            elif force or previous[1] != entry.fingerprint:
                jobs.append(_Job("update", doc_id, entry.rel_path, self.pipeline.ticket(doc_id), entry))
            else:
                report.unchanged += 1
        for doc_id, (rel_path, _) in sorted(stored.items(), key=lambda kv: kv[1][0]):
            if doc_id not in seen:
                jobs.append(_Job("delete", doc_id, rel_path, self.pipeline.ticket(doc_id)))

        logger.info(f"{len(jobs)} changes to apply ({report.unchanged} unchanged)")
        self._run(jobs, report, force=force)
        report.elapsed_seconds = time.time() - start
        logger.info(f"Index update: {report.summary()} in {report.elapsed_seconds:.2f}s")
        return report

    def _run(self, jobs: list[_Job], report: Report, force: bool = False) -> None:
        if not jobs:
            return
        abort = threading.Event()
        storage_error: StorageError | None = None

        def work(job: _Job) -> IndexOutcome | None:
            if self.cancel_event.is_set() or abort.is_set():
                return None
            try:
                if job.kind == "delete":
                    return self.pipeline.delete(job.doc_id, ticket=job.ticket)
                return self._index_entry(job, force)
            finally:
                self.pipeline.store.release_thread_conn()

        executor = ThreadPoolExecutor(max_workers=self.workers)
        try:
            futures = {executor.submit(work, job): job for job in jobs}
            for future in as_completed(futures):
                job = futures[future]
                try:
                    outcome = future.result()
                except StorageError as e:
                    logger.error(f"Storage failure on {job.rel_path}: {e}")
                    abort.set()
                    storage_error = storage_error or e
                    continue
                except (ParseError, EmbeddingError) as e:
                    logger.warning(f"Failed to index {job.rel_path}: {e}")
                    report.failed[job.doc_id] = e
                    continue
                except Exception as e:
                    logger.error(f"Worker crashed for {job.rel_path}: {e}")
                    report.failed[job.doc_id] = e
                    continue
                if outcome is None:
                    report.cancelled = True
                    continue
                self._record(job, outcome, report)
        except BaseException:
            # KeyboardInterrupt and friends: drop queued documents, let running ones finish
            self.cancel_event.set()
            report.cancelled = True
            executor.shutdown(wait=True, cancel_futures=True)
            logger.info("Index update interrupted; queued documents dropped")
            raise
        finally:
            executor.shutdown(wait=True)

        report.added.sort()
        report.updated.sort()
        report.deleted.sort()
        if storage_error is not None:
            raise storage_error
        if report.cancelled:
            logger.info("Index update cancelled between documents")

    def _index_entry(self, job: _Job, force: bool) -> IndexOutcome:
        entry = job.entry
        assert entry is not None
        abs_path = entry.abs_path or self.reconciler.root / entry.rel_path
        with self.pipeline.locks.hold(job.doc_id):
            try:
                raw = safe_read_text(abs_path, self.reconciler.max_bytes)
                mtime = datetime.fromtimestamp(abs_path.stat().st_mtime)
            except (OSError, ValueError) as e:
                raise ParseError(entry.rel_path, f"unreadable: {e}") from e
            result = self.parsers.parse(raw, entry.rel_path, mtime)
            return self.pipeline.index(result.document, result.warnings, force=force, ticket=job.ticket)

    @staticmethod
    def _record(job: _Job, outcome: IndexOutcome, report: Report) -> None:
        if outcome.warnings:
            report.warnings[job.doc_id] = list(outcome.warnings)
        if outcome.status == "indexed":
            (report.added if job.kind == "add" else report.updated).append(job.doc_id)
        elif outcome.status == "deleted":
            report.deleted.append(job.doc_id)
        elif outcome.status == "unchanged":
            report.unchanged += 1
        else:
            logger.debug(f"{job.rel_path}: {outcome.status}")
