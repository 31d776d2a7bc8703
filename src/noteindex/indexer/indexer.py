from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from ..chunking import TokenChunker, get_tokenizer
from ..config import IndexConfig
from ..embeddings import Embedder, embedder_from_config
from ..hashing import doc_id_for
from ..parsing import build_registry
from ..store import SqliteStore, Store
from .change_detector import ChangeDetector
from .locks import KeyedLocks
from .pipeline import IndexingPipeline
from .reconciler import Reconciler
from .types import IndexOutcome, Report
from .watcher import NoteWatcher

logger = logging.getLogger(__name__)

@dataclass
class Indexer:
    cfg: IndexConfig
    store: Optional[Store] = None
    embedder: Optional[Embedder] = None

    def __post_init__(self) -> None:
        if self.store is None:
            self.store = SqliteStore(self.cfg.db_path)
            self.store.init()
        self.embedder = embedder_from_config(self.cfg, self.embedder)
        self.schema = self.cfg.field_schema()

        self.parsers = build_registry(self.cfg.todo_keywords, self.cfg.done_keywords, self.cfg.max_file_bytes)
        self.chunker = TokenChunker(
            max_tokens=self.cfg.max_tokens,
            overlap_tokens=self.cfg.overlap_tokens,
            tokenizer=get_tokenizer(self.cfg.tokenizer),
        )
        self.pipeline = IndexingPipeline(
            store=self.store,
            embedder=self.embedder,
            schema=self.schema,
            chunker=self.chunker,
            locks=KeyedLocks(),
            batch_size=self.cfg.embedding_batch_size,
        )
        self.reconciler = Reconciler(self.cfg.notes_root, self.cfg.ignore, self.cfg.suffixes, self.cfg.max_file_bytes)
        self.detector = ChangeDetector(
            pipeline=self.pipeline,
            reconciler=self.reconciler,
            parsers=self.parsers,
            workers=self.cfg.workers,
        )

    def scan(self, full: bool = False) -> Report:
        """Index changed notes. `full=True` re-indexes every note regardless of fingerprint."""
        logger.info(f"Scanning {self.cfg.notes_root}")
        return self.detector.reindex_all(force=full)

    def reindex_all(self, paths: Iterable[Path] | None = None) -> Report:
        return self.detector.reindex_all(paths)

    def update_paths(self, paths: Iterable[Path | str]) -> Report:
        return self.detector.update_paths(paths)

    def index_note(self, raw_text: str, rel_path: str, mtime: datetime | None = None, force: bool = False) -> IndexOutcome:
        """Parse and index one note supplied as text, outside of a corpus walk."""
        doc_id = doc_id_for(rel_path)
        ticket = self.pipeline.ticket(doc_id)
        with self.pipeline.locks.hold(doc_id):
            result = self.parsers.parse(raw_text, rel_path, mtime)
            return self.pipeline.index(result.document, result.warnings, force=force, ticket=ticket)

    def delete_note(self, rel_path: str) -> IndexOutcome:
        doc_id = doc_id_for(rel_path)
        return self.pipeline.delete(doc_id, ticket=self.pipeline.ticket(doc_id))

    def cancel(self) -> None:
        self.detector.cancel()

    def watch(self, stop: threading.Event | None = None, debounce_ms: int = 500) -> None:
        """Watch loop that re-indexes notes as they change on disk."""
        NoteWatcher(self.detector, debounce_ms=debounce_ms).watch(stop)

    def close(self) -> None:
        self.store.close()
