from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

from .config import IndexConfig
from .embeddings import Embedder, embedder_from_config
from .indexer.indexer import Indexer
from .indexer.types import Report
from .models import RankedResult
from .query import Query
from .retrieval.retriever import Retriever
from .store import SqliteStore, Store


class NoteIndex:
    """One notes corpus: an indexer and a retriever sharing a store handle.

    Usage:
        with NoteIndex(IndexConfig.from_toml("noteindex.toml")) as idx:
            idx.reindex_all()
            results = idx.search("title:rust -status:done")
    """

    def __init__(self, cfg: IndexConfig, store: Store | None = None, embedder: Embedder | None = None) -> None:
        self.cfg = cfg
        if store is None:
            store = SqliteStore(cfg.db_path)
            store.init()
        self.store = store
        self.embedder = embedder_from_config(cfg, embedder)
        self.indexer = Indexer(cfg, store=store, embedder=self.embedder)
        self.retriever = Retriever(cfg, store=store, embedder=self.embedder)

    def reindex_all(self, paths: Iterable[Path] | None = None, force: bool = False) -> Report:
        if paths is None:
            return self.indexer.scan(full=force)
        return self.indexer.detector.reindex_all(paths, force=force)

    def update_paths(self, paths: Iterable[Path | str]) -> Report:
        return self.indexer.update_paths(paths)

    def search(self, query: str | Query, k: int | None = None, include_similarity: bool | None = None) -> list[RankedResult]:
        return self.retriever.search(query, k=k, include_similarity=include_similarity)

    def similar(self, text: str, k: int | None = None) -> list[RankedResult]:
        return self.retriever.similar(text, k)

    def status(self) -> dict[str, Any]:
        return self.store.status()

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "NoteIndex":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
