from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from ..config import IndexConfig
from ..embeddings import Embedder, embedder_from_config
from ..models import RankedResult
from ..query import Query, compile_query
from ..store import SqliteStore, Store
from .engine import SearchEngine, SearchOptions

@dataclass
class Retriever:
    cfg: IndexConfig
    store: Optional[Store] = None
    embedder: Optional[Embedder] = None

    def __post_init__(self) -> None:
        if self.store is None:
            self.store = SqliteStore(self.cfg.db_path)
            self.store.init()
        self.schema = self.cfg.field_schema()
        self.engine = SearchEngine(
            store=self.store,
            schema=self.schema,
            lexical_weight=self.cfg.lexical_weight,
            similarity_weight=self.cfg.similarity_weight,
        )
        if self.embedder is not None:
            self._ensure_embedder()

    def _ensure_embedder(self) -> None:
        # Loading a model is slow; lexical-only queries never need one
        if self.engine.embedder is None:
            self.engine.embedder = embedder_from_config(self.cfg, self.embedder)

    def compile(self, query: str) -> Query:
        return compile_query(query, self.schema)

    def search(
        self, query: str | Query, k: int | None = None, include_similarity: bool | None = None
    ) -> list[RankedResult]:
        if include_similarity is None:
            include_similarity = self.cfg.include_similarity
        ast = self.compile(query) if isinstance(query, str) else query
        if include_similarity and ast.default_text():
            self._ensure_embedder()
        options = SearchOptions(top_k=k or self.cfg.top_k, include_similarity=include_similarity)
        return self.engine.search(ast, options)

    def similar(self, text: str, k: int | None = None) -> list[RankedResult]:
        self._ensure_embedder()
        return self.engine.similar(text, k or self.cfg.top_k)

    def status(self) -> dict[str, Any]:
        return self.store.status()
