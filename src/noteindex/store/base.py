from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol, Sequence

import numpy as np

from ..models import Chunk, Document

@dataclass(frozen=True)
class Posting:
    """Occurrences of one normalized term in one field of a document."""
    field: str
    term: str
    positions: tuple[int, ...]

    @property
    def tf(self) -> int:
        return len(self.positions)

@dataclass(frozen=True)
class PostingHit:
    doc_id: str
    tf: int
    positions: tuple[int, ...]

@dataclass(frozen=True)
class ChunkHit:
    chunk_id: str
    doc_id: str
    score: float

@dataclass(frozen=True)
class EntryRecord:
    """A searchable entry inside a note: a task, a meeting or a plain heading.

    Entries live and die with their note and share its chunks for
    similarity scoring.
    """
    entry_id: str
    kind: str
    title: str
    body: str
    tags: frozenset[str]
    status: Optional[str]
    postings: tuple[Posting, ...]
    field_values: tuple[tuple[str, float], ...]

@dataclass(frozen=True)
class DocumentRecord:
    """Everything written for one document in a single transaction."""
    document: Document
    postings: tuple[Posting, ...]
    field_values: tuple[tuple[str, float], ...]
    chunks: tuple[Chunk, ...]
    vectors: np.ndarray
    model_id: str = ""
    entries: tuple[EntryRecord, ...] = ()

class Store(Protocol):
    """Index storage backend.

    The only mutating calls are `replace_document` and `delete_document`,
    each atomic for one document. Reads grouped under `snapshot()` see one
    consistent state of the index.
    """

    def init(self) -> None:
        ...

    def close(self) -> None:
        ...

    def release_thread_conn(self) -> None:
        ...

    def snapshot(self) -> AbstractContextManager[None]:
        ...

    def replace_document(self, record: DocumentRecord) -> None:
        ...

    def delete_document(self, doc_id: str) -> bool:
        ...

    def get_fingerprint(self, doc_id: str) -> str | None:
        ...

    def get_fingerprints(self) -> dict[str, tuple[str, str]]:
        ...

    def document_count(self) -> int:
        ...

    def all_doc_ids(self) -> set[str]:
        ...

    def entry_count(self) -> int:
        ...

    def all_entry_ids(self) -> set[str]:
        ...

    def postings(self, field: str, term: str) -> list[PostingHit]:
        ...

    def filter_values(self, field: str, op: str, bound: float) -> set[str]:
        ...

    def chunk_vectors(self, doc_ids: Iterable[str]) -> dict[str, np.ndarray]:
        ...

    def nearest_chunks(self, query_vec: np.ndarray, k: int) -> list[ChunkHit]:
        ...

    def get_documents(self, doc_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        ...

    def status(self) -> dict[str, Any]:
        ...
