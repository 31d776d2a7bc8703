"""Document -> index mutations.

The pipeline is the only code that writes to the store. For one document it
analyzes fields into postings and typed values, chunks the body, embeds the
chunks and hands everything to `Store.replace_document`, which swaps old
rows for new ones in a single transaction. Embedding happens before the
transaction, so a provider failure leaves the previous entries untouched.
"""
from __future__ import annotations

import itertools
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Optional

import numpy as np

from ..analysis import normalize_keyword, tokenize
from ..chunking import Chunker, TokenChunker
from ..embeddings import Embedder, RetryingEmbedder
from ..hashing import blake2b_hex, entry_id_for
from ..models import Chunk, Document, ParseWarning, Section
from ..query.schema import BUILTIN_FIELDS, FieldSchema, FieldType, parse_typed_value
from ..store import DocumentRecord, EntryRecord, Posting, Store
from .locks import KeyedLocks
from .types import IndexOutcome

logger = logging.getLogger(__name__)

DATE_FIELDS = ("date", "created", "modified", "scheduled", "deadline", "closed")

def chunk_id_for(doc_id: str, ordinal: int, text_hash: str) -> str:
    return blake2b_hex(f"{doc_id}:{ordinal}:{text_hash}".encode("utf-8"))[:32]

def _text_postings(field_name: str, text: str) -> list[Posting]:
    positions: dict[str, list[int]] = defaultdict(list)
    for i, term in enumerate(tokenize(text)):
        positions[term].append(i)
    return [Posting(field_name, term, tuple(pos)) for term, pos in positions.items()]

def _keyword_postings(field_name: str, values: Iterable[Any]) -> list[Posting]:
    positions: dict[str, list[int]] = defaultdict(list)
    for i, value in enumerate(sorted(str(v) for v in values if v is not None)):
        term = normalize_keyword(value)
        if term:
            positions[term].append(i)
    return [Posting(field_name, term, tuple(pos)) for term, pos in positions.items()]

def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]

def analyze(document: Document, schema: FieldSchema) -> tuple[list[Posting], list[tuple[str, float]], list[ParseWarning]]:
    """Build field-scoped postings and typed values for a document.

    Every term goes through `noteindex.analysis`, the same analyzer the query
    compiler uses. Property-backed fields declared in the schema are read
    from `document.properties`; values that don't fit their declared type
    are skipped with a warning.
    """
    postings: list[Posting] = []
    values: list[tuple[str, float]] = []
    warnings: list[ParseWarning] = []

    postings += _text_postings("title", document.title)
    postings += _text_postings("body", document.body)
    postings += _keyword_postings("tags", document.tags)
    postings += _keyword_postings("status", [document.status.value] if document.status else [])
    postings += _keyword_postings("category", [document.category] if document.category else [])
    postings += _keyword_postings("file_name", [document.file_name])
    postings += _keyword_postings("id", [document.doc_id])
    postings += _keyword_postings("type", ["note"])

    for name in DATE_FIELDS:
        spec = schema.get(name)
        raw: Optional[date | datetime] = getattr(document, name)
        if spec is not None and raw is not None:
            values.append((name, parse_typed_value(spec, raw)))

    p, v, w = _property_fields(document.rel_path, document.properties, schema)
    return postings + p, values + v, warnings + w


def _property_fields(
    rel_path: str, properties: dict[str, Any], schema: FieldSchema
) -> tuple[list[Posting], list[tuple[str, float]], list[ParseWarning]]:
    """Postings and typed values for the property-backed fields declared in the schema."""
    postings: list[Posting] = []
    values: list[tuple[str, float]] = []
    warnings: list[ParseWarning] = []
    for spec in schema.fields.values():
        if spec.name in BUILTIN_FIELDS:
            continue
        raw_values = _as_list(properties.get(spec.name))
        if not raw_values:
            continue
        if spec.type == FieldType.TEXT:
            postings += _text_postings(spec.name, " ".join(str(v) for v in raw_values))
        elif spec.type == FieldType.KEYWORD:
            postings += _keyword_postings(spec.name, raw_values)
        else:
            for v in raw_values:
                try:
                    values.append((spec.name, parse_typed_value(spec, v)))
                except (TypeError, ValueError) as e:
                    warnings.append(ParseWarning(rel_path, 0, f"property {spec.name!r}: {e}"))
    return postings, values, warnings


def analyze_sections(document: Document, schema: FieldSchema) -> tuple[list[EntryRecord], list[ParseWarning]]:
    """One searchable entry per outline heading, typed task, meeting or heading.

    Entries carry their own title, body, tags, status and planning dates,
    plus the note's category and file name.
    """
    entries: list[EntryRecord] = []
    warnings: list[ParseWarning] = []
    for ordinal, section in enumerate(document.sections):
        entry_id = entry_id_for(document.doc_id, ordinal)
        kind = section.kind
        status = section.status.value if section.status else None

        postings = _text_postings("title", section.title)
        postings += _text_postings("body", section.body)
        postings += _keyword_postings("tags", section.tags)
        postings += _keyword_postings("status", [status] if status else [])
        postings += _keyword_postings("category", [document.category] if document.category else [])
        postings += _keyword_postings("file_name", [document.file_name])
        postings += _keyword_postings("id", [entry_id, section.properties.get("id")])
        postings += _keyword_postings("type", [kind])

        p, v, w = _property_fields(document.rel_path, section.properties, schema)
        warnings += w
        entries.append(
            EntryRecord(
                entry_id=entry_id,
                kind=kind,
                title=section.title,
                body=section.body,
                tags=section.tags,
                status=status,
                postings=tuple(postings + p),
                field_values=tuple(_section_dates(section, schema) + v),
            )
        )
    return entries, warnings


def _section_dates(section: Section, schema: FieldSchema) -> list[tuple[str, float]]:
    dates = {"scheduled": section.scheduled, "deadline": section.deadline, "closed": section.closed}
    if section.kind == "meeting":
        dates["date"] = section.meeting_date
    values = []
    for name, raw in dates.items():
        spec = schema.get(name)
        if spec is not None and raw is not None:
            values.append((name, parse_typed_value(spec, raw)))
    return values


@dataclass
class IndexingPipeline:
    store: Store
    embedder: Embedder
    schema: FieldSchema = field(default_factory=FieldSchema.default)
    chunker: Chunker = field(default_factory=TokenChunker)
    locks: KeyedLocks = field(default_factory=KeyedLocks)
    batch_size: int = 32

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError(f"Invalid batch_size: {self.batch_size}. Must be > 0.")
        if not isinstance(self.embedder, RetryingEmbedder):
            self.embedder = RetryingEmbedder(self.embedder)
        self._ticket_lock = threading.Lock()
        self._counter = itertools.count(1)
        self._latest: dict[str, int] = {}

    def ticket(self, doc_id: str) -> int:
        """Register a new submission for `doc_id`.

        A pipeline call made with an older ticket than the newest one for the
        same document is skipped, so the last submission wins regardless of
        the order in which workers reach the document lock.
        """
        with self._ticket_lock:
            n = next(self._counter)
            self._latest[doc_id] = n
            return n

    def is_superseded(self, doc_id: str, ticket: int | None) -> bool:
        if ticket is None:
            return False
        with self._ticket_lock:
            return self._latest.get(doc_id, ticket) > ticket

    def index(
        self,
        document: Document,
        warnings: Iterable[ParseWarning] = (),
        force: bool = False,
        ticket: int | None = None,
    ) -> IndexOutcome:
        """Index one document. Raises EmbeddingError or StorageError."""
        doc_id = document.doc_id
        warnings = tuple(warnings)
        with self.locks.hold(doc_id):
            if self.is_superseded(doc_id, ticket):
                logger.debug(f"Skipping superseded submission for {document.rel_path}")
                return IndexOutcome(doc_id, "superseded", warnings=warnings)
            if not force and self.store.get_fingerprint(doc_id) == document.fingerprint:
                return IndexOutcome(doc_id, "unchanged", warnings=warnings)

            record, extra = self.build_record(document)
            self.store.replace_document(record)

        warnings = warnings + tuple(extra)
        logger.debug(f"Indexed {document.rel_path}: {len(record.chunks)} chunks")
        return IndexOutcome(doc_id, "indexed", len(record.chunks), warnings)

    def delete(self, doc_id: str, ticket: int | None = None) -> IndexOutcome:
        with self.locks.hold(doc_id):
            if self.is_superseded(doc_id, ticket):
                return IndexOutcome(doc_id, "superseded")
            existed = self.store.delete_document(doc_id)
        return IndexOutcome(doc_id, "deleted" if existed else "missing")

    def build_record(self, document: Document) -> tuple[DocumentRecord, list[ParseWarning]]:
        postings, values, warnings = analyze(document, self.schema)
        entries, entry_warnings = analyze_sections(document, self.schema)
        chunks = self.chunk(document)
        vectors = self.embed(document.doc_id, [c.text for c in chunks])
        record = DocumentRecord(
            document=document,
            postings=tuple(postings),
            field_values=tuple(values),
            chunks=tuple(chunks),
            vectors=vectors,
            model_id=self.embedder.model_id,
            entries=tuple(entries),
        )
        return record, warnings + entry_warnings

    def chunk(self, document: Document) -> list[Chunk]:
        chunks: list[Chunk] = []
        for c in self.chunker.chunk(document.body):
            th = blake2b_hex(c.text.encode("utf-8"))
            chunks.append(
                Chunk(
                    chunk_id=chunk_id_for(document.doc_id, c.ordinal, th),
                    doc_id=document.doc_id,
                    ordinal=c.ordinal,
                    start=c.start,
                    end=c.end,
                    text=c.text,
                    text_hash=th,
                )
            )
        return chunks

    def embed(self, doc_id: str, texts: list[str]) -> np.ndarray:
        """Embed chunk texts in batches of `batch_size`."""
        if not texts:
            return np.zeros((0, max(int(self.embedder.dims or 0), 0)), dtype=np.float32)
        parts = [
            self.embedder.embed_texts(texts[i:i + self.batch_size], doc_id=doc_id)
            for i in range(0, len(texts), self.batch_size)
        ]
        return np.vstack(parts).astype(np.float32)
