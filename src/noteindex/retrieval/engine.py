"""Hybrid retrieval: AQL AST + store -> ranked results.

1. Every clause is evaluated against the inverted index into a map of
   matching doc ids to lexical scores. Top-level clauses are intersected and
   their scores summed. Negations and ranges filter without scoring; a query
   made only of filters starts from every indexed document.
   Without a `type` clause only notes are returned; `type:task`,
   `type:meeting` or `type:heading` search the outline entries inside notes.
2. With `include_similarity`, the unfielded terms of the query are embedded
   and each candidate's best chunk similarity is blended in:
       score = lexical_weight * lexical / max(lexical) + similarity_weight * similarity
3. Results sort by score descending, then doc id ascending, and are cut to
   `top_k`.

All store reads of one search run inside a single read transaction.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from ..analysis import normalize
from ..embeddings import Embedder, RetryingEmbedder
from ..errors import UnknownFieldError
from ..models import RankedResult
from ..query import compile_query
from ..query.ast import Clause, MultiValue, Negation, Or, Phrase, Query, Range, Term, positive_leaves
from ..query.schema import FieldSchema, FieldSpec, FieldType, parse_typed_value
from ..store import Store
from .scoring import max_cosine, phrase_frequency, tfidf

logger = logging.getLogger(__name__)

Matches = dict[str, float]

SNIPPET_CHARS = 240


@dataclass(frozen=True)
class SearchOptions:
    top_k: int = 10
    include_similarity: bool = False

    def __post_init__(self) -> None:
        if self.top_k <= 0:
            raise ValueError(f"Invalid top_k: {self.top_k}. Must be > 0.")


@dataclass
class SearchEngine:
    store: Store
    schema: FieldSchema
    embedder: Optional[Embedder] = None
    lexical_weight: float = 0.7
    similarity_weight: float = 0.3

    def __post_init__(self) -> None:
        if self.lexical_weight < 0 or self.similarity_weight < 0:
            raise ValueError("Ranking weights must be >= 0")
        if self.embedder is not None and not isinstance(self.embedder, RetryingEmbedder):
            self.embedder = RetryingEmbedder(self.embedder)

    # -- public API

    def search_text(self, query: str, options: SearchOptions | None = None) -> list[RankedResult]:
        """Compile an AQL string against the engine's schema and run it."""
        return self.search(compile_query(query, self.schema), options)

    def search(self, query: Query, options: SearchOptions | None = None) -> list[RankedResult]:
        options = options or SearchOptions()
        if not query.clauses:
            return []

        query_vec = None
        default_text = query.default_text()
        if options.include_similarity and default_text:
            if self.embedder is None:
                raise ValueError("include_similarity requires an embedder")
            query_vec = self.embedder.embed_query(default_text)

        with self.store.snapshot():
            n_docs = self.store.entry_count()
            if n_docs == 0:
                return []
            candidates = self._evaluate_all(query.clauses, n_docs)
            if not query.mentions("type"):
                notes = {h.doc_id for h in self.store.postings("type", "note")}
                candidates = {d: s for d, s in candidates.items() if d in notes}
            if not candidates:
                return []

            similarity: dict[str, float] = {}
            if query_vec is not None:
                vectors = self.store.chunk_vectors(candidates)
                similarity = {doc_id: max_cosine(query_vec, vectors.get(doc_id)) for doc_id in candidates}

            final = self._combine(candidates, similarity if query_vec is not None else None)
            ranked = sorted(final, key=lambda d: (-final[d], d))[: options.top_k]
            docs = self.store.get_documents(ranked)

        terms = _highlight_terms(query)
        results: list[RankedResult] = []
        for doc_id in ranked:
            d = docs.get(doc_id)
            if d is None:
                continue
            results.append(
                RankedResult(
                    doc_id=doc_id,
                    score=final[doc_id],
                    lexical_score=candidates[doc_id],
                    title=d["title"],
                    rel_path=d["rel_path"],
                    kind=d["kind"],
                    tags=tuple(d["tags"]),
                    status=d["status"],
                    similarity=similarity.get(doc_id) if query_vec is not None else None,
                    snippet=make_snippet(d["body"], terms),
                )
            )
        logger.debug(f"{len(candidates)} candidates, returning {len(results)}")
        return results

    def similar(self, text: str, k: int = 10) -> list[RankedResult]:
        """Pure vector search: documents whose best chunk is nearest to `text`."""
        if self.embedder is None:
            raise ValueError("similarity search requires an embedder")
        query_vec = self.embedder.embed_query(text)
        with self.store.snapshot():
            best: dict[str, float] = {}
            for hit in self.store.nearest_chunks(query_vec, k * 4):
                if hit.score > best.get(hit.doc_id, float("-inf")):
                    best[hit.doc_id] = hit.score
            ranked = sorted(best, key=lambda d: (-best[d], d))[:k]
            docs = self.store.get_documents(ranked)
        return [
            RankedResult(
                doc_id=doc_id,
                score=best[doc_id],
                lexical_score=0.0,
                title=docs[doc_id]["title"],
                rel_path=docs[doc_id]["rel_path"],
                kind=docs[doc_id]["kind"],
                tags=tuple(docs[doc_id]["tags"]),
                status=docs[doc_id]["status"],
                similarity=best[doc_id],
                snippet=make_snippet(docs[doc_id]["body"], []),
            )
            for doc_id in ranked
            if doc_id in docs
        ]

    # -- evaluation

    def _combine(self, lexical: Matches, similarity: dict[str, float] | None) -> Matches:
        if similarity is None:
            return dict(lexical)
        max_lex = max(lexical.values(), default=0.0)
        return {
            doc_id: self.lexical_weight * (score / max_lex if max_lex > 0 else 0.0)
            + self.similarity_weight * similarity.get(doc_id, 0.0)
            for doc_id, score in lexical.items()
        }

    def _evaluate_all(self, clauses: Iterable[Clause], n_docs: int) -> Matches:
        """AND of clauses: intersect matches, sum scores."""
        result: Matches | None = None
        for clause in sorted(clauses, key=lambda c: isinstance(c, Negation)):
            matches = self._evaluate(clause, n_docs)
            if result is None:
                result = matches
            else:
                result = {d: result[d] + matches[d] for d in result if d in matches}
            if not result:
                return {}
        return result or {}

    def _evaluate(self, clause: Clause, n_docs: int) -> Matches:
        if isinstance(clause, Negation):
            excluded = self._evaluate(clause.clause, n_docs)
            return {d: 0.0 for d in self.store.all_entry_ids() if d not in excluded}
        if isinstance(clause, Or):
            return self._union(self._evaluate_all(branch, n_docs) for branch in clause.branches)
        if isinstance(clause, Range):
            self._spec(clause.field)
            return {d: 0.0 for d in self.store.filter_values(clause.field, clause.op.value, clause.bound)}
        if isinstance(clause, MultiValue):
            spec = self._spec(clause.field)
            parts = [self._value_clause(spec, v) for v in clause.values]
            return self._evaluate_all(parts, n_docs)
        if isinstance(clause, Term):
            fields = self._fields(clause.field)
            if len(fields) == 1 and fields[0].rangeable:
                bound = parse_typed_value(fields[0], clause.value)
                return {d: 0.0 for d in self.store.filter_values(fields[0].name, "=", bound)}
            return self._union(self._term(spec, clause.value, n_docs) for spec in fields)
        if isinstance(clause, Phrase):
            return self._union(self._phrase(spec, clause.terms, n_docs) for spec in self._fields(clause.field))
        raise TypeError(f"Unsupported clause: {clause!r}")

    def _spec(self, name: str) -> FieldSpec:
        spec = self.schema.get(name)
        if spec is None:
            raise UnknownFieldError(name)
        return spec

    def _fields(self, name: str | None) -> list[FieldSpec]:
        if name is None:
            return [self._spec(f) for f in self.schema.default_fields]
        return [self._spec(name)]

    @staticmethod
    def _value_clause(spec: FieldSpec, value: str) -> Clause:
        if spec.type == FieldType.TEXT and " " in value:
            return Phrase(spec.name, value)
        return Term(spec.name, value)

    @staticmethod
    def _union(parts: Iterable[Matches]) -> Matches:
        """A document matches if any part does; scores add."""
        out: Matches = {}
        for part in parts:
            for d, s in part.items():
                out[d] = out.get(d, 0.0) + s
        return out

    def _term(self, spec: FieldSpec, term: str, n_docs: int) -> Matches:
        hits = self.store.postings(spec.name, term)
        df = len(hits)
        return {h.doc_id: tfidf(spec.boost, h.tf, n_docs, df) for h in hits}

    def _phrase(self, spec: FieldSpec, terms: tuple[str, ...], n_docs: int) -> Matches:
        if len(terms) == 1:
            return self._term(spec, terms[0], n_docs)
        per_term = []
        for t in terms:
            hits = {h.doc_id: h.positions for h in self.store.postings(spec.name, t)}
            if not hits:
                return {}
            per_term.append(hits)
        common = set(per_term[0]).intersection(*per_term[1:])
        freqs = {d: phrase_frequency([hits[d] for hits in per_term]) for d in common}
        freqs = {d: f for d, f in freqs.items() if f > 0}
        df = len(freqs)
        return {d: tfidf(spec.boost, f, n_docs, df) for d, f in freqs.items()}


def _highlight_terms(query: Query) -> list[str]:
    terms: list[str] = []
    for clause in positive_leaves(query.clauses):
        if isinstance(clause, Term) and clause.field in (None, "body", "title"):
            terms.append(clause.value)
        elif isinstance(clause, Phrase) and clause.field in (None, "body", "title"):
            terms.append(clause.text)
    return terms


def make_snippet(body: str, terms: list[str], width: int = SNIPPET_CHARS) -> str:
    """A window of the body around the first matched term, or its beginning."""
    if not body:
        return ""
    start = 0
    lowered = normalize(body)
    if len(lowered) == len(body):
        for term in terms:
            m = re.search(r"\b" + r"\W+".join(re.escape(t) for t in term.split()) + r"\b", lowered)
            if m:
                start = max(0, m.start() - width // 4)
                break
    snippet = " ".join(body[start:start + width].split())
    prefix = "..." if start > 0 else ""
    suffix = "..." if start + width < len(body) else ""
    return f"{prefix}{snippet}{suffix}"
