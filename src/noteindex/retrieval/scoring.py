"""Lexical and vector scoring primitives.

Lexical score of a term (or phrase) in one field of one document:

    boost(field) * (1 + ln tf) * ln(1 + N / df)

where `tf` is the occurrence count in the field, `N` the number of indexed
documents and `df` the number of documents containing the term in that field.
"""
from __future__ import annotations

import math
from typing import Sequence

import numpy as np


def tf_weight(tf: int) -> float:
    return 1.0 + math.log(tf) if tf > 0 else 0.0


def idf(n_docs: int, df: int) -> float:
    return math.log(1.0 + n_docs / df) if df > 0 else 0.0


def tfidf(boost: float, tf: int, n_docs: int, df: int) -> float:
    return boost * tf_weight(tf) * idf(n_docs, df)


def phrase_frequency(positions: Sequence[Sequence[int]]) -> int:
    """Count occurrences of consecutive terms given each term's positions."""
    if not positions:
        return 0
    following = [set(p) for p in positions[1:]]
    return sum(1 for start in positions[0] if all(start + i + 1 in s for i, s in enumerate(following)))


def max_cosine(query_vec: np.ndarray, chunk_vecs: np.ndarray | None) -> float:
    """Best cosine similarity between a query and a document's chunks (0 with no chunks)."""
    if chunk_vecs is None or len(chunk_vecs) == 0:
        return 0.0
    q = np.asarray(query_vec, dtype=np.float32).ravel()
    mat = np.asarray(chunk_vecs, dtype=np.float32).reshape(len(chunk_vecs), -1)
    denom = np.linalg.norm(mat, axis=1) * np.linalg.norm(q)
    sims = np.divide(mat @ q, denom, out=np.zeros(len(mat), dtype=np.float32), where=denom > 0)
    return float(sims.max())
