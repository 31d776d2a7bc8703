from __future__ import annotations

from typing import Protocol, Sequence

import numpy as np

class Embedder(Protocol):
    """Embedding provider contract.

    Deterministic for identical input; `dims` is fixed per model. Failures
    may be transient and are retried by `RetryingEmbedder`.
    """
    model_id: str
    dims: int

    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        """Return an array of shape (len(texts), dims)."""
        ...

    def embed_query(self, query: str) -> np.ndarray:
        """Return a vector of shape (dims,)."""
        ...
