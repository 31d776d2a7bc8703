"""Retry and concurrency limits around an embedding provider.

Every provider call made by the indexing pipeline and the retrieval engine
goes through `RetryingEmbedder`: at most `max_concurrency` calls are in
flight at once, and each call is retried independently with exponential
backoff before an `EmbeddingError` is raised.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Sequence, TypeVar

import numpy as np

from ..errors import EmbeddingError
from .base import Embedder

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(Enum):
    """Classification of provider errors for retry behavior."""

    TRANSIENT = "transient"  # Retry with backoff
    RATE_LIMITED = "rate_limited"  # Retry with backoff
    PERMANENT = "permanent"  # Fail immediately


def _extract_status_code(error: Exception) -> int | None:
    for attr in ("code", "status_code"):
        code = getattr(error, attr, None)
        if isinstance(code, int):
            return code
    response = getattr(error, "response", None)
    if response is not None and isinstance(getattr(response, "status_code", None), int):
        return response.status_code
    return None


def classify_error(error: Exception) -> ErrorCategory:
    """Classify a provider exception into a retry category."""
    if isinstance(error, EmbeddingError):
        return ErrorCategory.TRANSIENT if error.transient else ErrorCategory.PERMANENT

    status = _extract_status_code(error)
    if status:
        if status == 429:
            return ErrorCategory.RATE_LIMITED
        if 400 <= status < 500:
            return ErrorCategory.PERMANENT
        if status >= 500:
            return ErrorCategory.TRANSIENT

    error_type = type(error).__name__
    error_msg = str(error).lower()

    connection_types = ("Connection", "Timeout", "Socket", "Transport", "Network")
    if any(x in error_type for x in connection_types):
        return ErrorCategory.TRANSIENT

    connection_msgs = ("connection", "timeout", "timed out", "reset", "refused", "unreachable")
    if any(x in error_msg for x in connection_msgs):
        return ErrorCategory.TRANSIENT

    # shape and value errors are permanent
    if isinstance(error, (ValueError, TypeError)):
        return ErrorCategory.PERMANENT

    return ErrorCategory.TRANSIENT


@dataclass
class RetryingEmbedder:
    """Wraps an `Embedder` with bounded concurrency and retries.

    Usage:
        embedder = RetryingEmbedder(SentenceTransformersEmbedder("BAAI/bge-small-en-v1.5"))
        vectors = embedder.embed_texts(["chunk one", "chunk two"], doc_id=doc.doc_id)
    """

    inner: Embedder
    max_retries: int = 3
    backoff_base_ms: int = 500
    max_concurrency: int = 4
    sleep: Callable[[float], None] = time.sleep

    _slots: threading.BoundedSemaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"Invalid max_retries: {self.max_retries}. Must be >= 0.")
        if self.max_concurrency <= 0:
            raise ValueError(f"Invalid max_concurrency: {self.max_concurrency}. Must be > 0.")
        self._slots = threading.BoundedSemaphore(self.max_concurrency)

    @property
    def model_id(self) -> str:
        return self.inner.model_id

    @property
    def dims(self) -> int:
        return self.inner.dims

    @property
    def backoff_base_s(self) -> float:
        return self.backoff_base_ms / 1000.0

    def embed_texts(self, texts: Sequence[str], doc_id: str | None = None) -> np.ndarray:
        texts = list(texts)
        if not texts:
            return np.zeros((0, max(self.dims, 0)), dtype=np.float32)
        arr = self._call(lambda: self.inner.embed_texts(texts), doc_id)
        arr = np.asarray(arr, dtype=np.float32)
        if arr.ndim != 2 or arr.shape[0] != len(texts):
            raise EmbeddingError(
                f"provider returned shape {arr.shape} for {len(texts)} texts", doc_id, transient=False
            )
        return arr

    def embed_query(self, query: str) -> np.ndarray:
        vec = np.asarray(self._call(lambda: self.inner.embed_query(query), None), dtype=np.float32)
        if vec.ndim != 1:
            raise EmbeddingError(f"provider returned shape {vec.shape} for a query", transient=False)
        return vec

    def _call(self, fn: Callable[[], T], doc_id: str | None) -> T:
        source = doc_id or "query"
        for attempt in range(self.max_retries + 1):
            try:
                with self._slots:
                    result = fn()
                if attempt > 0:
                    logger.debug(f"[{self.model_id}] {source} succeeded on retry {attempt}")
                return result
            except Exception as e:
                category = classify_error(e)
                if category == ErrorCategory.PERMANENT:
                    logger.warning(f"[{self.model_id}] {source}: {type(e).__name__}: {e}")
                    raise self._failure(e, doc_id, attempt + 1, transient=False) from e
                if attempt >= self.max_retries:
                    logger.warning(f"[{self.model_id}] {source}: giving up after {attempt + 1} attempts: {e}")
                    raise self._failure(e, doc_id, attempt + 1, transient=True) from e
                wait = self.backoff_base_s * (2 ** attempt)
                logger.info(
                    f"[{self.model_id}] Retry {attempt + 1}/{self.max_retries} for {source}: "
                    f"{type(e).__name__} (waiting {wait:.2f}s)"
                )
                self.sleep(wait)
        raise AssertionError("unreachable")

    @staticmethod
    def _failure(error: Exception, doc_id: str | None, attempts: int, transient: bool) -> EmbeddingError:
        reason = error.reason if isinstance(error, EmbeddingError) else f"{type(error).__name__}: {error}"
        return EmbeddingError(reason, doc_id=doc_id, attempts=attempts, transient=transient)
