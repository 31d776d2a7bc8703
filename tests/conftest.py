"""
Shared pytest fixtures for noteindex tests.

Provides a deterministic embedder so no ML model is loaded during testing.
"""
from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path
from typing import Callable, Optional

import numpy as np
import pytest

from noteindex.analysis import tokenize
from noteindex.config import IndexConfig
from noteindex.store import SqliteStore


class FakeEmbedder:
    """
    Deterministic bag-of-words embedder for testing.

    Each token adds one to a hashed bucket; vectors are L2-normalized, so texts
    that share words have positive cosine similarity.
    """

    model_id = "fake-bow"

    def __init__(self, dims: int = 256):
        self.dims = dims
        self.calls = 0
        self.fail_with: Optional[Exception] = None
        self.on_call: Optional[Callable[[], None]] = None
        self._lock = threading.Lock()

    def _vec(self, text: str) -> np.ndarray:
        v = np.zeros(self.dims, dtype=np.float32)
        for tok in tokenize(text):
            h = int(hashlib.md5(tok.encode("utf-8")).hexdigest(), 16)
            v[h % self.dims] += 1.0
        n = np.linalg.norm(v)
        return v / n if n else v

    def embed_texts(self, texts: list[str]) -> np.ndarray:
        with self._lock:
            self.calls += 1
        if self.on_call is not None:
            self.on_call()
        if self.fail_with is not None:
            raise self.fail_with
        return np.vstack([self._vec(t) for t in texts])

    def embed_query(self, query: str) -> np.ndarray:
        return self._vec(query)


@pytest.fixture
def embedder() -> FakeEmbedder:
    """Create a fresh FakeEmbedder instance."""
    return FakeEmbedder()


@pytest.fixture
def store(tmp_path: Path):
    """An initialized SqliteStore in a temporary directory."""
    s = SqliteStore(tmp_path / "index" / "noteindex.sqlite")
    s.init()
    yield s
    s.close()


@pytest.fixture
def notes_root(tmp_path: Path) -> Path:
    root = tmp_path / "notes"
    root.mkdir()
    return root


@pytest.fixture
def cfg(tmp_path: Path, notes_root: Path) -> IndexConfig:
    return IndexConfig(notes_root=notes_root, index_dir=tmp_path / "index", workers=2)


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    logging.getLogger("noteindex").handlers.clear()
