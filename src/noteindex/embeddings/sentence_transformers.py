from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np

from ..errors import EmbeddingError

logger = logging.getLogger(__name__)


@dataclass
class SentenceTransformersEmbedder:
    """Local sentence-transformers model.

    The model is loaded on first use, so opening an index for `status` or a
    pure lexical query never pays for it. With `offline_mode` the model must
    already be in the local Hugging Face cache; a missing or broken model is
    a permanent EmbeddingError, not something to retry.
    """

    model_id: str
    device: str = "cpu"
    batch_size: int = 32
    use_query_prefix: bool = True
    query_prefix: str = "Represent this sentence for searching relevant passages: "
    offline_mode: bool = False
    _model: Any = field(default=None, init=False, repr=False)
    _dims: int | None = field(default=None, init=False, repr=False)
    _load_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def dims(self) -> int:
        if self._dims is None:
            model = self._load()
            dims = model.get_sentence_embedding_dimension()
            if not dims:
                dims = int(self._encode(["dimensions"]).shape[1])
            self._dims = int(dims)
        return self._dims

    def _load(self) -> Any:
        with self._load_lock:
            if self._model is not None:
                return self._model
            # Suppress harmless multiprocessing resource tracker warnings on macOS
            import warnings
            warnings.filterwarnings("ignore", message="resource_tracker: There appear to be.*leaked semaphore")

            from sentence_transformers import SentenceTransformer  # type: ignore

            logger.info(f"Loading embedding model {self.model_id} on {self.device}")
            try:
                self._model = SentenceTransformer(
                    self.model_id, device=self.device, local_files_only=self.offline_mode
                )
            except (OSError, ValueError, RuntimeError) as e:
                hint = " (offline mode: is the model in the local cache?)" if self.offline_mode else ""
                raise EmbeddingError(f"cannot load model {self.model_id}{hint}: {e}", transient=False) from e
            return self._model

    def _encode(self, texts: list[str]) -> np.ndarray:
        vectors = self._load().encode(
            texts, batch_size=self.batch_size, convert_to_numpy=True, normalize_embeddings=True
        )
        return np.asarray(vectors, dtype=np.float32)

    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        """Embed note chunks (no prefix)."""
        return self._encode(list(texts))

    def embed_query(self, query: str) -> np.ndarray:
        if self.use_query_prefix and self.query_prefix:
            query = self.query_prefix + query
        return self._encode([query])[0]
