from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence
import json
import urllib.error
import urllib.request

import numpy as np

from ..errors import EmbeddingError

@dataclass
class OllamaEmbedder:
    """Adapter for a local Ollama embeddings endpoint."""
    model_id: str
    endpoint: str = "http://127.0.0.1:11434/api/embeddings"
    timeout_s: float = 30.0
    dims: int = 0

    def _call(self, prompt: str) -> list[float]:
        payload = {"model": self.model_id, "prompt": prompt}
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(self.endpoint, data=data, headers={"Content-Type": "application/json"})
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                out = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            # only 429 and 5xx are retryable
            transient = e.code == 429 or e.code >= 500
            raise EmbeddingError(f"Ollama HTTP {e.code}: {e.reason}", transient=transient) from e
        except (urllib.error.URLError, TimeoutError, ConnectionError) as e:
            raise EmbeddingError(f"Ollama unreachable at {self.endpoint}: {e}") from e
        vec = out.get("embedding")
        if not isinstance(vec, list) or not vec:
            raise EmbeddingError(f"Unexpected Ollama response: {str(out)[:200]}", transient=False)
        return [float(x) for x in vec]

    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        vectors = [self._call(t) for t in texts]
        arr = np.array(vectors, dtype=np.float32)
        if self.dims == 0 and arr.size:
            self.dims = int(arr.shape[1])
        return arr

    def embed_query(self, query: str) -> np.ndarray:
        arr = np.array(self._call(query), dtype=np.float32)
        if self.dims == 0:
            self.dims = int(arr.shape[0])
        return arr
