"""Tests for embedding provider construction and the provider adapters."""
from __future__ import annotations

import json
import urllib.error
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from noteindex.embeddings import RetryingEmbedder, build_embedder, embedder_from_config
from noteindex.embeddings.ollama import OllamaEmbedder
from noteindex.embeddings.sentence_transformers import SentenceTransformersEmbedder
from noteindex.errors import EmbeddingError


def _response(payload: dict) -> MagicMock:
    cm = MagicMock()
    cm.__enter__.return_value.read.return_value = json.dumps(payload).encode("utf-8")
    return cm


class TestOllamaEmbedder:
    @patch("noteindex.embeddings.ollama.urllib.request.urlopen")
    def test_embed_texts(self, urlopen):
        urlopen.return_value = _response({"embedding": [0.1, 0.2, 0.3]})
        emb = OllamaEmbedder(model_id="nomic-embed-text")
        out = emb.embed_texts(["a", "b"])
        assert out.shape == (2, 3)
        assert out.dtype == np.float32
        assert emb.dims == 3
        body = json.loads(urlopen.call_args.args[0].data)
        assert body == {"model": "nomic-embed-text", "prompt": "b"}

    @patch("noteindex.embeddings.ollama.urllib.request.urlopen")
    def test_server_error_is_transient(self, urlopen):
        urlopen.side_effect = urllib.error.HTTPError("http://x", 503, "busy", {}, None)
        with pytest.raises(EmbeddingError) as exc:
            OllamaEmbedder(model_id="m").embed_query("q")
        assert exc.value.transient

    @patch("noteindex.embeddings.ollama.urllib.request.urlopen")
    def test_client_error_is_permanent(self, urlopen):
        urlopen.side_effect = urllib.error.HTTPError("http://x", 404, "no such model", {}, None)
        with pytest.raises(EmbeddingError) as exc:
            OllamaEmbedder(model_id="m").embed_query("q")
        assert not exc.value.transient

    @patch("noteindex.embeddings.ollama.urllib.request.urlopen")
    def test_unreachable_is_transient(self, urlopen):
        urlopen.side_effect = urllib.error.URLError("connection refused")
        with pytest.raises(EmbeddingError) as exc:
            OllamaEmbedder(model_id="m").embed_query("q")
        assert exc.value.transient

    @patch("noteindex.embeddings.ollama.urllib.request.urlopen")
    def test_malformed_response(self, urlopen):
        urlopen.return_value = _response({"error": "oops"})
        with pytest.raises(EmbeddingError) as exc:
            OllamaEmbedder(model_id="m").embed_query("q")
        assert not exc.value.transient


class TestBuildEmbedder:
    def test_ollama_endpoint(self):
        emb = build_embedder("ollama", "m", endpoint="http://gpu-box:11434/api/embeddings")
        assert isinstance(emb, OllamaEmbedder)
        assert emb.endpoint == "http://gpu-box:11434/api/embeddings"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            build_embedder("magic", "m")

    def test_from_config_applies_retry_settings(self, cfg, embedder):
        wrapped = embedder_from_config(cfg, embedder)
        assert isinstance(wrapped, RetryingEmbedder)
        assert wrapped.max_retries == cfg.max_retries
        assert wrapped.max_concurrency == cfg.max_concurrency
        assert embedder_from_config(cfg, wrapped) is wrapped


class TestSentenceTransformersEmbedder:
    @patch("sentence_transformers.SentenceTransformer")
    def test_model_loads_on_first_use(self, model_cls):
        model_cls.return_value.get_sentence_embedding_dimension.return_value = 4
        emb = build_embedder("sentence_transformers", "BAAI/bge-small-en-v1.5", offline_mode=True)
        assert isinstance(emb, SentenceTransformersEmbedder)
        model_cls.assert_not_called()
        assert emb.dims == 4
        assert emb.dims == 4
        model_cls.assert_called_once_with("BAAI/bge-small-en-v1.5", device="cpu", local_files_only=True)

    @patch("sentence_transformers.SentenceTransformer")
    def test_missing_model_is_permanent(self, model_cls):
        model_cls.side_effect = OSError("not found in local cache")
        emb = SentenceTransformersEmbedder("BAAI/bge-small-en-v1.5", offline_mode=True)
        with pytest.raises(EmbeddingError) as exc:
            emb.embed_query("q")
        assert not exc.value.transient
        assert "offline mode" in str(exc.value)

    @patch("sentence_transformers.SentenceTransformer")
    def test_missing_model_not_retried(self, model_cls):
        model_cls.side_effect = OSError("no such repo")
        wrapped = RetryingEmbedder(SentenceTransformersEmbedder("m"), max_retries=3, sleep=lambda s: None)
        with pytest.raises(EmbeddingError):
            wrapped.embed_texts(["a"])
        assert model_cls.call_count == 1

    @patch("sentence_transformers.SentenceTransformer")
    def test_query_prefix_and_dtype(self, model_cls):
        model = model_cls.return_value
        model.encode.return_value = np.ones((1, 3), dtype=np.float64)
        emb = SentenceTransformersEmbedder("m", query_prefix="query: ")
        vec = emb.embed_query("rust ownership")
        assert vec.shape == (3,)
        assert vec.dtype == np.float32
        assert model.encode.call_args.args[0] == ["query: rust ownership"]

        emb.embed_texts(["chunk"])
        assert model.encode.call_args.args[0] == ["chunk"]
