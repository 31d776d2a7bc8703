from __future__ import annotations

from .base import Embedder
from .retry import ErrorCategory, RetryingEmbedder, classify_error

def build_embedder(
    provider: str,
    model: str,
    device: str = "cpu",
    batch_size: int = 32,
    use_query_prefix: bool = True,
    query_prefix: str = "",
    endpoint: str | None = None,
    offline_mode: bool = False,
) -> Embedder:
    """Instantiate the configured provider. Heavy imports happen lazily."""
    if provider == "sentence_transformers":
        from .sentence_transformers import SentenceTransformersEmbedder
        return SentenceTransformersEmbedder(
            model_id=model,
            device=device,
            batch_size=batch_size,
            use_query_prefix=use_query_prefix,
            query_prefix=query_prefix,
            offline_mode=offline_mode,
        )
    if provider == "ollama":
        from .ollama import OllamaEmbedder
        return OllamaEmbedder(model_id=model, endpoint=endpoint) if endpoint else OllamaEmbedder(model_id=model)
    raise ValueError(f"Unsupported embedding provider: {provider}")

def embedder_from_config(cfg, inner: Embedder | None = None) -> RetryingEmbedder:
    """The configured provider wrapped with the configured retry and concurrency limits."""
    if inner is None:
        inner = build_embedder(
            cfg.embedding_provider,
            cfg.embedding_model,
            device=cfg.embedding_device,
            batch_size=cfg.embedding_batch_size,
            use_query_prefix=cfg.use_query_prefix,
            query_prefix=cfg.query_prefix,
            endpoint=cfg.ollama_endpoint,
            offline_mode=cfg.offline_mode,
        )
    if isinstance(inner, RetryingEmbedder):
        return inner
    return RetryingEmbedder(
        inner,
        max_retries=cfg.max_retries,
        backoff_base_ms=cfg.backoff_base_ms,
        max_concurrency=cfg.max_concurrency,
    )

__all__ = ["Embedder", "RetryingEmbedder", "ErrorCategory", "classify_error", "build_embedder", "embedder_from_config"]
