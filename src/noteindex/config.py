from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os
import tomllib
from typing import Any

from .parsing.base import DEFAULT_DONE_KEYWORDS, DEFAULT_TODO_KEYWORDS
from .query.schema import DEFAULT_BOOSTS, FieldSchema, FieldType

DEFAULT_QUERY_PREFIX = "Represent this sentence for searching relevant passages: "

def _expand(p: str) -> str:
    return os.path.expandvars(os.path.expanduser(p))

def _int_in(section: dict[str, Any], key: str, default: int, lo: int, hi: int) -> int:
    value = int(section.get(key, default))
    if value < lo or value > hi:
        raise ValueError(f"Invalid {key}: {value}. Must be between {lo} and {hi}.")
    return value

def _float_in(section: dict[str, Any], key: str, default: float, lo: float, hi: float) -> float:
    value = float(section.get(key, default))
    if value < lo or value > hi:
        raise ValueError(f"Invalid {key}: {value}. Must be between {lo} and {hi}.")
    return value

@dataclass(frozen=True)
class IndexConfig:
    """Configuration for one notes corpus and its index."""

    notes_root: Path
    index_dir: Path

    ignore: list[str] = field(default_factory=list)
    suffixes: tuple[str, ...] = (".org", ".md")
    max_file_bytes: int = 10_000_000

    def __post_init__(self):
        """Convert string paths to Path objects and expand ~ and environment variables."""
        if isinstance(self.notes_root, str):
            object.__setattr__(self, 'notes_root', Path(_expand(self.notes_root)))
        if isinstance(self.index_dir, str):
            object.__setattr__(self, 'index_dir', Path(_expand(self.index_dir)))

    # Parser
    todo_keywords: tuple[str, ...] = DEFAULT_TODO_KEYWORDS
    done_keywords: tuple[str, ...] = DEFAULT_DONE_KEYWORDS

    # Chunking
    max_tokens: int = 1280
    overlap_tokens: int = 64
    tokenizer: str = "words"  # words | any tiktoken encoding name, e.g. cl100k_base

    # Embeddings
    embedding_provider: str = "sentence_transformers"  # sentence_transformers|ollama
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_batch_size: int = 32
    embedding_device: str = "cpu"  # cpu|cuda|mps
    ollama_endpoint: str | None = None
    offline_mode: bool = True  # Set HF_HUB_OFFLINE and TRANSFORMERS_OFFLINE
    use_query_prefix: bool = True  # Asymmetric retrieval (BGE pattern)
    query_prefix: str = DEFAULT_QUERY_PREFIX
    max_retries: int = 3
    backoff_base_ms: int = 500
    max_concurrency: int = 4

    # Retrieval
    top_k: int = 10
    include_similarity: bool = False
    lexical_weight: float = 0.7
    similarity_weight: float = 0.3
    boosts: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_BOOSTS))

    # Schema: extra property-backed fields, name -> text|keyword|date|number
    extra_fields: dict[str, str] = field(default_factory=dict)

    # Indexing
    workers: int = 4

    # Logging
    log_level: str = "INFO"
    log_file: Path | None = None

    @property
    def db_path(self) -> Path:
        return self.index_dir / "noteindex.sqlite"

    def field_schema(self) -> FieldSchema:
        return FieldSchema.default(extra_fields=self.extra_fields, boosts=self.boosts)

    @staticmethod
    def from_toml(path: str | Path) -> "IndexConfig":
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
        return IndexConfig.from_dict(data)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "IndexConfig":
        notes = data.get("notes", {})
        index = data.get("index", {})
        parser = data.get("parser", {})
        chunking = data.get("chunking", {})
        emb = data.get("embeddings", {})
        ret = data.get("retrieval", {})
        schema = data.get("schema", {})
        indexing = data.get("indexing", {})
        log = data.get("logging", {})

        if "root" not in notes:
            raise ValueError("Missing required setting: [notes] root")
        if "dir" not in index:
            raise ValueError("Missing required setting: [index] dir")
        notes_root = Path(_expand(notes["root"])).resolve()
        index_dir = Path(_expand(index["dir"])).resolve()

        suffixes = tuple(s.lower() if s.startswith(".") else f".{s.lower()}" for s in notes.get("suffixes", (".org", ".md")))
        max_file_bytes = _int_in(notes, "max_file_bytes", 10_000_000, 1, 1_000_000_000)

        todo_keywords = tuple(parser.get("todo_keywords", DEFAULT_TODO_KEYWORDS))
        done_keywords = tuple(parser.get("done_keywords", DEFAULT_DONE_KEYWORDS))
        overlap_kw = set(todo_keywords) & set(done_keywords)
        if overlap_kw:
            raise ValueError(f"Keywords cannot be both todo and done: {sorted(overlap_kw)}")

        # Parse and validate chunking parameters
        max_tokens = _int_in(chunking, "max_tokens", 1280, 16, 100_000)
        overlap_tokens = _int_in(chunking, "overlap_tokens", 64, 0, 100_000)
        if overlap_tokens >= max_tokens:
            raise ValueError(f"Invalid overlap_tokens: {overlap_tokens}. Must be less than max_tokens ({max_tokens}).")
        tokenizer = str(chunking.get("tokenizer", "words"))

        provider = emb.get("provider", "sentence_transformers")
        valid_providers = ("sentence_transformers", "ollama")
        if provider not in valid_providers:
            raise ValueError(f"Invalid provider: {provider}. Must be one of {valid_providers}.")

        batch_size = _int_in(emb, "batch_size", 32, 1, 10000)

        # Validate device
        device = emb.get("device", "cpu")
        valid_devices = ("cpu", "cuda", "mps")
        if device not in valid_devices:
            raise ValueError(f"Invalid device: {device}. Must be one of {valid_devices}.")

        max_retries = _int_in(emb, "max_retries", 3, 0, 20)
        backoff_base_ms = _int_in(emb, "backoff_base_ms", 500, 0, 60_000)
        max_concurrency = _int_in(emb, "max_concurrency", 4, 1, 256)

        # Environment variable takes precedence if explicitly set
        offline_mode_env = os.environ.get("HF_OFFLINE_MODE")
        if offline_mode_env is not None:
            offline_mode = offline_mode_env.lower() in ("1", "true", "yes")
        else:
            offline_mode = bool(emb.get("offline_mode", True))

        # SIDE EFFECT: Set HuggingFace offline environment variables based on config
        if offline_mode:
            os.environ.setdefault("HF_HUB_OFFLINE", "1")
            os.environ.setdefault("TRANSFORMERS_OFFLINE", "1")

        top_k = _int_in(ret, "top_k", 10, 1, 1000)
        lexical_weight = _float_in(ret, "lexical_weight", 0.7, 0.0, 1.0)
        similarity_weight = _float_in(ret, "similarity_weight", 0.3, 0.0, 1.0)
        boosts = dict(DEFAULT_BOOSTS)
        boosts.update({str(k): float(v) for k, v in ret.get("boosts", {}).items()})

        extra_fields = {str(k): str(v) for k, v in schema.get("fields", {}).items()}
        for name, ftype in extra_fields.items():
            if ftype not in {t.value for t in FieldType}:
                raise ValueError(f"Invalid type for field {name!r}: {ftype}. Must be one of {[t.value for t in FieldType]}.")

        workers = _int_in(indexing, "workers", 4, 1, 64)

        log_level = str(log.get("level", "INFO")).upper()
        if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {log_level}")
        log_file = Path(_expand(log["file"])) if log.get("file") else None

        cfg = IndexConfig(
            notes_root=notes_root,
            index_dir=index_dir,
            ignore=list(notes.get("ignore", [])),
            suffixes=suffixes,
            max_file_bytes=max_file_bytes,
            todo_keywords=todo_keywords,
            done_keywords=done_keywords,
            max_tokens=max_tokens,
            overlap_tokens=overlap_tokens,
            tokenizer=tokenizer,
            embedding_provider=provider,
            embedding_model=emb.get("model", "BAAI/bge-small-en-v1.5"),
            embedding_batch_size=batch_size,
            embedding_device=device,
            ollama_endpoint=emb.get("endpoint"),
            offline_mode=offline_mode,
            use_query_prefix=bool(emb.get("use_query_prefix", True)),
            query_prefix=emb.get("query_prefix", DEFAULT_QUERY_PREFIX),
            max_retries=max_retries,
            backoff_base_ms=backoff_base_ms,
            max_concurrency=max_concurrency,
            top_k=top_k,
            include_similarity=bool(ret.get("include_similarity", False)),
            lexical_weight=lexical_weight,
            similarity_weight=similarity_weight,
            boosts=boosts,
            extra_fields=extra_fields,
            workers=workers,
            log_level=log_level,
            log_file=log_file,
        )
        # Surface schema errors (redeclared built-ins, negative boosts) at load time
        cfg.field_schema()
        return cfg
