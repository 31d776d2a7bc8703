from __future__ import annotations

# Suppress harmless multiprocessing resource tracker warnings (common on macOS)
import warnings
warnings.filterwarnings("ignore", message="resource_tracker: There appear to be.*leaked semaphore")

import dataclasses
import json
import logging
from pathlib import Path

import typer

from .config import IndexConfig
from .errors import NoteIndexError, QueryError
from .indexer.indexer import Indexer
from .retrieval.retriever import Retriever

app = typer.Typer(add_completion=False, no_args_is_help=True)

def _cfg(config: str) -> IndexConfig:
    try:
        return IndexConfig.from_toml(config)
    except FileNotFoundError:
        raise typer.BadParameter(f"Config file not found: {config}. Run `noteindex init` first.")
    except ValueError as e:
        raise typer.BadParameter(str(e))

def _setup_logging(log_file: str | Path | None, log_level: str, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, log_level.upper(), logging.INFO)

    # Format with timestamp for auditability
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    handlers: list[logging.Handler] = []

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(fmt, datefmt))
    handlers.append(console)

    if log_file:
        from logging.handlers import RotatingFileHandler
        file_handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(logging.Formatter(fmt, datefmt))
        handlers.append(file_handler)

    logger = logging.getLogger("noteindex")
    logger.setLevel(level)
    logger.handlers.clear()
    for h in handlers:
        logger.addHandler(h)

def _logging_from(cfg: IndexConfig, log_file: str | None, log_level: str | None, verbose: bool) -> None:
    # CLI flag > config setting
    _setup_logging(log_file or cfg.log_file, log_level or cfg.log_level, verbose)

@app.command()
def init(notes: str = typer.Option(..., help="Notes root directory"),
         index: str = typer.Option(..., help="Index directory"),
         out: str = typer.Option("noteindex.toml", help="Write example config to this path")):
    """Write a starter noteindex.toml."""
    outp = Path(out)
    outp.write_text(f"""[notes]
root = "{notes}"
ignore = [".git/**", "**/.DS_Store", "**/*.org_archive"]
suffixes = [".org", ".md"]

[index]
dir = "{index}"

[parser]
todo_keywords = ["TODO", "NEXT", "WAITING"]
done_keywords = ["DONE", "CANCELED", "CANCELLED", "SOMEDAY"]

[chunking]
max_tokens = 1280
overlap_tokens = 64
# "words" or a tiktoken encoding name such as "cl100k_base"
tokenizer = "words"

[embeddings]
provider = "sentence_transformers"
model = "BAAI/bge-small-en-v1.5"
batch_size = 32
device = "cpu"
# Set to true to use cached models only (no HuggingFace downloads)
# Can also be controlled via HF_OFFLINE_MODE environment variable
offline_mode = true
max_retries = 3
backoff_base_ms = 500
max_concurrency = 4

[retrieval]
top_k = 10
include_similarity = false
lexical_weight = 0.7
similarity_weight = 0.3

[retrieval.boosts]
title = 2.0
body = 1.0
tags = 1.5

[schema.fields]
# priority = "number"
# project = "keyword"

[indexing]
workers = 4

[logging]
level = "INFO"
""", encoding="utf-8")
    typer.echo(f"Wrote {outp}")

@app.command()
def scan(
    config: str = typer.Option("noteindex.toml"),
    full: bool = typer.Option(False, help="Re-index all notes"),
    workers: int = typer.Option(None, help="Override [indexing] workers"),
    log_file: str = typer.Option(None, "--log-file", "-l", help="Log file path"),
    log_level: str = typer.Option(None, "--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging"),
):
    """Scan the notes root and bring the index up to date."""
    cfg = _cfg(config)
    _logging_from(cfg, log_file, log_level, verbose)
    if workers is not None:
        cfg = dataclasses.replace(cfg, workers=workers)

    idx = Indexer(cfg)
    try:
        report = idx.scan(full=full)
    except KeyboardInterrupt:
        idx.cancel()
        typer.echo("Scan cancelled.", err=True)
        raise typer.Exit(code=130)
    except NoteIndexError as e:
        typer.echo(f"Scan aborted: {e}", err=True)
        raise typer.Exit(code=1)
    finally:
        idx.close()

    typer.echo(f"Scan complete: {report.summary()} in {report.elapsed_seconds:.1f}s")
    for doc_id, warns in sorted(report.warnings.items()):
        for w in warns:
            typer.echo(f"  warning: {w}", err=True)
    for doc_id, err in sorted(report.failed.items()):
        typer.echo(f"  failed: {doc_id}: {err}", err=True)
    if report.failed:
        raise typer.Exit(code=1)

@app.command()
def query(q: str, config: str = typer.Option("noteindex.toml"), k: int = typer.Option(None),
          similarity: bool = typer.Option(None, "--similarity/--no-similarity",
                                          help="Blend in embedding similarity (default: from config)"),
          similar: bool = typer.Option(False, help="Pure vector search on the query text")):
    """Search the index with an AQL query, e.g. `title:rust tags:work,urgent -status:done date>=2025-01-01`."""
    cfg = _cfg(config)
    r = Retriever(cfg)
    try:
        hits = r.similar(q, k=k) if similar else r.search(q, k=k, include_similarity=similarity)
    except QueryError as e:
        typer.echo(f"Invalid query: {e}", err=True)
        raise typer.Exit(code=2)
    except NoteIndexError as e:
        typer.echo(f"Search failed: {e}", err=True)
        raise typer.Exit(code=1)
    finally:
        r.store.close()

    typer.echo(json.dumps([dataclasses.asdict(h) for h in hits], indent=2))

@app.command()
def status(config: str = typer.Option("noteindex.toml")):
    """Show indexing status."""
    cfg = _cfg(config)
    r = Retriever(cfg)
    try:
        info = r.status()
    finally:
        r.store.close()
    typer.echo(f"Index: {info['db_path']}")
    typer.echo(f"Indexed notes: {info['indexed_documents']}")
    typer.echo(f"Indexed entries: {info.get('indexed_entries', 0)} (tasks, meetings, headings)")
    typer.echo(f"Indexed chunks: {info['indexed_chunks']}")
    if info.get("model_id"):
        typer.echo(f"Embedding model: {info['model_id']} ({info['dims']} dims)")

@app.command()
def watch(config: str = typer.Option("noteindex.toml"),
          log_file: str = typer.Option(None, "--log-file", "-l", help="Log file path for audit trail"),
          log_level: str = typer.Option(None, "--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR"),
          verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging"),
          debounce_ms: int = typer.Option(500, help="Quiet period before a changed note is re-indexed")):
    """Watch the notes root for changes and index continuously."""
    cfg = _cfg(config)
    _logging_from(cfg, log_file, log_level, verbose)
    idx = Indexer(cfg)
    typer.echo(f"Watching {cfg.notes_root} for changes. Press Ctrl+C to stop.")
    try:
        idx.watch(debounce_ms=debounce_ms)
    except KeyboardInterrupt:
        typer.echo("Stopped.")
    finally:
        idx.close()

if __name__ == "__main__":
    app()
