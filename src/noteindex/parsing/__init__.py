from __future__ import annotations

from datetime import datetime

from ..models import ParseResult
from .base import DEFAULT_DONE_KEYWORDS, DEFAULT_MAX_BYTES, DEFAULT_TODO_KEYWORDS, NoteParser, ParserRegistry
from .markdown import MarkdownParser
from .org import OrgParser

def build_registry(
    todo_keywords: tuple[str, ...] = DEFAULT_TODO_KEYWORDS,
    done_keywords: tuple[str, ...] = DEFAULT_DONE_KEYWORDS,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> ParserRegistry:
    registry = ParserRegistry()
    registry.register(OrgParser(tuple(todo_keywords), tuple(done_keywords), max_bytes))
    registry.register(MarkdownParser(max_bytes))
    return registry

_default_registry = build_registry()

def parse(raw_text: str, path: str, mtime: datetime | None = None) -> ParseResult:
    """Parse one note with the default parsers, chosen by file suffix."""
    return _default_registry.parse(raw_text, path, mtime)

__all__ = ["parse", "build_registry", "ParserRegistry", "NoteParser", "OrgParser", "MarkdownParser"]
