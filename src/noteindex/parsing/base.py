from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePath
from typing import Protocol

from ..errors import ParseError
from ..models import ParseResult, ParseWarning

DEFAULT_TODO_KEYWORDS = ("TODO", "NEXT", "WAITING")
DEFAULT_DONE_KEYWORDS = ("DONE", "CANCELED", "CANCELLED", "SOMEDAY")
DEFAULT_MAX_BYTES = 10_000_000

class NoteParser(Protocol):
    supported_suffixes: tuple[str, ...]

    def parse(self, raw_text: str, path: str, mtime: datetime | None = None) -> ParseResult:
        ...

@dataclass
class WarningLog:
    """Collects the malformed sub-sections skipped while parsing one note."""
    path: str
    items: list[ParseWarning] = field(default_factory=list)

    def add(self, line: int, reason: str) -> None:
        self.items.append(ParseWarning(self.path, line, reason))

    def freeze(self) -> tuple[ParseWarning, ...]:
        return tuple(self.items)

def check_parseable(raw_text: str, path: str, max_bytes: int) -> None:
    """Reject files that can't be treated as text notes at all."""
    nul = raw_text.find("\x00")
    if nul >= 0:
        line = raw_text.count("\n", 0, nul) + 1
        column = nul - (raw_text.rfind("\n", 0, nul) + 1) + 1
        raise ParseError(path, "binary content (NUL byte)", line, column)
    size = len(raw_text.encode("utf-8", errors="replace"))
    if size > max_bytes:
        raise ParseError(path, f"file too large ({size} bytes, limit {max_bytes})")

def file_stem(path: str) -> str:
    return PurePath(path).stem

class ParserRegistry:
    def __init__(self) -> None:
        self._by_suffix: dict[str, NoteParser] = {}

    def register(self, parser: NoteParser) -> None:
        for s in parser.supported_suffixes:
            self._by_suffix[s.lower()] = parser

    def get(self, path: str) -> NoteParser | None:
        return self._by_suffix.get(PurePath(path).suffix.lower())

    @property
    def suffixes(self) -> tuple[str, ...]:
        return tuple(sorted(self._by_suffix))

    def parse(self, raw_text: str, path: str, mtime: datetime | None = None) -> ParseResult:
        parser = self.get(path)
        if parser is None:
            raise ParseError(path, f"no parser for suffix {PurePath(path).suffix!r}")
        return parser.parse(raw_text, path, mtime)
