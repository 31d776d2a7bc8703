from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

MEETING_DATE_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")

class TaskStatus(str, Enum):
    TODO = "todo"
    NEXT = "next"
    WAITING = "waiting"
    SOMEDAY = "someday"
    CANCELED = "canceled"
    DONE = "done"

    @classmethod
    def from_keyword(cls, keyword: str) -> Optional["TaskStatus"]:
        """Map a task keyword (`TODO`, `CANCELLED`, `done`...) to a status."""
        kw = keyword.strip().lower()
        if kw == "cancelled":
            kw = "canceled"
        try:
            return cls(kw)
        except ValueError:
            return None

@dataclass(frozen=True)
class ParseWarning:
    """A malformed sub-section that was skipped while parsing a note."""
    path: str
    line: int
    reason: str

    def __str__(self) -> str:
        return f"{self.path}:{self.line}: {self.reason}"

@dataclass(frozen=True)
class Section:
    """One outline heading and the text directly under it."""
    title: str
    level: int
    line: int
    body: str = ""
    tags: frozenset[str] = frozenset()
    status: Optional[TaskStatus] = None
    scheduled: Optional[date] = None
    deadline: Optional[date] = None
    closed: Optional[date] = None
    properties: dict[str, str] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        """`meeting` for headings tagged meeting, `task` for headings with a status, else `heading`."""
        if any(t.casefold() == "meeting" for t in self.tags):
            return "meeting"
        if self.status is not None:
            return "task"
        return "heading"

    @property
    def meeting_date(self) -> Optional[date]:
        """The first YYYY-MM-DD in a meeting heading's title."""
        for m in MEETING_DATE_RE.finditer(self.title):
            try:
                return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
            except ValueError:
                continue
        return None

@dataclass(frozen=True)
class Document:
    """Canonical structured representation of one note."""
    doc_id: str
    rel_path: str
    title: str
    body: str
    fingerprint: str
    tags: frozenset[str] = frozenset()
    status: Optional[TaskStatus] = None
    category: str = ""
    created: Optional[datetime] = None
    modified: Optional[datetime] = None
    date: Optional[date] = None
    scheduled: Optional[date] = None
    deadline: Optional[date] = None
    closed: Optional[date] = None
    properties: dict[str, Any] = field(default_factory=dict)
    sections: tuple[Section, ...] = ()

    @property
    def file_name(self) -> str:
        return self.rel_path.rsplit("/", 1)[-1]

@dataclass(frozen=True)
class ParseResult:
    document: Document
    warnings: tuple[ParseWarning, ...] = ()

@dataclass(frozen=True)
class Chunk:
    chunk_id: str
    doc_id: str
    ordinal: int
    start: int
    end: int
    text: str
    text_hash: str

@dataclass(frozen=True)
class RankedResult:
    doc_id: str
    score: float
    lexical_score: float
    title: str
    rel_path: str
    kind: str = "note"
    tags: tuple[str, ...] = ()
    status: Optional[str] = None
    similarity: Optional[float] = None
    snippet: str = ""
