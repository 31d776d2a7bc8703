"""Org-mode note parser.

A single pass over the lines of a note. The preamble (everything before the
first headline) supplies `#+KEYWORD:` metadata and the file property drawer;
each headline opens a section with its own planning line, property drawer
and body. Malformed pieces are skipped and reported as warnings.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Optional

from ..analysis import split_tags
from ..hashing import doc_id_for, fingerprint
from ..models import Document, ParseResult, Section, TaskStatus
from .base import (
    DEFAULT_DONE_KEYWORDS,
    DEFAULT_MAX_BYTES,
    DEFAULT_TODO_KEYWORDS,
    WarningLog,
    check_parseable,
    file_stem,
)

logger = logging.getLogger(__name__)

KEYWORD_RE = re.compile(r"^\s*#\+([A-Za-z_]+):\s*(.*?)\s*$")
DRAWER_START_RE = re.compile(r"^\s*:([A-Za-z][\w-]*):\s*$")
DRAWER_END_RE = re.compile(r"^\s*:END:\s*$", re.IGNORECASE)
PROPERTY_RE = re.compile(r"^\s*:([^:\s]+):(?:\s+(.*?))?\s*$")
PLANNING_LINE_RE = re.compile(r"^\s*(?:SCHEDULED|DEADLINE|CLOSED):")
PLANNING_RE = re.compile(r"(SCHEDULED|DEADLINE|CLOSED):\s*([<\[][^>\]]*[>\]])")
TIMESTAMP_RE = re.compile(r"(\d{4}-\d{2}-\d{2})(?:\s+[^\s\d>\]]+)?(?:\s+(\d{1,2}:\d{2}))?")
HEADLINE_TAGS_RE = re.compile(r"^(.*?)\s+(:(?:[\w@#%]+:)+)\s*$")
PRIORITY_RE = re.compile(r"^\[#[A-Za-z0-9]\]\s*")

@dataclass
class _Heading:
    level: int
    title: str
    line: int
    keyword: str | None = None
    tags: list[str] = field(default_factory=list)
    planning: dict[str, date] = field(default_factory=dict)
    properties: dict[str, str] = field(default_factory=dict)
    lines: list[str] = field(default_factory=list)

def parse_timestamp(text: str) -> datetime:
    """Parse an org timestamp body (`<2025-01-05 Sun 10:00>`, `2025-01-05`).

    Raises ValueError when no valid date is present.
    """
    m = TIMESTAMP_RE.search(text)
    if not m:
        raise ValueError(f"no date in {text!r}")
    day = date.fromisoformat(m.group(1))
    if m.group(2):
        hh, mm = (int(x) for x in m.group(2).split(":"))
        return datetime(day.year, day.month, day.day, hh, mm)
    return datetime(day.year, day.month, day.day)

@dataclass
class OrgParser:
    supported_suffixes = (".org",)

    todo_keywords: tuple[str, ...] = DEFAULT_TODO_KEYWORDS
    done_keywords: tuple[str, ...] = DEFAULT_DONE_KEYWORDS
    max_bytes: int = DEFAULT_MAX_BYTES

    def __post_init__(self) -> None:
        self._keywords: dict[str, TaskStatus] = {}
        for kw in self.todo_keywords:
            self._keywords[kw] = TaskStatus.from_keyword(kw) or TaskStatus.TODO
        for kw in self.done_keywords:
            self._keywords[kw] = TaskStatus.from_keyword(kw) or TaskStatus.DONE
        alternatives = "|".join(re.escape(k) for k in sorted(self._keywords, key=len, reverse=True))
        kw_group = f"(?:({alternatives})\\s+)?" if alternatives else "()"
        self._headline_re = re.compile(rf"^(\*+)\s+{kw_group}(.*?)\s*$")

    def parse(self, raw_text: str, path: str, mtime: datetime | None = None) -> ParseResult:
        check_parseable(raw_text, path, self.max_bytes)
        warnings = WarningLog(path)
        lines = raw_text.replace("\r\n", "\n").replace("\r", "\n").split("\n")

        keywords: dict[str, str] = {}
        file_props: dict[str, str] = {}
        preamble: list[str] = []
        headings: list[_Heading] = []

        i = 0
        while i < len(lines):
            line = lines[i]
            lineno = i + 1
            hm = self._headline_re.match(line)
            if hm:
                headings.append(self._headline(hm, lineno))
                i += 1
                i = self._section_header(lines, i, headings[-1], warnings)
                continue

            target = headings[-1].lines if headings else preamble
            km = KEYWORD_RE.match(line)
            if km and not headings:
                keywords[km.group(1).upper()] = km.group(2)
                i += 1
                continue
            dm = DRAWER_START_RE.match(line)
            if dm:
                props = file_props if not headings else headings[-1].properties
                i = self._drawer(lines, i, dm.group(1), props, warnings)
                continue
            if PLANNING_LINE_RE.match(line):
                warnings.add(lineno, "planning line outside of a heading")
                i += 1
                continue
            target.append(line)
            i += 1

        return ParseResult(self._build(path, raw_text, mtime, keywords, file_props, preamble, headings, warnings),
                           warnings.freeze())

    def _headline(self, m: re.Match, lineno: int) -> _Heading:
        stars, keyword, rest = m.group(1), m.group(2) or None, m.group(3)
        rest = PRIORITY_RE.sub("", rest)
        tags: list[str] = []
        tm = HEADLINE_TAGS_RE.match(rest)
        if tm:
            rest, tags = tm.group(1), split_tags(tm.group(2))
        elif rest.startswith(":") and rest.endswith(":") and len(rest) > 1 and " " not in rest:
            rest, tags = "", split_tags(rest)
        return _Heading(level=len(stars), title=rest.strip(), line=lineno, keyword=keyword, tags=tags)

    def _section_header(self, lines: list[str], i: int, heading: _Heading, warnings: WarningLog) -> int:
        """Consume the planning line and property drawer directly under a headline."""
        if i < len(lines) and PLANNING_LINE_RE.match(lines[i]):
            self._planning(lines[i], i + 1, heading, warnings)
            i += 1
        return i

    def _planning(self, line: str, lineno: int, heading: _Heading, warnings: WarningLog) -> None:
        found = PLANNING_RE.findall(line)
        if not found:
            warnings.add(lineno, f"malformed planning line: {line.strip()!r}")
            return
        for kind, stamp in found:
            try:
                heading.planning[kind.lower()] = parse_timestamp(stamp).date()
            except ValueError as e:
                warnings.add(lineno, f"invalid {kind} date {stamp!r}: {e}")

    def _drawer(self, lines: list[str], i: int, name: str, props: dict[str, str], warnings: WarningLog) -> int:
        """Consume a drawer starting at line index `i`; return the next index.

        Only PROPERTIES drawers contribute data. A drawer that runs into the
        next headline or the end of the file is dropped with a warning.
        """
        start = i
        is_props = name.upper() == "PROPERTIES"
        collected: dict[str, str] = {}
        i += 1
        while i < len(lines):
            line = lines[i]
            if DRAWER_END_RE.match(line):
                props.update(collected)
                return i + 1
            if self._headline_re.match(line):
                break
            if is_props:
                pm = PROPERTY_RE.match(line)
                if pm:
                    collected[pm.group(1).lower().rstrip("+")] = pm.group(2) or ""
                elif line.strip():
                    warnings.add(i + 1, f"malformed property line: {line.strip()!r}")
            i += 1
        warnings.add(start + 1, f"unterminated :{name}: drawer")
        return i

    def _status(self, keyword: str | None) -> Optional[TaskStatus]:
        return self._keywords.get(keyword) if keyword else None

    def _build(
        self,
        path: str,
        raw_text: str,
        mtime: datetime | None,
        keywords: dict[str, str],
        file_props: dict[str, str],
        preamble: list[str],
        headings: list[_Heading],
        warnings: WarningLog,
    ) -> Document:
        title_heading = next((h for h in headings if h.level == 1), headings[0] if headings else None)

        properties: dict[str, Any] = dict(file_props)
        if title_heading:
            properties.update(title_heading.properties)

        title = keywords.get("TITLE") or (title_heading.title if title_heading else "") or file_stem(path)
        category = keywords.get("CATEGORY") or title.lower().replace(" ", "_")

        tags: set[str] = set(split_tags(keywords.get("FILETAGS", "")))
        for h in headings:
            tags.update(h.tags)
        tags.update(split_tags(properties.pop("tags", "")))

        status = None
        raw_status = properties.pop("status", None)
        if raw_status:
            status = self._keywords.get(raw_status.upper()) or TaskStatus.from_keyword(raw_status)
            if status is None:
                warnings.add(1, f"unknown STATUS property {raw_status!r}")
        if status is None and title_heading:
            status = self._status(title_heading.keyword)

        note_date = None
        if keywords.get("DATE"):
            try:
                note_date = parse_timestamp(keywords["DATE"])
            except ValueError as e:
                warnings.add(1, f"invalid #+DATE: {e}")
        if note_date is None:
            note_date = _meeting_date(headings)

        created = _property_time(properties.pop("created", None), "CREATED", warnings) or note_date
        modified = _property_time(properties.pop("modified", None), "MODIFIED", warnings) or mtime

        planning = title_heading.planning if title_heading else {}
        sections = tuple(
            Section(
                title=h.title,
                level=h.level,
                line=h.line,
                body=_join(h.lines),
                tags=frozenset(h.tags),
                status=self._status(h.keyword),
                scheduled=h.planning.get("scheduled"),
                deadline=h.planning.get("deadline"),
                closed=h.planning.get("closed"),
                properties=dict(h.properties),
            )
            for h in headings
        )

        body_parts = [_join(preamble)]
        for h in headings:
            body_parts.append(h.title)
            body_parts.append(_join(h.lines))

        if warnings.items:
            logger.debug(f"{path}: {len(warnings.items)} parse warnings")

        return Document(
            doc_id=doc_id_for(path),
            rel_path=str(path).replace("\\", "/"),
            title=title,
            body="\n".join(p for p in body_parts if p),
            fingerprint=fingerprint(raw_text),
            tags=frozenset(tags),
            status=status,
            category=category,
            created=created,
            modified=modified,
            date=note_date.date() if note_date else None,
            scheduled=planning.get("scheduled"),
            deadline=planning.get("deadline"),
            closed=planning.get("closed"),
            properties=properties,
            sections=sections,
        )

def _join(lines: Iterable[str]) -> str:
    return "\n".join(lines).strip()

def _meeting_date(headings: list[_Heading]) -> datetime | None:
    """Date of the first heading tagged `meeting` with a date in its title."""
    for h in headings:
        if "meeting" in h.tags:
            try:
                return parse_timestamp(h.title)
            except ValueError:
                continue
    return None

def _property_time(value: str | None, name: str, warnings: WarningLog) -> datetime | None:
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError as e:
        warnings.add(1, f"invalid {name} property: {e}")
        return None
