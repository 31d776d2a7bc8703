from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

import frontmatter

from ..analysis import split_tags
from ..hashing import doc_id_for, fingerprint
from ..models import Document, ParseResult, Section, TaskStatus
from .base import DEFAULT_MAX_BYTES, WarningLog, check_parseable, file_stem
from .org import parse_timestamp

logger = logging.getLogger(__name__)

TAG_RE = re.compile(r"(?<![\w&/:])#([A-Za-z0-9_/-]*[A-Za-z_/-][A-Za-z0-9_/-]*)")
HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
FENCE_RE = re.compile(r"^\s*(```|~~~)")

def parse_inline_tags(text: str) -> list[str]:
    """`#tag` references outside fenced code blocks. Pure numbers (`#1`) aren't tags."""
    tags: list[str] = []
    in_fence = False
    for line in text.split("\n"):
        if FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence or HEADING_RE.match(line):
            continue
        tags.extend(m.group(1) for m in TAG_RE.finditer(line))
    return tags

@dataclass
class MarkdownParser:
    supported_suffixes = (".md", ".markdown")

    max_bytes: int = DEFAULT_MAX_BYTES

    def parse(self, raw_text: str, path: str, mtime: datetime | None = None) -> ParseResult:
        check_parseable(raw_text, path, self.max_bytes)
        warnings = WarningLog(path)
        text = raw_text.replace("\r\n", "\n").replace("\r", "\n")

        try:
            post = frontmatter.loads(text)
            content = post.content
            fm: dict[str, Any] = dict(post.metadata or {})
        except Exception as e:  # yaml.YAMLError and friends; the note body is still usable
            warnings.add(1, f"invalid front matter: {e}")
            content, fm = text, {}

        fm = {str(k).lower(): v for k, v in fm.items()}
        sections = _sections(content)

        title = _as_str(fm.pop("title", None))
        if not title:
            title = next((s.title for s in sections if s.level == 1), "") or file_stem(path)

        tags = set(parse_inline_tags(content))
        fm_tags = fm.pop("tags", None)
        if isinstance(fm_tags, str):
            tags.update(split_tags(fm_tags))
        elif isinstance(fm_tags, (list, tuple)):
            tags.update(str(t).lstrip("#") for t in fm_tags if t is not None)
        elif fm_tags is not None:
            warnings.add(1, f"ignoring front matter tags of type {type(fm_tags).__name__}")

        status = None
        raw_status = fm.pop("status", None)
        if raw_status is not None:
            status = TaskStatus.from_keyword(str(raw_status))
            if status is None:
                warnings.add(1, f"unknown status {raw_status!r}")

        note_date = _fm_time(fm.pop("date", None), "date", warnings)
        created = _fm_time(fm.pop("created", None), "created", warnings) or note_date
        modified = _fm_time(fm.pop("modified", None), "modified", warnings) or mtime
        planning = {k: _fm_time(fm.pop(k, None), k, warnings) for k in ("scheduled", "deadline", "closed")}

        category = _as_str(fm.pop("category", None)) or title.lower().replace(" ", "_")

        return ParseResult(
            Document(
                doc_id=doc_id_for(path),
                rel_path=str(path).replace("\\", "/"),
                title=title,
                body=content.strip(),
                fingerprint=fingerprint(raw_text),
                tags=frozenset(t for t in tags if t),
                status=status,
                category=category,
                created=created,
                modified=modified,
                date=note_date.date() if note_date else None,
                scheduled=planning["scheduled"].date() if planning["scheduled"] else None,
                deadline=planning["deadline"].date() if planning["deadline"] else None,
                closed=planning["closed"].date() if planning["closed"] else None,
                properties=fm,
                sections=sections,
            ),
            warnings.freeze(),
        )

def _sections(content: str) -> tuple[Section, ...]:
    sections: list[Section] = []
    current: tuple[str, int, int] | None = None
    buf: list[str] = []
    in_fence = False
    for lineno, line in enumerate(content.split("\n"), start=1):
        if FENCE_RE.match(line):
            in_fence = not in_fence
        m = None if in_fence else HEADING_RE.match(line)
        if m:
            if current:
                sections.append(Section(title=current[0], level=current[1], line=current[2], body="\n".join(buf).strip()))
            current, buf = (m.group(2), len(m.group(1)), lineno), []
        elif current:
            buf.append(line)
    if current:
        sections.append(Section(title=current[0], level=current[1], line=current[2], body="\n".join(buf).strip()))
    return tuple(sections)

def _as_str(value: Any) -> str:
    return str(value).strip() if value is not None else ""

def _fm_time(value: Any, name: str, warnings: WarningLog) -> datetime | None:
    """Front matter dates arrive as `date`/`datetime` from YAML or as strings."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return parse_timestamp(str(value))
    except ValueError as e:
        warnings.add(1, f"invalid {name}: {e}")
        return None
