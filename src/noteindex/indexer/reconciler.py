from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable

from ..hashing import fingerprint
from .types import SourceEntry


def matches_ignore_pattern(rel_path: str, patterns: list[str]) -> bool:
    """Check if a relative path matches any of the ignore patterns.

    Supports glob patterns like:
    - "**/.DS_Store" - match .DS_Store in any directory
    - ".git/**" - match everything under .git
    - "**/*.org_archive" - match archive files in any directory
    - "journal/**" - match everything under journal/
    """
    rel_path = rel_path.replace("\\", "/")

    for pattern in patterns:
        pattern = pattern.replace("\\", "/")

        if pattern.startswith("**/"):
            suffix = pattern[3:]
            if fnmatch(rel_path, pattern) or fnmatch(rel_path, f"*/{suffix}"):
                return True
            parts = rel_path.split("/")
            for i, part in enumerate(parts):
                if fnmatch(part, suffix):
                    return True
                if fnmatch("/".join(parts[i:]), suffix):
                    return True

        elif pattern.endswith("/**"):
            prefix = pattern[:-3]
            if rel_path.startswith(prefix + "/") or rel_path == prefix:
                return True

        elif fnmatch(rel_path, pattern):
            return True

    return False


def safe_read_text(path: Path, max_bytes: int = 10_000_000) -> str:
    b = path.read_bytes()
    if len(b) > max_bytes:
        raise ValueError(f"File too large for text read: {path} ({len(b)} bytes)")
    return b.decode("utf-8", errors="replace")


def relpath(root: Path, path: Path) -> str:
    return str(path.relative_to(root)).replace("\\", "/")


@dataclass
class Reconciler:
    """Walks the notes root and produces `SourceEntry` items for the change detector."""

    root: Path
    ignore: list[str] = field(default_factory=list)
    suffixes: tuple[str, ...] = (".org", ".md")
    max_bytes: int = 10_000_000

    def is_candidate(self, rel_path: str) -> bool:
        return Path(rel_path).suffix.lower() in self.suffixes and not matches_ignore_pattern(rel_path, self.ignore)

    def scan_files(self) -> list[Path]:
        """Scan the notes root for note files, respecting ignore patterns."""
        paths: list[Path] = []
        for p in sorted(self.root.rglob("*")):
            if p.is_file() and self.is_candidate(relpath(self.root, p)):
                paths.append(p)
        return paths

    def entry_for(self, path: Path) -> SourceEntry:
        """Fingerprint one file. Raises OSError/ValueError if it can't be read."""
        abs_path = path if path.is_absolute() else self.root / path
        text = safe_read_text(abs_path, self.max_bytes)
        return SourceEntry(relpath(self.root, abs_path), fingerprint(text), abs_path)

    def entries(self, paths: Iterable[Path] | None = None) -> list[SourceEntry]:
        return [self.entry_for(p) for p in (self.scan_files() if paths is None else paths)]
