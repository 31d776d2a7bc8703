"""Data classes shared by the indexing pipeline and the change detector."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..models import ParseWarning


@dataclass(frozen=True)
class SourceEntry:
    """A note source as seen by the corpus walker."""

    rel_path: str
    fingerprint: str
    abs_path: Path | None = None


@dataclass(frozen=True)
class IndexOutcome:
    """Result of one pipeline call for one document.

    status is one of: indexed | unchanged | superseded | deleted | missing
    """

    doc_id: str
    status: str
    chunk_count: int = 0
    warnings: tuple[ParseWarning, ...] = ()


@dataclass
class Report:
    """Summary of a change-detector run."""

    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: int = 0
    failed: dict[str, Exception] = field(default_factory=dict)
    warnings: dict[str, list[ParseWarning]] = field(default_factory=dict)
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    def summary(self) -> str:
        return (
            f"{len(self.added)} added, {len(self.updated)} updated, {len(self.deleted)} deleted, "
            f"{self.unchanged} unchanged, {len(self.failed)} failed"
            + (" (cancelled)" if self.cancelled else "")
        )
