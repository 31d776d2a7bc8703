from .change_detector import ChangeDetector
from .locks import KeyedLocks
from .pipeline import IndexingPipeline, analyze, analyze_sections
from .reconciler import Reconciler, matches_ignore_pattern
from .types import IndexOutcome, Report, SourceEntry

__all__ = [
    "ChangeDetector",
    "IndexingPipeline",
    "KeyedLocks",
    "Reconciler",
    "IndexOutcome",
    "Report",
    "SourceEntry",
    "analyze",
    "analyze_sections",
    "matches_ignore_pattern",
]
