from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from .change_detector import ChangeDetector
from .reconciler import matches_ignore_pattern

logger = logging.getLogger(__name__)


@dataclass
class NoteWatcher:
    """Filesystem watcher using watchdog.

    Collects changed note paths and, once a path has been quiet for
    `debounce_ms`, hands the batch to `ChangeDetector.update_paths`.
    Respects ignore patterns to skip files that shouldn't be indexed.
    """
    detector: ChangeDetector
    debounce_ms: int = 500
    poll_s: float = 0.25
    _pending: dict[str, float] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def root(self) -> Path:
        return self.detector.reconciler.root

    def notify(self, rel: str) -> None:
        """Record a change to `rel`; repeated events restart its quiet period."""
        if matches_ignore_pattern(rel, self.detector.reconciler.ignore):
            return
        with self._lock:
            self._pending[rel] = time.monotonic()

    def flush(self, now: float | None = None) -> list[str]:
        """Apply every pending path that has been quiet long enough."""
        now = time.monotonic() if now is None else now
        with self._lock:
            ready = sorted(p for p, t in self._pending.items() if (now - t) * 1000 >= self.debounce_ms)
            for p in ready:
                del self._pending[p]
        if ready:
            report = self.detector.update_paths(ready)
            logger.info(f"Watch update ({len(ready)} paths): {report.summary()}")
            for doc_id, err in report.failed.items():
                logger.warning(f"{doc_id}: {err}")
        return ready

    def watch(self, stop: threading.Event | None = None) -> None:
        from watchdog.events import FileSystemEventHandler  # type: ignore
        from watchdog.observers import Observer  # type: ignore

        # Resolve symlinks to match watchdog's resolved paths (e.g., /tmp -> /private/tmp on macOS)
        root = self.root.resolve()
        stop = stop or threading.Event()

        class Handler(FileSystemEventHandler):
            def __init__(self, outer: "NoteWatcher") -> None:
                self.outer = outer

            def _rel(self, path: str) -> str | None:
                try:
                    return str(Path(path).resolve().relative_to(root)).replace("\\", "/")
                except ValueError:
                    return None

            def on_any_event(self, event):  # noqa
                if event.is_directory:
                    return
                for path in (getattr(event, "src_path", None), getattr(event, "dest_path", None)):
                    rel = self._rel(path) if path else None
                    if rel:
                        self.outer.notify(rel)

        observer = Observer()
        observer.schedule(Handler(self), str(root), recursive=True)
        observer.start()
        logger.info(f"Watching {root} for changes")
        try:
            while not stop.is_set():
                time.sleep(self.poll_s)
                self.flush()
        finally:
            observer.stop()
            observer.join()
