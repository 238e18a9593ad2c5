"""Transcript file watcher built on watchfiles.

Watches the Claude projects tree and reports created or appended transcripts
as ``FileEvent``s. Expected layout under the watch root::

    <project-slug>/<session-id>.jsonl
    <project-slug>/<session-id>/subagents/<agent-file>.jsonl
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal

from watchfiles import Change, DefaultFilter, watch

from csl.config.logging import logger

TRANSCRIPT_SUFFIX = ".jsonl"
SUBAGENTS_DIR = "subagents"

FileEventType = Literal["add", "change"]


@dataclass(frozen=True)
class FileEvent:
    """One created or appended transcript."""

    type: FileEventType
    file_path: str
    session_id: str
    project_slug: str
    is_subagent: bool


class TranscriptFilter(DefaultFilter):
    """Default ignore rules plus: only ``*.jsonl`` files, no deletions."""

    def __call__(self, change: Change, path: str) -> bool:
        if change == Change.deleted:
            return False
        return path.endswith(TRANSCRIPT_SUFFIX) and super().__call__(change, path)


def parse_file_path(
    watch_dir: Path, change_type: FileEventType, file_path: Path | str
) -> FileEvent | None:
    """Map a transcript path to session identity; ``None`` if it doesn't fit."""
    path = Path(file_path)
    if not path.name.endswith(TRANSCRIPT_SUFFIX):
        return None
    try:
        parts = path.relative_to(watch_dir).parts
    except ValueError:
        return None
    if len(parts) < 2:
        return None

    project_slug = parts[0]
    is_subagent = SUBAGENTS_DIR in parts[1:-1]
    if is_subagent:
        session_id = parts[1]
    else:
        session_id = parts[1].removesuffix(TRANSCRIPT_SUFFIX)

    return FileEvent(
        type=change_type,
        file_path=str(path),
        session_id=session_id,
        project_slug=project_slug,
        is_subagent=is_subagent,
    )


def classify_changes(
    watch_dir: Path, changes: set[tuple[Change, str]]
) -> list[FileEvent]:
    """Turn one raw watchfiles batch into transcript events, sorted by path."""
    events: list[FileEvent] = []
    for change_type, path_str in sorted(changes, key=lambda item: item[1]):
        if change_type == Change.added:
            event = parse_file_path(watch_dir, "add", path_str)
        elif change_type == Change.modified:
            event = parse_file_path(watch_dir, "change", path_str)
        else:
            continue
        if event is not None:
            events.append(event)
    return events


class FileWatcher:
    """Background thread that feeds transcript events to ``on_event``."""

    def __init__(
        self,
        watch_dir: Path | str,
        on_event: Callable[[FileEvent], None],
        *,
        debounce_ms: int = 1600,
        initial_scan: bool = True,
    ) -> None:
        self.watch_dir = Path(watch_dir).expanduser().resolve()
        self.on_event = on_event
        self.debounce_ms = debounce_ms
        self.initial_scan = initial_scan
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start watching; return False if the watch root does not exist."""
        if self._thread is not None:
            logger.warning("file watcher already running")
            return True
        if not self.watch_dir.is_dir():
            logger.warning("watch dir does not exist, nothing to monitor | path={}", self.watch_dir)
            return False

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._watch_loop, name="csl-file-watcher", daemon=True
        )
        self._thread.start()
        logger.info("file watcher started | path={}", self.watch_dir)
        return True

    def stop(self) -> None:
        """Stop watching and wait briefly for the thread to exit."""
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
        logger.info("file watcher stopped")

    def scan_existing(self) -> list[FileEvent]:
        """Return ``add`` events for transcripts already on disk."""
        events: list[FileEvent] = []
        for path in sorted(self.watch_dir.rglob(f"*{TRANSCRIPT_SUFFIX}")):
            if not path.is_file():
                continue
            event = parse_file_path(self.watch_dir, "add", path)
            if event is not None:
                events.append(event)
        return events

    def _dispatch(self, events: list[FileEvent]) -> None:
        """Hand events to the callback, isolating callback failures."""
        for event in events:
            if self._stop_event.is_set():
                return
            try:
                self.on_event(event)
            except Exception as exc:
                logger.error("error handling {} for {}: {}", event.type, event.file_path, exc)

    def _watch_loop(self) -> None:
        """Initial scan, then block on watchfiles until stopped."""
        try:
            if self.initial_scan:
                self._dispatch(self.scan_existing())
            for changes in watch(
                self.watch_dir,
                watch_filter=TranscriptFilter(),
                debounce=self.debounce_ms,
                stop_event=self._stop_event,
                raise_interrupt=False,
                recursive=True,
            ):
                self._dispatch(classify_changes(self.watch_dir, changes))
        except Exception as exc:
            logger.error("file watcher error: {}", exc)
