"""Durable per-file byte offsets with debounced, crash-safe persistence.

The store is a single JSON document keyed by absolute transcript path::

    {"/path/to/session.jsonl": {"offset": 1234, "lastUpdated": "2026-..."}}

Writes are coalesced: any number of ``set_offset`` calls inside the debounce
window produce one disk write. ``flush()`` must run before shutdown, since an
update still waiting on the timer is lost if the process dies.
"""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from csl.config.logging import logger


def _now_iso() -> str:
    """Return current UTC timestamp in ISO-8601 format."""
    return datetime.now(timezone.utc).isoformat()


def _valid_entry(value: Any) -> bool:
    """Return whether one stored record has a usable integer offset."""
    if not isinstance(value, dict):
        return False
    offset = value.get("offset")
    return isinstance(offset, int) and not isinstance(offset, bool) and offset >= 0


class OffsetStore:
    """Map of transcript path to last processed byte offset."""

    def __init__(self, state_file_path: Path | str, *, debounce_ms: int = 1000) -> None:
        self.state_file_path = Path(state_file_path)
        self.debounce_ms = max(int(debounce_ms), 0)
        self._state: dict[str, dict[str, Any]] = {}
        self._dirty = False
        self._timer: threading.Timer | None = None
        self._lock = threading.RLock()

    def load(self) -> None:
        """Read persisted state; missing or corrupt files start empty."""
        try:
            raw = self.state_file_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            with self._lock:
                self._state = {}
            return
        except OSError as exc:
            logger.warning(
                "offset state unreadable, starting fresh | path={} error={}",
                self.state_file_path,
                exc,
            )
            with self._lock:
                self._state = {}
            return

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = None
        if not isinstance(payload, dict):
            logger.warning(
                "corrupted offset state, starting fresh | path={}", self.state_file_path
            )
            payload = {}

        state = {str(path): dict(entry) for path, entry in payload.items() if _valid_entry(entry)}
        dropped = len(payload) - len(state)
        if dropped:
            logger.warning("dropped {} invalid offset records", dropped)
        with self._lock:
            self._state = state

    def get_offset(self, file_path: str) -> int:
        """Return last processed offset for ``file_path`` (0 when untracked)."""
        with self._lock:
            entry = self._state.get(str(file_path))
            return int(entry["offset"]) if entry else 0

    def set_offset(self, file_path: str, offset: int) -> None:
        """Record a new offset and schedule a debounced write."""
        with self._lock:
            self._state[str(file_path)] = {"offset": int(offset), "lastUpdated": _now_iso()}
            self._schedule_disk_write()

    def remove_file(self, file_path: str) -> None:
        """Stop tracking ``file_path`` (rotated away or deleted)."""
        with self._lock:
            self._state.pop(str(file_path), None)
            self._schedule_disk_write()

    def get_tracked_files(self) -> list[str]:
        """Return tracked paths in insertion order."""
        with self._lock:
            return list(self._state.keys())

    def flush(self) -> bool:
        """Cancel any pending debounce and write state now."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            return self._write_to_disk()

    @property
    def has_pending_write(self) -> bool:
        """Whether a debounced write is scheduled but has not run yet."""
        with self._lock:
            return self._timer is not None

    def _schedule_disk_write(self) -> None:
        """Mark state dirty and start the debounce timer if none is live."""
        self._dirty = True
        if self._timer is not None:
            return
        timer = threading.Timer(self.debounce_ms / 1000.0, self._on_debounce)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _on_debounce(self) -> None:
        """Timer callback: clear the handle and persist."""
        with self._lock:
            # A flush() that raced this callback already cancelled and wrote.
            if self._timer is not threading.current_thread():
                return
            self._timer = None
            self._write_to_disk()

    def _write_to_disk(self) -> bool:
        """Write via temp file + atomic rename; log and return False on failure."""
        if not self._dirty and not self._state:
            return True
        tmp_path = self.state_file_path.with_name(self.state_file_path.name + ".tmp")
        try:
            self.state_file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(self._state, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.state_file_path)
        except OSError as exc:
            logger.error(
                "failed to write offset state | path={} error={}",
                self.state_file_path,
                exc,
            )
            return False
        self._dirty = False
        return True
