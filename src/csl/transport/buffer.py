"""SQLite-backed retry buffer for ingest payloads that failed delivery."""

from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from csl.config.logging import logger
from csl.parser.models import IngestPayload


class BufferNotInitializedError(RuntimeError):
    """Raised when the buffer is used before ``init()`` or after ``close()``."""


@dataclass(frozen=True)
class BufferedEntry:
    """One queued payload with its store-assigned sequence id."""

    id: int
    payload: IngestPayload
    created_at: str


def _iso_now() -> str:
    """Return current UTC datetime as ISO8601 text."""
    return datetime.now(timezone.utc).isoformat()


def _dict_row(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """Convert SQLite row tuples into dictionary rows."""
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


class LocalBuffer:
    """Append-only FIFO of undelivered payloads that survives restarts."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def init(self) -> None:
        """Open the database and create the buffer table if needed."""
        with self._lock:
            if self._conn is not None:
                return
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = _dict_row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=FULL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS buffer (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.commit()
            self._conn = conn

    def _require_conn(self) -> sqlite3.Connection:
        """Return the open connection or raise for misuse."""
        if self._conn is None:
            raise BufferNotInitializedError(
                f"buffer not initialized: call init() first ({self.db_path})"
            )
        return self._conn

    def add(self, payload: IngestPayload) -> int:
        """Persist ``payload`` and return its sequence id once committed."""
        body = json.dumps(payload.to_wire())
        with self._lock:
            conn = self._require_conn()
            with conn:
                cursor = conn.execute(
                    "INSERT INTO buffer (payload, created_at) VALUES (?, ?)",
                    (body, _iso_now()),
                )
            return int(cursor.lastrowid)

    def get_all(self) -> list[BufferedEntry]:
        """Return every buffered payload, oldest first."""
        with self._lock:
            rows = (
                self._require_conn()
                .execute("SELECT id, payload, created_at FROM buffer ORDER BY id ASC")
                .fetchall()
            )

        entries: list[BufferedEntry] = []
        for row in rows:
            try:
                payload = IngestPayload.model_validate(json.loads(row["payload"]))
            except ValueError as exc:
                logger.warning(
                    "skipping unreadable buffer entry | id={} error={}", row["id"], exc
                )
                continue
            entries.append(
                BufferedEntry(id=int(row["id"]), payload=payload, created_at=row["created_at"])
            )
        return entries

    def remove(self, entry_id: int) -> None:
        """Delete one delivered entry."""
        with self._lock:
            conn = self._require_conn()
            with conn:
                conn.execute("DELETE FROM buffer WHERE id = ?", (int(entry_id),))

    def count(self) -> int:
        """Return the number of buffered payloads."""
        with self._lock:
            row = self._require_conn().execute("SELECT COUNT(*) AS cnt FROM buffer").fetchone()
        return int(row["cnt"]) if row else 0

    def close(self) -> None:
        """Close the database handle; safe to call twice."""
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
