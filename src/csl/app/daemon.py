"""Daemon wiring: watch transcripts, parse new bytes, ship batches.

``Daemon`` is the single root object that owns every piece of runtime state
(offset store, retry buffer, ingest client, watcher, delivery pool), so tests
can build isolated instances against temporary directories.
"""

from __future__ import annotations

import signal
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any

from csl.config.logging import logger
from csl.config.settings import Config
from csl.parser.jsonl import deduplicate_messages, parse_jsonl_chunk
from csl.parser.models import IngestPayload, SessionMetadata
from csl.state.offsets import OffsetStore
from csl.transport.buffer import BufferNotInitializedError, LocalBuffer
from csl.transport.client import IngestClient, IngestClientConfig
from csl.watcher.files import FileEvent, FileWatcher

NEWLINE = b"\n"


def project_path_from_slug(project_slug: str) -> str:
    """Best-effort inverse of Claude's project slug (``/`` replaced by ``-``)."""
    if not project_slug:
        return ""
    if project_slug.startswith("-"):
        return project_slug.replace("-", "/")
    return project_slug


def read_complete_lines(file_path: Path, offset: int) -> bytes:
    """Read from ``offset`` to EOF, dropping a trailing unterminated line.

    The unterminated tail is a record still being written; it is picked up by
    the next pass once its newline lands.
    """
    with file_path.open("rb") as handle:
        handle.seek(offset)
        data = handle.read()
    cut = data.rfind(NEWLINE)
    if cut < 0:
        return b""
    return data[: cut + 1]


class Daemon:
    """Composed transcript shipper with explicit start/stop lifecycle."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.offsets = OffsetStore(config.state_path, debounce_ms=config.state_debounce_ms)
        self.buffer = LocalBuffer(config.buffer_db_path)
        self.client = IngestClient(
            IngestClientConfig(
                api_url=config.ingest_url,
                api_token=config.ingest_token or "",
                retry_interval_ms=config.retry_interval_ms,
                timeout_seconds=config.request_timeout_seconds,
            ),
            self.buffer,
        )
        self.watcher = FileWatcher(
            config.watch_dir,
            self.handle_event,
            debounce_ms=config.watch_debounce_ms,
            initial_scan=config.watch_initial_scan,
        )
        self._executor: ThreadPoolExecutor | None = None
        self._file_locks: dict[str, threading.Lock] = {}
        self._file_locks_guard = threading.Lock()
        self._pending: dict[Future[None], IngestPayload] = {}
        self._pending_guard = threading.Lock()
        self._shutdown = threading.Event()
        self._started = False

    def _lock_for(self, file_path: str) -> threading.Lock:
        """Return the lock that serializes passes over one file."""
        with self._file_locks_guard:
            lock = self._file_locks.get(file_path)
            if lock is None:
                lock = threading.Lock()
                self._file_locks[file_path] = lock
            return lock

    def start(self) -> None:
        """Load state, open the buffer, and begin watching and retrying."""
        if self._started:
            return
        self.offsets.load()
        self.buffer.init()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.delivery_max_workers,
            thread_name_prefix="csl-deliver",
        )
        self._started = True
        self._shutdown.clear()
        pending = self.buffer.count()
        logger.info(
            "daemon started | tracked_files={} buffered={}",
            len(self.offsets.get_tracked_files()),
            pending,
        )
        self.client.start_retry_loop()
        self.watcher.start()

    def stop(self) -> None:
        """Stop intake and timers, persist offsets, and close the buffer."""
        if not self._started:
            return
        self._started = False
        self.watcher.stop()
        self.client.stop_retry_loop()
        self.offsets.flush()
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        with self._pending_guard:
            cancelled = [p for f, p in self._pending.items() if f.cancelled()]
            self._pending.clear()
        for payload in cancelled:
            self._buffer_directly(payload)
        self.buffer.close()
        self._shutdown.set()
        logger.info("daemon stopped")

    def process_file(self, event: FileEvent) -> IngestPayload | None:
        """Consume new bytes of one transcript and return the batch to ship.

        Returns ``None`` when there is nothing new to send. The offset is
        advanced as soon as the chunk is parsed, regardless of delivery.
        """
        with self._lock_for(event.file_path):
            path = Path(event.file_path)
            offset = self.offsets.get_offset(event.file_path)
            try:
                size = path.stat().st_size
            except FileNotFoundError:
                if offset:
                    logger.info("transcript gone, untracking | path={}", event.file_path)
                    self.offsets.remove_file(event.file_path)
                return None

            if size < offset:
                logger.warning(
                    "transcript shrank, re-reading from start | path={} offset={} size={}",
                    event.file_path,
                    offset,
                    size,
                )
                self.offsets.remove_file(event.file_path)
                offset = 0
            if size == offset:
                return None

            try:
                raw = read_complete_lines(path, offset)
            except OSError as exc:
                logger.warning("failed to read transcript | path={} error={}", event.file_path, exc)
                return None
            if not raw:
                return None

            # Invalid bytes become U+FFFD; the offset still advances by raw size.
            result = parse_jsonl_chunk(raw.decode("utf-8", errors="replace"), event.session_id)
            new_offset = offset + len(raw)
            self.offsets.set_offset(event.file_path, new_offset)

            messages = deduplicate_messages(result.messages)
            if not messages:
                return None

            logger.debug(
                "parsed chunk | path={} bytes={} messages={}",
                event.file_path,
                len(raw),
                len(messages),
            )
            return IngestPayload(
                session=SessionMetadata(
                    session_id=event.session_id,
                    project_path=result.cwd or project_path_from_slug(event.project_slug),
                    project_slug=event.project_slug,
                    file_path=event.file_path,
                ),
                messages=messages,
                file_offset=new_offset,
                summary=result.slug,
            )

    def handle_event(self, event: FileEvent) -> None:
        """Watcher callback: parse synchronously, deliver in the background."""
        payload = self.process_file(event)
        if payload is None:
            return
        executor = self._executor
        if executor is None:
            self.client.send(payload)
            return
        try:
            future = executor.submit(self._deliver, payload)
        except RuntimeError:
            # Pool already shut down.
            self._buffer_directly(payload)
            return
        with self._pending_guard:
            self._pending[future] = payload
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[None]) -> None:
        """Drop a finished delivery from the pending map."""
        if future.cancelled():
            return
        with self._pending_guard:
            self._pending.pop(future, None)

    def _deliver(self, payload: IngestPayload) -> None:
        """Send one payload and log the outcome."""
        try:
            delivered = self.client.send(payload)
        except BufferNotInitializedError:
            logger.error(
                "buffer closed before failed delivery was recorded | session={}",
                payload.session.session_id,
            )
            return
        except Exception as exc:
            logger.error(
                "delivery crashed | session={} error={}", payload.session.session_id, exc
            )
            return
        if delivered:
            logger.info(
                "ingested | session={} messages={} offset={}",
                payload.session.session_id,
                len(payload.messages),
                payload.file_offset,
            )

    def _buffer_directly(self, payload: IngestPayload) -> None:
        """Queue a payload without attempting delivery."""
        try:
            self.buffer.add(payload)
        except (BufferNotInitializedError, sqlite3.Error) as exc:
            logger.error(
                "dropping payload during shutdown | session={} error={}",
                payload.session.session_id,
                exc,
            )

    def status(self) -> dict[str, Any]:
        """Return tracked files, buffer depth, and background loop state."""
        return {
            "tracked_files": self.offsets.get_tracked_files(),
            "buffered": self.buffer.count(),
            "retry_loop": self.client.is_retrying,
            "watching": self.watcher.is_running,
        }

    def wait(self, timeout: float | None = None) -> bool:
        """Block until ``stop()`` runs or ``timeout`` elapses."""
        return self._shutdown.wait(timeout)

    def request_shutdown(self, *_args: Any) -> None:
        """Signal handler: stop the daemon."""
        logger.info("shutdown signal received")
        self.stop()

    def run_forever(self) -> None:
        """Run until SIGINT/SIGTERM, then shut down cleanly."""
        signal.signal(signal.SIGINT, self.request_shutdown)
        signal.signal(signal.SIGTERM, self.request_shutdown)
        self.start()
        try:
            while not self.wait(1.0):
                pass
        finally:
            self.stop()
