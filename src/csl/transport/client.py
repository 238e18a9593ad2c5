"""HTTP delivery of ingest payloads with durable buffering on failure.

Every failure mode (non-2xx status, DNS, refused connection, timeout) is
handled the same way: the payload goes into the local buffer and a background
loop retries it later. Callers only ever see a boolean.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass

from csl.config.logging import logger
from csl.parser.models import IngestPayload
from csl.transport.buffer import LocalBuffer

DEFAULT_RETRY_INTERVAL_MS = 30_000


@dataclass(frozen=True)
class IngestClientConfig:
    """Endpoint, credential, and timing for the ingest client."""

    api_url: str
    api_token: str
    retry_interval_ms: int = DEFAULT_RETRY_INTERVAL_MS
    timeout_seconds: float = 30


class IngestClient:
    """Ship payloads to the ingest API, buffering whatever fails."""

    def __init__(self, config: IngestClientConfig, buffer: LocalBuffer) -> None:
        self.config = config
        self.buffer = buffer
        self._retry_thread: threading.Thread | None = None
        self._retry_stop: threading.Event | None = None
        self._retry_lock = threading.Lock()
        self._flush_lock = threading.Lock()

    def _post(self, payload: IngestPayload) -> bool:
        """POST one payload; return True only for a 2xx response."""
        try:
            # ASCII escapes keep lone surrogates from transcripts encodable.
            body = json.dumps(payload.to_wire()).encode("utf-8")
            req = urllib.request.Request(
                self.config.api_url,
                data=body,
                method="POST",
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.config.api_token}",
                },
            )
            with urllib.request.urlopen(req, timeout=self.config.timeout_seconds) as resp:
                status = resp.status
        except urllib.error.HTTPError as exc:
            logger.debug("ingest rejected | status={} url={}", exc.code, self.config.api_url)
            return False
        except (urllib.error.URLError, OSError, ValueError) as exc:
            logger.debug("ingest unreachable | url={} error={}", self.config.api_url, exc)
            return False
        return 200 <= status < 300

    def send(self, payload: IngestPayload) -> bool:
        """Deliver ``payload``; on any failure buffer it and return False."""
        if self._post(payload):
            return True
        try:
            self.buffer.add(payload)
        except sqlite3.Error as exc:
            logger.error(
                "failed to buffer undelivered payload | session={} error={}",
                payload.session.session_id,
                exc,
            )
            return False
        logger.warning(
            "ingest failed, payload buffered | session={} messages={}",
            payload.session.session_id,
            len(payload.messages),
        )
        return False

    def flush_buffer(self) -> int:
        """Retry every buffered payload in FIFO order; return delivered count.

        A failed entry stays where it is and the drain moves on. If another
        drain is already running this returns 0 without sending anything.
        """
        if not self._flush_lock.acquire(blocking=False):
            return 0
        try:
            sent = 0
            for entry in self.buffer.get_all():
                if not self._post(entry.payload):
                    continue
                try:
                    self.buffer.remove(entry.id)
                except sqlite3.Error as exc:
                    logger.error("failed to remove delivered entry | id={} error={}", entry.id, exc)
                    continue
                sent += 1
            if sent:
                logger.info("delivered {} buffered payloads", sent)
            return sent
        finally:
            self._flush_lock.release()

    @property
    def is_retrying(self) -> bool:
        """Whether the background retry loop is running."""
        with self._retry_lock:
            return self._retry_thread is not None

    def start_retry_loop(self) -> None:
        """Start periodic buffer drains; no-op when already running."""
        with self._retry_lock:
            if self._retry_thread is not None:
                return
            stop = threading.Event()
            thread = threading.Thread(
                target=self._retry_loop,
                args=(stop,),
                name="csl-ingest-retry",
                daemon=True,
            )
            self._retry_stop = stop
            self._retry_thread = thread
            thread.start()

    def stop_retry_loop(self) -> None:
        """Stop periodic drains; an in-progress drain is not interrupted."""
        with self._retry_lock:
            stop, thread = self._retry_stop, self._retry_thread
            self._retry_stop = None
            self._retry_thread = None
        if stop is None or thread is None:
            return
        stop.set()
        if thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _retry_loop(self, stop: threading.Event) -> None:
        """Drain the buffer every ``retry_interval_ms`` until stopped."""
        interval = max(self.config.retry_interval_ms, 1) / 1000.0
        while not stop.wait(interval):
            try:
                self.flush_buffer()
            except Exception as exc:
                logger.warning("buffer retry error: {}", exc)
