"""Shared test fixtures for the csl test suite.

Isolates every test from the real ``~/.csl`` and ``~/.claude`` trees by
pointing CSL_CONFIG at a temporary config and clearing ingest env vars.
"""

from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from csl.config.settings import reload_config
from tests.helpers import make_config, write_test_config


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: full watcher-to-ingest pipeline with real threads"
    )


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Point config loading at a per-test TOML and drop ingest env overrides."""
    monkeypatch.delenv("CSL_INGEST_URL", raising=False)
    monkeypatch.delenv("CSL_INGEST_TOKEN", raising=False)
    monkeypatch.setattr("csl.config.settings.load_dotenv", lambda *a, **k: False)
    config_path = write_test_config(tmp_path)
    monkeypatch.setenv("CSL_CONFIG", str(config_path))
    reload_config()


@pytest.fixture
def tmp_config(tmp_path):
    """Deterministic Config rooted at tmp_path."""
    config = make_config(tmp_path)
    config.watch_dir.mkdir(parents=True, exist_ok=True)
    return config


class IngestRecorder:
    """Collects requests hit against the stub ingest server."""

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.statuses: list[int] = []
        self.default_status = 200
        self.lock = threading.Lock()

    def next_status(self) -> int:
        with self.lock:
            if self.statuses:
                return self.statuses.pop(0)
            return self.default_status


@pytest.fixture
def ingest_server():
    """Local HTTP server standing in for the ingest API.

    Yields ``(url, recorder)``. Set ``recorder.statuses`` to script per-request
    responses; after the script runs out ``recorder.default_status`` is used.
    """
    recorder = IngestRecorder()

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):  # noqa: N802
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length)
            status = recorder.next_status()
            with recorder.lock:
                recorder.requests.append(
                    {
                        "path": self.path,
                        "headers": {k.lower(): v for k, v in self.headers.items()},
                        "body": json.loads(body.decode("utf-8")),
                        "status": status,
                    }
                )
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.end_headers()
            self.wfile.write(b'{"ok":true}')

        def log_message(self, *_args):
            return

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    try:
        yield f"http://{host}:{port}/api/ingest", recorder
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def projects_dir(tmp_path) -> Path:
    """Empty Claude projects root."""
    root = tmp_path / "projects"
    root.mkdir(parents=True, exist_ok=True)
    return root
