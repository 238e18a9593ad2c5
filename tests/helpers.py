"""Shared test utilities for config, transcript fixtures, and CLI runs."""

from __future__ import annotations

import io
import json
from contextlib import redirect_stdout
from pathlib import Path
from typing import Any

from csl.config.settings import Config
from csl.parser.models import IngestPayload, ParsedMessage, SessionMetadata


def make_config(base: Path, **overrides: Any) -> Config:
    """Build a deterministic Config object rooted at ``base`` for tests."""
    values: dict[str, Any] = {
        "data_dir": base / "data",
        "watch_dir": base / "projects",
        "watch_debounce_ms": 50,
        "watch_initial_scan": True,
        "ingest_url": "http://127.0.0.1:9/api/ingest",
        "ingest_token": "test-token",
        "retry_interval_ms": 100,
        "request_timeout_seconds": 2,
        "delivery_max_workers": 2,
        "state_debounce_ms": 20,
    }
    values.update(overrides)
    return Config(**values)


def write_test_config(tmp_path: Path, **sections: dict[str, Any]) -> Path:
    """Write a test config.toml pointing data dir to ``tmp_path``.

    Usage::

        write_test_config(tmp_path, ingest={"url": "http://localhost:3000"})
    """
    all_sections: dict[str, dict[str, Any]] = {
        "data": {"dir": str(tmp_path / "data")},
        "watch": {"dir": str(tmp_path / "projects")},
    }
    for name, payload in sections.items():
        if isinstance(payload, dict):
            all_sections.setdefault(name, {}).update(payload)

    lines: list[str] = []
    for section_name, fields in all_sections.items():
        lines.append(f"[{section_name}]")
        for key, value in fields.items():
            if isinstance(value, bool):
                lines.append(f"{key} = {'true' if value else 'false'}")
            elif isinstance(value, (int, float)):
                lines.append(f"{key} = {value}")
            else:
                lines.append(f'{key} = "{value}"')
        lines.append("")

    config_path = tmp_path / "test_config.toml"
    config_path.write_text("\n".join(lines), encoding="utf-8")
    return config_path


def run_cli(args: list[str]) -> tuple[int, str]:
    """Run CLI command and return ``(exit_code, stdout_text)``."""
    from csl.app import cli

    out = io.StringIO()
    with redirect_stdout(out):
        code = cli.main(args)
    return code, out.getvalue()


def run_cli_json(args: list[str]) -> tuple[int, dict]:
    """Run CLI command and parse stdout JSON payload."""
    code, output = run_cli(args)
    return code, json.loads(output)


def jsonl(*records: dict[str, Any]) -> str:
    """Serialize records as newline-terminated JSONL text."""
    return "".join(json.dumps(record) + "\n" for record in records)


def user_record(uuid: str, text: str, **extra: Any) -> dict[str, Any]:
    """Build a raw ``user`` transcript record."""
    record: dict[str, Any] = {
        "type": "user",
        "uuid": uuid,
        "timestamp": "2026-03-01T10:00:00.000Z",
        "message": {"role": "user", "content": text},
    }
    record.update(extra)
    return record


def assistant_record(
    uuid: str,
    request_id: str,
    content: list[dict[str, Any]],
    *,
    stop_reason: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Build a raw ``assistant`` transcript record with usage."""
    record: dict[str, Any] = {
        "type": "assistant",
        "uuid": uuid,
        "requestId": request_id,
        "timestamp": "2026-03-01T10:00:01.000Z",
        "message": {
            "role": "assistant",
            "model": "claude-sonnet-4-5",
            "content": content,
            "stop_reason": stop_reason,
            "usage": {
                "input_tokens": 12,
                "output_tokens": 34,
                "cache_creation_input_tokens": 5,
                "cache_read_input_tokens": 7,
            },
        },
    }
    record.update(extra)
    return record


def make_payload(session_id: str = "sess-1", message_id: str = "m1", offset: int = 10) -> IngestPayload:
    """Build a small valid ingest payload."""
    return IngestPayload(
        session=SessionMetadata(
            session_id=session_id,
            project_path="/Users/dev/app",
            project_slug="-Users-dev-app",
            file_path=f"/tmp/projects/-Users-dev-app/{session_id}.jsonl",
        ),
        messages=[
            ParsedMessage(
                id=message_id,
                session_id=session_id,
                type="user",
                role="user",
                timestamp="2026-03-01T10:00:00.000Z",
            )
        ],
        file_offset=offset,
    )
