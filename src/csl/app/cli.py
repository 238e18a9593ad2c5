"""Command-line interface for the CSL transcript daemon.

``csl run`` is the long-running process (launchd/systemd entrypoint). The
other commands inspect or act on the local state files and exit.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from csl import __version__
from csl.app.daemon import Daemon
from csl.config.logging import configure_logging
from csl.config.settings import get_config, get_config_sources
from csl.state.offsets import OffsetStore
from csl.transport.buffer import LocalBuffer
from csl.transport.client import IngestClient, IngestClientConfig

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 3


def _emit(message: object = "", *, file: Any | None = None) -> None:
    """Write one CLI output line to stdout or a provided file-like target."""
    target = file if file is not None else sys.stdout
    target.write(f"{message}\n")


def _emit_structured(*, title: str, payload: dict[str, Any], as_json: bool) -> None:
    """Emit a dict payload either as JSON or as key/value lines."""
    if as_json:
        _emit(json.dumps(payload, indent=2, ensure_ascii=True))
        return
    _emit(title)
    for key, value in payload.items():
        _emit(f"- {key}: {value}")


def _missing_ingest_url() -> int:
    """Print a configuration error and return exit 1."""
    _emit(
        "No ingest URL configured. Set [ingest] url in ~/.csl/config.toml or CSL_INGEST_URL.",
        file=sys.stderr,
    )
    return EXIT_FATAL


def _hoist_global_json_flag(raw: list[str]) -> list[str]:
    """Allow ``--json`` before or after subcommands by normalizing argv order."""
    if "--json" not in raw:
        return raw
    return ["--json"] + [item for item in raw if item != "--json"]


def _cmd_run(args: argparse.Namespace) -> int:
    """Run the watcher/shipper until interrupted."""
    config = get_config()
    if not config.ingest_url:
        return _missing_ingest_url()
    if not config.ingest_token:
        _emit("Warning: CSL_INGEST_TOKEN is not set; ingest will reject batches.", file=sys.stderr)
    Daemon(config).run_forever()
    return EXIT_OK


def _cmd_status(args: argparse.Namespace) -> int:
    """Show tracked transcripts and retry buffer depth from local state."""
    config = get_config()
    offsets = OffsetStore(config.state_path)
    offsets.load()
    buffer = LocalBuffer(config.buffer_db_path)
    buffer.init()
    try:
        buffered = buffer.count()
    finally:
        buffer.close()
    tracked = offsets.get_tracked_files()
    payload: dict[str, Any] = {
        "tracked_files": len(tracked),
        "buffered_batches": buffered,
        "state_path": str(config.state_path),
        "buffer_db_path": str(config.buffer_db_path),
    }
    if args.verbose:
        payload["offsets"] = {path: offsets.get_offset(path) for path in tracked}
    _emit_structured(title="Status:", payload=payload, as_json=args.json)
    return EXIT_OK


def _cmd_flush(args: argparse.Namespace) -> int:
    """Try once to deliver every buffered batch."""
    config = get_config()
    if not config.ingest_url:
        return _missing_ingest_url()
    buffer = LocalBuffer(config.buffer_db_path)
    buffer.init()
    try:
        client = IngestClient(
            IngestClientConfig(
                api_url=config.ingest_url,
                api_token=config.ingest_token or "",
                retry_interval_ms=config.retry_interval_ms,
                timeout_seconds=config.request_timeout_seconds,
            ),
            buffer,
        )
        delivered = client.flush_buffer()
        remaining = buffer.count()
    finally:
        buffer.close()
    _emit_structured(
        title="Flush:",
        payload={"delivered": delivered, "remaining": remaining},
        as_json=args.json,
    )
    return EXIT_OK if remaining == 0 else EXIT_PARTIAL


def _cmd_config(args: argparse.Namespace) -> int:
    """Print effective configuration with secrets redacted."""
    payload = get_config().public_dict()
    payload["sources"] = get_config_sources()
    _emit_structured(title="Config:", payload=payload, as_json=args.json)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    """Construct the csl command-line parser."""
    _F = argparse.RawDescriptionHelpFormatter  # noqa: N806
    parser = argparse.ArgumentParser(
        prog="csl",
        formatter_class=_F,
        description="csl -- ship Claude Code session transcripts to a central viewer.\n"
        "Tails ~/.claude/projects/**/*.jsonl and posts new messages to the\n"
        "configured ingest API, buffering locally while it is unreachable.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit structured JSON instead of human-readable text.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── run ──────────────────────────────────────────────────────────
    run = sub.add_parser(
        "run",
        formatter_class=_F,
        help="Watch transcripts and ship new messages until interrupted",
        description=(
            "Start the daemon in the foreground. Stops cleanly on Ctrl-C or\n"
            "SIGTERM, saving offsets first.\n\n"
            "Examples:\n"
            "  csl run\n"
            "  CSL_LOG_LEVEL=DEBUG csl run"
        ),
    )
    run.set_defaults(func=_cmd_run)

    # ── status ───────────────────────────────────────────────────────
    status = sub.add_parser(
        "status",
        formatter_class=_F,
        help="Show tracked transcripts and retry buffer depth",
    )
    status.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Include the byte offset of every tracked transcript.",
    )
    status.set_defaults(func=_cmd_status)

    # ── flush ────────────────────────────────────────────────────────
    flush = sub.add_parser(
        "flush",
        formatter_class=_F,
        help="Deliver buffered batches once (exit 3 if some remain)",
    )
    flush.set_defaults(func=_cmd_flush)

    # ── config ───────────────────────────────────────────────────────
    config = sub.add_parser(
        "config",
        formatter_class=_F,
        help="Print effective configuration",
    )
    config.set_defaults(func=_cmd_config)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entrypoint for CLI invocation with global flags and dispatch."""
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(_hoist_global_json_flag(list(argv if argv is not None else sys.argv[1:])))

    if not getattr(args, "command", None):
        parser.print_help()
        return 0

    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))


if __name__ == "__main__":
    raise SystemExit(main())
