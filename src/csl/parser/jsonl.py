"""Incremental parser for Claude Code JSONL transcript chunks.

A chunk is whatever text was appended to a transcript since the last read.
Parsing never raises on bad data: malformed lines, records without an id,
and unknown content items are dropped and the rest of the chunk goes on.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from csl.config.logging import logger
from csl.parser.models import SKIP_TYPES, ParsedContentBlock, ParsedMessage

TOOL_RESULT_MAX_BYTES = 50 * 1024
TRUNCATION_MARKER = "[TRUNCATED]"


@dataclass
class ParseResult:
    """Messages parsed from one chunk plus chunk-level hints."""

    messages: list[ParsedMessage] = field(default_factory=list)
    bytes_read: int = 0
    slug: str | None = None
    cwd: str | None = None


def utf8_byte_length(text: str) -> int:
    """Return the UTF-8 size of ``text``; lone surrogates count as three bytes."""
    return len(text.encode("utf-8", errors="surrogatepass"))


def truncate_utf8(text: str, max_bytes: int = TOOL_RESULT_MAX_BYTES) -> str:
    """Cut ``text`` to at most ``max_bytes`` UTF-8 bytes and mark it truncated.

    The cut lands on a character boundary: a multi-byte sequence split by the
    byte limit is dropped entirely.
    """
    encoded = text.encode("utf-8", errors="replace")
    if len(encoded) <= max_bytes:
        return text
    prefix = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return prefix + TRUNCATION_MARKER


def _now_iso() -> str:
    """Return current UTC timestamp in ISO-8601 format."""
    return datetime.now(timezone.utc).isoformat()


def _optional_str(value: Any) -> str | None:
    """Return ``value`` as a string, or ``None`` when absent or empty."""
    if value is None or value == "":
        return None
    return str(value)


def _optional_int(value: Any) -> int | None:
    """Return ``value`` as an int when it is a finite number, else ``None``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        # json.loads accepts NaN, Infinity and 1e999
        return None
    return int(value)


def _tool_result_text(content: Any) -> str:
    """Flatten a tool_result payload into one string."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return json.dumps(content, ensure_ascii=False, separators=(",", ":"))
    return ""


def _map_content_block(block: Any, index: int) -> ParsedContentBlock | None:
    """Map one raw content item; return ``None`` for unknown kinds."""
    if not isinstance(block, dict):
        return None
    block_type = block.get("type")
    if block_type == "thinking":
        return ParsedContentBlock(
            block_index=index,
            block_type="thinking",
            text_content=str(block.get("thinking") or ""),
        )
    if block_type == "text":
        return ParsedContentBlock(
            block_index=index,
            block_type="text",
            text_content=str(block.get("text") or ""),
        )
    if block_type == "tool_use":
        tool_input = block.get("input")
        return ParsedContentBlock(
            block_index=index,
            block_type="tool_use",
            tool_use_id=_optional_str(block.get("id")),
            tool_name=_optional_str(block.get("name")),
            tool_input=tool_input if isinstance(tool_input, dict) else {},
        )
    if block_type == "tool_result":
        is_error = block.get("is_error")
        return ParsedContentBlock(
            block_index=index,
            block_type="tool_result",
            tool_use_id=_optional_str(block.get("tool_use_id")),
            tool_result_content=truncate_utf8(_tool_result_text(block.get("content"))),
            tool_result_is_error=is_error if isinstance(is_error, bool) else None,
        )
    return None


def extract_content_blocks(content: Any) -> list[ParsedContentBlock]:
    """Turn a raw ``message.content`` value into ordered content blocks."""
    if isinstance(content, str):
        if not content:
            return []
        return [ParsedContentBlock(block_index=0, block_type="text", text_content=content)]
    if not isinstance(content, list):
        return []

    blocks: list[ParsedContentBlock] = []
    for raw_block in content:
        mapped = _map_content_block(raw_block, len(blocks))
        if mapped is not None:
            blocks.append(mapped)
    return blocks


def map_to_parsed_message(raw: dict[str, Any], session_id: str) -> ParsedMessage:
    """Normalize one decoded transcript record."""
    message = raw.get("message")
    if not isinstance(message, dict):
        message = {}
    message_type = str(raw["type"])

    usage: dict[str, Any] = {}
    if message_type == "assistant" and isinstance(message.get("usage"), dict):
        usage = message["usage"]

    duration = raw.get("duration")
    if duration is None:
        duration = raw.get("durationMs")

    return ParsedMessage(
        id=str(raw["uuid"]),
        session_id=session_id,
        parent_uuid=_optional_str(raw.get("parentUuid")),
        type=message_type,
        role=_optional_str(message.get("role")),
        model=_optional_str(message.get("model")),
        request_id=_optional_str(raw.get("requestId")),
        input_tokens=_optional_int(usage.get("input_tokens")),
        output_tokens=_optional_int(usage.get("output_tokens")),
        cache_creation_tokens=_optional_int(usage.get("cache_creation_input_tokens")),
        cache_read_tokens=_optional_int(usage.get("cache_read_input_tokens")),
        stop_reason=_optional_str(message.get("stop_reason")),
        is_sidechain=bool(raw.get("isSidechain") or False),
        timestamp=_optional_str(raw.get("timestamp")) or _now_iso(),
        subtype=_optional_str(raw.get("subtype")),
        duration_ms=_optional_int(duration),
        content_blocks=extract_content_blocks(message.get("content")),
    )


def parse_jsonl_chunk(data: str, session_id: str) -> ParseResult:
    """Parse newly appended transcript text into normalized messages.

    ``bytes_read`` always equals the UTF-8 size of ``data``, however many
    lines turned into messages, so callers can advance their file offset by it.
    """
    result = ParseResult(bytes_read=utf8_byte_length(data))

    for line in data.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        try:
            raw = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if not isinstance(raw, dict):
            continue

        if result.slug is None and isinstance(raw.get("slug"), str) and raw["slug"]:
            result.slug = raw["slug"]
        if result.cwd is None and isinstance(raw.get("cwd"), str) and raw["cwd"]:
            result.cwd = raw["cwd"]

        message_type = raw.get("type")
        if not isinstance(message_type, str) or not message_type or not raw.get("uuid"):
            continue
        if message_type in SKIP_TYPES:
            continue

        try:
            message = map_to_parsed_message(raw, session_id)
        except ValueError as exc:
            logger.debug("dropping unmappable record | uuid={} error={}", raw.get("uuid"), exc)
            continue
        result.messages.append(message)

    return result


def deduplicate_messages(messages: list[ParsedMessage]) -> list[ParsedMessage]:
    """Keep only the last streamed snapshot of each assistant request.

    Assistant records sharing a ``request_id`` are successive snapshots of one
    model turn; the latest one is a superset of the earlier ones. All other
    messages pass through, and input order is preserved.
    """
    last_index: dict[str, int] = {}
    for index, message in enumerate(messages):
        if message.type == "assistant" and message.request_id:
            last_index[message.request_id] = index

    return [
        message
        for index, message in enumerate(messages)
        if not (message.type == "assistant" and message.request_id)
        or last_index[message.request_id] == index
    ]
