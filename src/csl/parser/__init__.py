"""Transcript parsing: normalized models, chunk parser, and deduplication."""

from csl.parser.jsonl import (
    TOOL_RESULT_MAX_BYTES,
    ParseResult,
    deduplicate_messages,
    parse_jsonl_chunk,
)
from csl.parser.models import (
    SKIP_TYPES,
    IngestPayload,
    ParsedContentBlock,
    ParsedMessage,
    SessionMetadata,
)

__all__ = [
    "SKIP_TYPES",
    "TOOL_RESULT_MAX_BYTES",
    "IngestPayload",
    "ParseResult",
    "ParsedContentBlock",
    "ParsedMessage",
    "SessionMetadata",
    "deduplicate_messages",
    "parse_jsonl_chunk",
]
