"""Wire models for parsed transcript messages and ingest payloads.

Field names are snake_case in Python and camelCase on the wire, matching
what the ingest API stores. Serialize with ``to_wire()`` so that unset
optional fields are omitted rather than sent as nulls.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# Records that carry nothing worth storing.
SKIP_TYPES = frozenset({"progress", "file-history-snapshot"})

BlockType = Literal["thinking", "text", "tool_use", "tool_result"]


class _WireModel(BaseModel):
    """Base model with camelCase aliases that also accepts field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-ready dict sent to the ingest API."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ParsedContentBlock(_WireModel):
    """One content item of a message, positioned by ``block_index``."""

    block_index: int = Field(ge=0)
    block_type: BlockType
    text_content: str | None = None
    tool_use_id: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_result_content: str | None = None
    tool_result_is_error: bool | None = None


class ParsedMessage(_WireModel):
    """Normalized transcript record ready for ingestion."""

    id: str
    session_id: str
    parent_uuid: str | None = None
    type: str
    role: str | None = None
    model: str | None = None
    request_id: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_creation_tokens: int | None = None
    cache_read_tokens: int | None = None
    stop_reason: str | None = None
    is_sidechain: bool = False
    timestamp: str
    subtype: str | None = None
    duration_ms: int | None = None
    content_blocks: list[ParsedContentBlock] = Field(default_factory=list)


class SessionMetadata(_WireModel):
    """Session identity derived from the transcript path."""

    session_id: str
    project_path: str
    project_slug: str
    file_path: str


class IngestPayload(_WireModel):
    """One batch shipped to the ingest endpoint."""

    session: SessionMetadata
    messages: list[ParsedMessage] = Field(default_factory=list)
    file_offset: int = Field(ge=0)
    summary: str | None = None
