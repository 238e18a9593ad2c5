"""Deduplication of streamed assistant snapshots."""

from __future__ import annotations

from csl.parser.jsonl import deduplicate_messages, parse_jsonl_chunk
from csl.parser.models import ParsedMessage
from tests.helpers import assistant_record, jsonl, user_record


def _msg(uuid: str, type_: str = "assistant", request_id: str | None = None) -> ParsedMessage:
    return ParsedMessage(
        id=uuid,
        session_id="sess-1",
        type=type_,
        request_id=request_id,
        timestamp="2026-03-01T10:00:00Z",
    )


def test_streamed_snapshots_collapse_to_final_one():
    data = jsonl(
        assistant_record("a1", "r1", [{"type": "thinking", "thinking": "hmm"}]),
        assistant_record(
            "a2",
            "r1",
            [
                {"type": "thinking", "thinking": "hmm"},
                {"type": "text", "text": "Done"},
                {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}},
            ],
            stop_reason="end_turn",
        ),
    )
    messages = deduplicate_messages(parse_jsonl_chunk(data, "sess-1").messages)

    assert len(messages) == 1
    assert messages[0].id == "a2"
    assert messages[0].stop_reason == "end_turn"
    assert len(messages[0].content_blocks) == 3


def test_last_snapshot_wins_for_each_request():
    messages = [
        _msg("a1", request_id="r1"),
        _msg("a2", request_id="r2"),
        _msg("a3", request_id="r1"),
        _msg("a4", request_id="r1"),
        _msg("a5", request_id="r2"),
    ]
    out = deduplicate_messages(messages)

    assert [m.id for m in out] == ["a4", "a5"]


def test_relative_order_of_survivors_is_preserved():
    messages = [
        _msg("u1", type_="user"),
        _msg("a1", request_id="r1"),
        _msg("u2", type_="user"),
        _msg("a2", request_id="r1"),
        _msg("s1", type_="system"),
        _msg("a3"),
    ]
    out = deduplicate_messages(messages)

    assert [m.id for m in out] == ["u1", "u2", "a2", "s1", "a3"]


def test_non_assistant_messages_with_request_id_pass_through():
    messages = [_msg("u1", type_="user", request_id="r1"), _msg("u2", type_="user", request_id="r1")]

    assert [m.id for m in deduplicate_messages(messages)] == ["u1", "u2"]


def test_assistant_without_request_id_is_never_merged():
    messages = [_msg("a1"), _msg("a2")]

    assert [m.id for m in deduplicate_messages(messages)] == ["a1", "a2"]


def test_empty_input():
    assert deduplicate_messages([]) == []


def test_parse_then_dedupe_keeps_user_turns():
    data = jsonl(
        user_record("u1", "run ls"),
        assistant_record("a1", "r1", [{"type": "text", "text": "Run"}]),
        assistant_record("a2", "r1", [{"type": "text", "text": "Running"}], stop_reason="end_turn"),
    )
    out = deduplicate_messages(parse_jsonl_chunk(data, "sess-1").messages)

    assert [m.id for m in out] == ["u1", "a2"]
