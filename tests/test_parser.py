"""Tests for the message decoder."""

import json
from datetime import datetime, timezone

from chat_context.core import ParseOptions
from chat_context.parser import (
    conversation_only,
    decode_json,
    estimate_tokens,
    parse_bubble,
    parse_bubbles,
    parse_rich_text,
    parse_tool_data,
    role_for_type,
    to_datetime,
    to_epoch_ms,
)


def lexical(*paragraphs):
    return json.dumps({"root": {"children": [
        {"type": "paragraph", "children": [{"type": "text", "text": p}]} for p in paragraphs
    ]}})


class TestRichText:
    def test_single_paragraph(self):
        assert parse_rich_text(lexical("hello")) == "hello\n"

    def test_paragraphs_in_order(self):
        assert parse_rich_text(lexical("one", "two")) == "one\ntwo\n"

    def test_code_block(self):
        doc = {"root": {"children": [
            {"type": "code", "language": "python", "children": [
                {"type": "code-highlight", "text": "print("},
                {"type": "code-highlight", "text": "1)"},
            ]},
        ]}}
        assert parse_rich_text(json.dumps(doc)) == "\n```python\nprint(1)\n```\n"

    def test_code_block_without_language(self):
        doc = {"root": {"children": [{"type": "code", "children": [{"text": "x = 1"}]}]}}
        assert parse_rich_text(doc) == "\n```\nx = 1\n```\n"

    def test_inline_code(self):
        doc = {"root": {"children": [{"type": "paragraph", "children": [
            {"type": "text", "text": "run "},
            {"type": "code-highlight", "text": "make"},
        ]}]}}
        assert parse_rich_text(doc) == "run `make`\n"

    def test_empty_paragraph_adds_nothing(self):
        doc = {"root": {"children": [{"type": "paragraph", "children": []}]}}
        assert parse_rich_text(doc) == ""

    def test_invalid_input_is_empty(self):
        assert parse_rich_text("{not json") == ""
        assert parse_rich_text(json.dumps({"no_root": True})) == ""
        assert parse_rich_text(json.dumps([1, 2])) == ""
        assert parse_rich_text(None) == ""
        assert parse_rich_text(42) == ""

    def test_malformed_children_ignored(self):
        doc = {"root": {"children": [
            "stray",
            {"type": "paragraph", "children": "oops"},
            {"type": "paragraph", "children": [{"text": "ok"}, None]},
        ]}}
        assert parse_rich_text(doc) == "ok\n"

    def test_deeply_nested_document(self):
        node = {"text": "deep"}
        for _ in range(5000):
            node = {"type": "generic", "children": [node]}
        assert parse_rich_text({"root": node}) == "deep"


class TestToolData:
    def test_name_and_decoded_payloads(self):
        info = parse_tool_data({
            "name": "read_file",
            "params": json.dumps({"path": "a.py"}),
            "result": json.dumps({"contents": "x"}),
        })
        assert info.name == "read_file"
        assert info.params == {"path": "a.py"}
        assert info.result == {"contents": "x"}
        assert info.workspace_path is None

    def test_name_fallbacks(self):
        assert parse_tool_data({"tool": 7}).name == "tool_7"
        assert parse_tool_data({"params": "{}"}).name == "unknown_tool"

    def test_undecodable_payloads_are_dropped(self):
        info = parse_tool_data({"name": "x", "params": "{bad", "result": "also bad"})
        assert info.name == "x"
        assert info.params is None
        assert info.result is None

    def test_workspace_from_result(self):
        result = {"success": {"workspaceResults": {"/home/u/proj": {}}}}
        info = parse_tool_data({"name": "codebase_search", "result": json.dumps(result)})
        assert info.workspace_path == "/home/u/proj"

    def test_empty_or_missing(self):
        assert parse_tool_data(None) is None
        assert parse_tool_data({}) is None


class TestBubbles:
    def test_user_bubble_uses_rich_text(self):
        msg = parse_bubble({"type": 1, "bubbleId": "b1", "richText": lexical("hi there"), "text": "ignored"})
        assert msg.role == "user"
        assert msg.content == "hi there"
        assert msg.bubble_id == "b1"

    def test_user_bubble_falls_back_to_text(self):
        msg = parse_bubble({"type": 1, "richText": "{broken", "text": "plain"})
        assert msg.content == "plain"

    def test_assistant_bubble(self):
        msg = parse_bubble({"type": 2, "text": "  answer \n", "createdAt": 1736935200000})
        assert msg.role == "assistant"
        assert msg.content == "answer"
        assert msg.timestamp == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_other_type_is_tool(self):
        msg = parse_bubble({"type": 30})
        assert msg.role == "tool"
        assert msg.content == ""
        assert msg.tool_info is None

    def test_content_is_always_a_string(self):
        msg = parse_bubble({"type": 2, "text": None})
        assert msg.content == ""

    def test_exclude_tools(self):
        bubble = {"type": 2, "text": "x", "toolFormerData": {"name": "grep"}}
        assert parse_bubble(bubble).tool_info.name == "grep"
        assert parse_bubble(bubble, ParseOptions(exclude_tools=True)).tool_info is None

    def test_content_cap(self):
        messages = parse_bubbles(
            [{"type": 2, "text": "abcdef"}, {"type": 2, "text": "abc"}],
            ParseOptions(max_content_length=3),
        )
        assert [m.content for m in messages] == ["abc...", "abc"]

    def test_non_dict_bubbles_skipped(self):
        assert len(parse_bubbles([{"type": 2, "text": "a"}, "junk", None])) == 1


class TestHelpers:
    def test_role_for_type(self):
        assert role_for_type(1) == "user"
        assert role_for_type(2) == "assistant"
        assert role_for_type(None) == "tool"

    def test_decode_json(self):
        assert decode_json('{"a": 1}') == (True, {"a": 1})
        assert decode_json("nope").ok is False
        assert decode_json(None).ok is False

    def test_to_datetime(self):
        expected = datetime(2025, 1, 20, 10, 0, tzinfo=timezone.utc)
        assert to_datetime("2025-01-20T10:00:00.000Z") == expected
        assert to_datetime(int(expected.timestamp() * 1000)) == expected
        assert to_datetime("yesterday") is None
        assert to_datetime(True) is None

    def test_to_epoch_ms(self):
        assert to_epoch_ms("2025-01-15T10:00:00Z") == 1736935200000
        assert to_epoch_ms(None) is None

    def test_conversation_only(self):
        messages = parse_bubbles([{"type": 1, "text": "q"}, {"type": 5}, {"type": 2, "text": "a"}])
        assert [m.role for m in conversation_only(messages)] == ["user", "assistant"]

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
