"""
Unit tests for transcript parsing.

Covers tolerant decoding of individual records, incremental reads of a
growing file, and the cursor's behavior when a file is rewritten.
"""
import json

from conftest import append_jsonl, assistant_record, tool_use, user_record, write_jsonl
from parsers import (
    ControlEvent,
    LogCursor,
    ParsedRecord,
    SkippedLine,
    TextEvent,
    ToolInvocationEvent,
    UnknownEvent,
    UsageEvent,
    iter_records,
    parse_line,
    record_text,
)


class TestParseLine:
    """Decoding one line into typed events"""

    def test_malformed_json_is_skipped(self):
        result = parse_line(b"{not json\n", offset=10, index=3)
        assert isinstance(result, SkippedLine)
        assert result.reason == "malformed"
        assert result.offset == 10
        assert result.end_offset == 20
        assert result.index == 3

    def test_non_object_is_skipped(self):
        result = parse_line(b"[1, 2, 3]\n")
        assert isinstance(result, SkippedLine)
        assert result.reason == "not_object"

    def test_assistant_record_yields_content_and_usage(self):
        record = assistant_record(
            input_tokens=100,
            output_tokens=20,
            cache_creation=5,
            cache_read=50,
            content=[
                {"type": "text", "text": "Looking at the layout"},
                tool_use("Read", file_path="/src/app/main.py"),
            ],
        )
        result = parse_line(json.dumps(record).encode() + b"\n")

        assert isinstance(result, ParsedRecord)
        kinds = [type(e) for e in result.events]
        assert kinds == [TextEvent, ToolInvocationEvent, UsageEvent]
        usage = result.events[-1]
        assert usage.input_tokens == 100
        assert usage.cache_read_tokens == 50
        assert usage.context_tokens == 155
        assert result.events[1].input == {"file_path": "/src/app/main.py"}

    def test_user_record_has_no_usage(self):
        record = user_record("Write the plan")
        record["message"]["usage"] = {"input_tokens": 999}
        result = parse_line(json.dumps(record).encode())
        assert [type(e) for e in result.events] == [TextEvent]

    def test_compaction_marker(self):
        line = json.dumps({"type": "system", "subtype": "compact_boundary"}).encode()
        result = parse_line(line)
        assert len(result.events) == 1
        assert isinstance(result.events[0], ControlEvent)
        assert result.events[0].marker == "compact_boundary"

    def test_unrecognized_shape_is_unknown_event(self):
        result = parse_line(json.dumps({"type": "summary", "summary": "x"}).encode())
        assert isinstance(result, ParsedRecord)
        assert isinstance(result.events[0], UnknownEvent)
        assert result.events[0].record_type == "summary"

    def test_sidechain_metadata_kept_without_events(self):
        record = {
            "type": "user",
            "isSidechain": True,
            "agentId": "a1b2",
            "timestamp": "2026-01-01T00:00:05Z",
            "message": {"role": "user", "content": [{"type": "tool_result", "content": "ok"}]},
        }
        result = parse_line(json.dumps(record).encode())
        assert result.events == []
        assert result.meta.is_sidechain
        assert result.meta.agent_id == "a1b2"
        assert result.meta.timestamp == "2026-01-01T00:00:05Z"

    def test_non_numeric_usage_counts_as_zero(self):
        record = assistant_record()
        record["message"]["usage"]["input_tokens"] = "lots"
        result = parse_line(json.dumps(record).encode())
        assert result.events[-1].input_tokens == 0

    def test_tool_use_without_name_ignored(self):
        record = assistant_record(content=[{"type": "tool_use", "input": {}}])
        result = parse_line(json.dumps(record).encode())
        assert [type(e) for e in result.events] == [UsageEvent]


class TestIterRecords:
    """Streaming complete lines from a file"""

    def test_skips_malformed_and_continues(self, tmp_path):
        path = write_jsonl(tmp_path / "t.jsonl", [
            assistant_record(input_tokens=1),
            "garbage",
            assistant_record(input_tokens=2),
        ])
        results = list(iter_records(path))
        assert len(results) == 3
        assert isinstance(results[1], SkippedLine)
        assert [r.index for r in results] == [0, 1, 2]

    def test_partial_trailing_line_left_unread(self, tmp_path):
        path = tmp_path / "t.jsonl"
        write_jsonl(path, [user_record("first")])
        with path.open("a") as f:
            f.write('{"type": "user", "message": {"ro')

        results = list(iter_records(path))
        assert len(results) == 1
        assert results[0].end_offset == len(json.dumps(user_record("first"))) + 1

    def test_blank_lines_ignored(self, tmp_path):
        path = tmp_path / "t.jsonl"
        path.write_text("\n" + json.dumps(user_record("a")) + "\n\n" + json.dumps(user_record("b")) + "\n")
        results = list(iter_records(path))
        assert [record_text(r) for r in results] == ["a", "b"]

    def test_offsets_are_contiguous_and_resumable(self, tmp_path):
        path = write_jsonl(tmp_path / "t.jsonl", [user_record(f"line {i}") for i in range(5)])
        results = list(iter_records(path))
        for prev, cur in zip(results, results[1:]):
            assert cur.meta.offset == prev.end_offset

        tail = list(iter_records(path, offset=results[2].end_offset, start_index=3))
        assert [record_text(r) for r in tail] == ["line 3", "line 4"]
        assert [r.index for r in tail] == [3, 4]


class TestLogCursor:
    """Incremental reads of a growing transcript"""

    def test_reads_only_new_records(self, tmp_path):
        path = write_jsonl(tmp_path / "t.jsonl", [user_record("one"), user_record("two")])
        cursor = LogCursor(path)

        first = cursor.read_new()
        assert len(first.results) == 2
        assert not first.reset

        assert cursor.read_new().results == []

        append_jsonl(path, [user_record("three")])
        third = cursor.read_new()
        assert [record_text(r) for r in third.results] == ["three"]
        assert third.results[0].index == 2

    def test_partial_line_completed_later(self, tmp_path):
        path = write_jsonl(tmp_path / "t.jsonl", [user_record("one")])
        cursor = LogCursor(path)
        cursor.read_new()

        line = json.dumps(user_record("two"))
        with path.open("a") as f:
            f.write(line[:10])
        assert cursor.read_new().results == []

        with path.open("a") as f:
            f.write(line[10:] + "\n")
        assert [record_text(r) for r in cursor.read_new().results] == ["two"]

    def test_shrunk_file_resets(self, tmp_path):
        path = write_jsonl(tmp_path / "t.jsonl", [user_record("old " * 20) for _ in range(3)])
        cursor = LogCursor(path)
        cursor.read_new()

        write_jsonl(path, [user_record("new")])
        batch = cursor.read_new()
        assert batch.reset
        assert [record_text(r) for r in batch.results] == ["new"]
        assert cursor.index == 1

    def test_missing_file_yields_nothing(self, tmp_path):
        cursor = LogCursor(tmp_path / "gone.jsonl")
        batch = cursor.read_new()
        assert batch.results == []
        assert not batch.reset
