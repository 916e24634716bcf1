#!/usr/bin/env python3
"""
Planforge Event Log Parsers

Decodes an agent runtime's append-only JSONL transcript into typed events.

Each line is one independent record. A line that is not valid JSON (or not a
JSON object) becomes a SkippedLine result instead of an error, so one corrupt
line never hides the rest of the stream. Records are only consumed once their
terminating newline is on disk, which makes it safe to re-read a file that is
still being appended to, either from the start or from a saved byte offset.
"""
from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Union

logger = logging.getLogger("planforge")

COMPACTION_MARKER = "compact_boundary"


@dataclasses.dataclass(frozen=True)
class RecordMeta:
    """Fields shared by every event decoded from the same record."""
    index: int
    offset: int
    timestamp: str = ""
    is_sidechain: bool = False
    agent_id: Optional[str] = None
    role: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class UsageEvent:
    """Token accounting for one turn."""
    kind: ClassVar[str] = "usage"
    meta: RecordMeta
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def context_tokens(self) -> int:
        """Context window occupancy for this turn (new + cached input)."""
        return self.input_tokens + self.cache_creation_tokens + self.cache_read_tokens


@dataclasses.dataclass(frozen=True)
class ToolInvocationEvent:
    kind: ClassVar[str] = "tool_invocation"
    meta: RecordMeta
    name: str
    input: Dict[str, Any] = dataclasses.field(default_factory=dict)
    tool_use_id: Optional[str] = None

    @property
    def is_sidechain(self) -> bool:
        return self.meta.is_sidechain


@dataclasses.dataclass(frozen=True)
class TextEvent:
    kind: ClassVar[str] = "text"
    meta: RecordMeta
    text: str


@dataclasses.dataclass(frozen=True)
class ControlEvent:
    """A runtime marker such as a context compaction boundary."""
    kind: ClassVar[str] = "control"
    meta: RecordMeta
    marker: str


@dataclasses.dataclass(frozen=True)
class UnknownEvent:
    """A well-formed record whose shape is not recognized."""
    kind: ClassVar[str] = "unknown"
    meta: RecordMeta
    record_type: str = ""


Event = Union[UsageEvent, ToolInvocationEvent, TextEvent, ControlEvent, UnknownEvent]


@dataclasses.dataclass(frozen=True)
class ParsedRecord:
    """One decoded line and the events it contains (possibly none)."""
    meta: RecordMeta
    end_offset: int
    events: List[Event]


@dataclasses.dataclass(frozen=True)
class SkippedLine:
    """A line that could not be decoded. Counted, never raised."""
    index: int
    offset: int
    end_offset: int
    reason: str


ParseResult = Union[ParsedRecord, SkippedLine]


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def parse_usage(meta: RecordMeta, usage: Dict[str, Any]) -> UsageEvent:
    return UsageEvent(
        meta=meta,
        input_tokens=_as_int(usage.get("input_tokens")),
        output_tokens=_as_int(usage.get("output_tokens")),
        cache_creation_tokens=_as_int(usage.get("cache_creation_input_tokens")),
        cache_read_tokens=_as_int(usage.get("cache_read_input_tokens")),
    )


def parse_content(meta: RecordMeta, content: Any) -> List[Event]:
    """Decode message content (plain string or list of typed blocks)."""
    if isinstance(content, str):
        return [TextEvent(meta=meta, text=content)] if content else []
    if not isinstance(content, list):
        return []

    events: List[Event] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str) and text:
                events.append(TextEvent(meta=meta, text=text))
        elif block_type == "tool_use":
            name = block.get("name")
            if not isinstance(name, str) or not name:
                continue
            tool_input = block.get("input")
            events.append(ToolInvocationEvent(
                meta=meta,
                name=name,
                input=tool_input if isinstance(tool_input, dict) else {},
                tool_use_id=block.get("id"),
            ))
    return events


def record_meta(obj: Dict[str, Any], index: int = 0, offset: int = 0) -> RecordMeta:
    message = obj.get("message")
    role = message.get("role") if isinstance(message, dict) else None
    agent_id = obj.get("agentId")
    timestamp = obj.get("timestamp")
    return RecordMeta(
        index=index,
        offset=offset,
        timestamp=timestamp if isinstance(timestamp, str) else "",
        is_sidechain=bool(obj.get("isSidechain")),
        agent_id=str(agent_id) if agent_id else None,
        role=role if isinstance(role, str) else None,
    )


def parse_record(obj: Dict[str, Any], meta: RecordMeta) -> List[Event]:
    """Map one decoded transcript record onto typed events.

    An assistant record can carry usage, narration and tool calls at once,
    so one record may produce several events. A record that is neither a
    system marker nor a message becomes a single UnknownEvent.
    """
    message = obj.get("message")
    role = meta.role

    record_type = obj.get("type")
    if record_type == "system" and isinstance(obj.get("subtype"), str):
        return [ControlEvent(meta=meta, marker=obj["subtype"])]

    if not isinstance(message, dict):
        return [UnknownEvent(meta=meta, record_type=str(record_type or ""))]

    events = parse_content(meta, message.get("content"))
    usage = message.get("usage")
    if role == "assistant" and isinstance(usage, dict):
        events.append(parse_usage(meta, usage))
    return events


def parse_line(raw: bytes, offset: int = 0, index: int = 0) -> ParseResult:
    """Decode a single line. Never raises for bad input."""
    end_offset = offset + len(raw)
    try:
        obj = json.loads(raw)
    except ValueError as e:
        logger.debug(f"Skipping malformed record {index} at byte {offset}: {e}")
        return SkippedLine(index=index, offset=offset, end_offset=end_offset, reason="malformed")
    if not isinstance(obj, dict):
        return SkippedLine(index=index, offset=offset, end_offset=end_offset, reason="not_object")

    meta = record_meta(obj, index=index, offset=offset)
    events = parse_record(obj, meta)
    return ParsedRecord(meta=meta, end_offset=end_offset, events=events)


def iter_records(path: Path, offset: int = 0, start_index: int = 0) -> Iterator[ParseResult]:
    """Lazily parse complete lines of `path` starting at byte `offset`.

    Blank lines are ignored. A trailing line without a newline is still
    being written and is left for a later call.
    """
    index = start_index
    with path.open("rb") as f:
        f.seek(offset)
        pos = offset
        while True:
            raw = f.readline()
            if not raw or not raw.endswith(b"\n"):
                return
            line_offset = pos
            pos += len(raw)
            if not raw.strip():
                continue
            yield parse_line(raw, offset=line_offset, index=index)
            index += 1


@dataclasses.dataclass
class ReadBatch:
    results: List[ParseResult]
    reset: bool = False


class LogCursor:
    """Incremental reader that resumes from the last consumed byte."""

    def __init__(self, path: Path):
        self.path = path
        self.offset = 0
        self.index = 0

    def read_new(self) -> ReadBatch:
        """Parse records appended since the previous call.

        If the file shrank (rewritten or replaced), the cursor rewinds and
        `reset` is set so callers can discard state built from the old file.
        """
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return ReadBatch(results=[])

        reset = False
        if size < self.offset:
            logger.debug(f"{self.path} shrank ({size} < {self.offset}), re-reading")
            self.offset = 0
            self.index = 0
            reset = True

        results = list(iter_records(self.path, self.offset, self.index))
        if results:
            self.offset = results[-1].end_offset
            self.index += len(results)
        return ReadBatch(results=results, reset=reset)


def record_text(result: ParseResult) -> str:
    """All text content of a record joined with spaces (for marker matching)."""
    if isinstance(result, SkippedLine):
        return ""
    return " ".join(e.text for e in result.events if isinstance(e, TextEvent))
