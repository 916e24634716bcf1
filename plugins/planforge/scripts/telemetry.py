#!/usr/bin/env python3
"""
Planforge Session Telemetry

Folds parsed transcript records into running per-session aggregates: token
totals, turns, compactions, tool calls, sub-agent activity, and the last
human-meaningful action. Also attributes transcripts to variants and picks
one transcript per variant when several candidates exist.
"""
from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import os
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from models import MERGE_VARIANT, MERGE_PROMPT_NAME, MERGED_PLAN_NAME, plan_file_name
from parsers import (
    COMPACTION_MARKER,
    ControlEvent,
    LogCursor,
    ParseResult,
    ParsedRecord,
    SkippedLine,
    TextEvent,
    ToolInvocationEvent,
    UnknownEvent,
    UsageEvent,
    record_text,
)
from utils import file_size, parse_iso_timestamp, truncate

logger = logging.getLogger("planforge")

DEFAULT_ACTIVE_WINDOW_SECONDS = 120.0
DEFAULT_ATTRIBUTION_PREFIX = 16
DEFAULT_ACTION_WIDTH = 120
MIN_NARRATION_CHARS = 10
NO_ACTION = "?"

# Phrases that only appear in merge tasks
MERGE_MARKERS = ["merged plan", "comparison table"]


class Liveness(Enum):
    """Best-effort freshness of a sub-agent, not an authoritative state."""
    LIKELY_ACTIVE = "likely_active"
    LIKELY_IDLE = "likely_idle"
    UNKNOWN = "unknown"


@dataclasses.dataclass(frozen=True)
class SubagentActivity:
    agent_id: str
    last_seen: str
    liveness: Liveness


@dataclasses.dataclass(frozen=True)
class TelemetrySnapshot:
    """Aggregates for one session at one point in time."""
    turns: int = 0
    compactions: int = 0
    tool_calls: int = 0
    total_input: int = 0
    total_output: int = 0
    total_cache_create: int = 0
    total_cache_read: int = 0
    context_size: int = 0
    last_action: str = NO_ACTION
    subagents: Tuple[SubagentActivity, ...] = ()
    records: int = 0
    skipped_lines: int = 0
    unknown_records: int = 0
    started: bool = True

    @property
    def total_tokens(self) -> int:
        return self.total_input + self.total_output + self.total_cache_create + self.total_cache_read

    @property
    def agents_total(self) -> int:
        return len(self.subagents)

    @property
    def agents_active(self) -> int:
        return sum(1 for a in self.subagents if a.liveness is Liveness.LIKELY_ACTIVE)

    @property
    def agents_unknown(self) -> int:
        return sum(1 for a in self.subagents if a.liveness is Liveness.UNKNOWN)


# =============================================================================
# Last-action formatting
# =============================================================================

def _basename(value: Any) -> str:
    return os.path.basename(str(value or ""))


def format_tool_action(name: str, tool_input: Dict[str, Any], width: int = DEFAULT_ACTION_WIDTH) -> str:
    """Short synopsis of a tool call, keyed on the tool's salient input."""
    inp = tool_input or {}
    if name == "Task":
        action = f"Task → {inp.get('description', '')}"
    elif name == "TaskOutput":
        action = f"TaskOutput(waiting {inp.get('task_id', '?')})"
    elif name in ("Read", "Write", "Edit", "MultiEdit", "NotebookEdit"):
        action = f"{name}({_basename(inp.get('file_path') or inp.get('notebook_path'))})"
    elif name == "Glob":
        action = f"Glob({inp.get('pattern', '?')})"
    elif name == "Grep":
        action = f"Grep({str(inp.get('pattern', '?'))[:30]})"
    elif name == "Bash":
        action = f"Bash({str(inp.get('command', ''))[:40]})"
    elif name == "WebSearch":
        action = f"WebSearch({str(inp.get('query', ''))[:35]})"
    elif name == "WebFetch":
        action = f"WebFetch({str(inp.get('url', ''))[-35:]})"
    elif "Scholar" in name:
        action = f"Scholar({str(inp.get('query', ''))[:30]})"
    elif "context7" in name:
        action = f"Context7({str(inp.get('query', inp.get('libraryName', '')))[:25]})"
    else:
        action = name
    return truncate(action, width)


def format_narration(text: str, width: int = DEFAULT_ACTION_WIDTH) -> Optional[str]:
    """Narration synopsis, or None for trivial utterances."""
    stripped = text.strip()
    if len(stripped) <= MIN_NARRATION_CHARS:
        return None
    return truncate(f"💬 {stripped.replace(chr(10), ' ')}", width)


def record_action(record: ParsedRecord, width: int = DEFAULT_ACTION_WIDTH) -> Optional[str]:
    """First meaningful action in a parent (non-sidechain) assistant record."""
    if record.meta.is_sidechain or record.meta.role != "assistant":
        return None
    for event in record.events:
        if isinstance(event, ToolInvocationEvent):
            return format_tool_action(event.name, event.input, width)
        if isinstance(event, TextEvent):
            narration = format_narration(event.text, width)
            if narration:
                return narration
    return None


# =============================================================================
# Aggregation
# =============================================================================

class SessionTelemetry:
    """Running aggregates for one transcript, fed incrementally."""

    def __init__(self, action_width: int = DEFAULT_ACTION_WIDTH):
        self.action_width = action_width
        self.reset()

    def reset(self) -> None:
        self.turns = 0
        self.compactions = 0
        self.tool_calls = 0
        self.total_input = 0
        self.total_output = 0
        self.total_cache_create = 0
        self.total_cache_read = 0
        self.context_size = 0
        self.last_action = NO_ACTION
        self.records = 0
        self.skipped_lines = 0
        self.unknown_records = 0
        # agent id -> (raw timestamp, parsed timestamp)
        self._agent_last_seen: Dict[str, Tuple[str, Optional[dt.datetime]]] = {}

    def feed(self, results: Iterable[ParseResult]) -> None:
        for result in results:
            self.records += 1
            if isinstance(result, SkippedLine):
                self.skipped_lines += 1
                continue
            self._feed_record(result)

    def _feed_record(self, record: ParsedRecord) -> None:
        meta = record.meta
        for event in record.events:
            if isinstance(event, UsageEvent):
                self.turns += 1
                self.total_input += event.input_tokens
                self.total_output += event.output_tokens
                self.total_cache_create += event.cache_creation_tokens
                self.total_cache_read += event.cache_read_tokens
                self.context_size = event.context_tokens
            elif isinstance(event, ControlEvent):
                if event.marker == COMPACTION_MARKER:
                    self.compactions += 1
            elif isinstance(event, ToolInvocationEvent):
                if not event.is_sidechain:
                    self.tool_calls += 1
            elif isinstance(event, UnknownEvent):
                self.unknown_records += 1

        if meta.is_sidechain and meta.agent_id:
            self._see_agent(meta.agent_id, meta.timestamp)

        action = record_action(record, self.action_width)
        if action:
            self.last_action = action

    def _see_agent(self, agent_id: str, timestamp: str) -> None:
        parsed = parse_iso_timestamp(timestamp)
        current = self._agent_last_seen.get(agent_id)
        if current is None:
            self._agent_last_seen[agent_id] = (timestamp, parsed)
            return
        _, current_parsed = current
        if parsed is not None and (current_parsed is None or parsed > current_parsed):
            self._agent_last_seen[agent_id] = (timestamp, parsed)

    def snapshot(
        self,
        now: Optional[dt.datetime] = None,
        active_window: float = DEFAULT_ACTIVE_WINDOW_SECONDS,
        started: bool = True,
    ) -> TelemetrySnapshot:
        now = now or dt.datetime.now(dt.timezone.utc)
        subagents = []
        for agent_id in sorted(self._agent_last_seen):
            raw, parsed = self._agent_last_seen[agent_id]
            subagents.append(SubagentActivity(
                agent_id=agent_id,
                last_seen=raw,
                liveness=classify_liveness(parsed, now, active_window),
            ))
        return TelemetrySnapshot(
            turns=self.turns,
            compactions=self.compactions,
            tool_calls=self.tool_calls,
            total_input=self.total_input,
            total_output=self.total_output,
            total_cache_create=self.total_cache_create,
            total_cache_read=self.total_cache_read,
            context_size=self.context_size,
            last_action=self.last_action,
            subagents=tuple(subagents),
            records=self.records,
            skipped_lines=self.skipped_lines,
            unknown_records=self.unknown_records,
            started=started,
        )


def classify_liveness(
    last_seen: Optional[dt.datetime],
    now: dt.datetime,
    active_window: float = DEFAULT_ACTIVE_WINDOW_SECONDS,
) -> Liveness:
    if last_seen is None:
        return Liveness.UNKNOWN
    age = (now - last_seen).total_seconds()
    return Liveness.LIKELY_ACTIVE if age < active_window else Liveness.LIKELY_IDLE


def aggregate(
    results: Iterable[ParseResult],
    now: Optional[dt.datetime] = None,
    active_window: float = DEFAULT_ACTIVE_WINDOW_SECONDS,
) -> TelemetrySnapshot:
    """One-shot aggregation over a complete result stream."""
    telemetry = SessionTelemetry()
    telemetry.feed(results)
    return telemetry.snapshot(now=now, active_window=active_window)


# =============================================================================
# Variant attribution
# =============================================================================

class VariantMatcher:
    """Ordered (marker, variant) pairs; the first marker found wins."""

    def __init__(self, pairs: Sequence[Tuple[str, str]]):
        self.pairs = [(m, v) for m, v in pairs if m]

    @classmethod
    def for_variants(cls, variants: Iterable[Any]) -> "VariantMatcher":
        """Build matchers for configured variants plus the merge session.

        Guidance markers are checked first, then merge phrases, then output
        file names (merged-plan.md before plan-<variant>.md).
        """
        variants = list(variants)
        pairs: List[Tuple[str, str]] = []
        for v in variants:
            if getattr(v, "marker", None):
                pairs.append((v.marker, v.name))
        pairs.extend((m, MERGE_VARIANT) for m in MERGE_MARKERS)
        pairs.append((MERGED_PLAN_NAME, MERGE_VARIANT))
        pairs.append((MERGE_PROMPT_NAME, MERGE_VARIANT))
        for v in variants:
            pairs.append((plan_file_name(v.name), v.name))
        return cls(pairs)

    def match_text(self, text: str) -> Optional[str]:
        if not text:
            return None
        for marker, variant in self.pairs:
            if marker in text:
                return variant
        return None

    def detect_variant(
        self, results: Iterable[ParseResult], prefix: int = DEFAULT_ATTRIBUTION_PREFIX
    ) -> Optional[str]:
        """Attribute a stream by scanning only its first `prefix` records."""
        for i, result in enumerate(results):
            if i >= prefix:
                break
            variant = self.match_text(record_text(result))
            if variant:
                return variant
        return None


@dataclasses.dataclass(frozen=True)
class TranscriptFile:
    path: Path
    size: int
    mtime: float

    @property
    def session_id(self) -> str:
        return self.path.stem


def select_latest(candidates: Iterable[Tuple[str, TranscriptFile]]) -> Dict[str, TranscriptFile]:
    """Keep one transcript per variant: newest mtime, ties broken by path."""
    chosen: Dict[str, TranscriptFile] = {}
    for variant, tf in candidates:
        current = chosen.get(variant)
        if current is None or (tf.mtime, str(tf.path)) > (current.mtime, str(current.path)):
            chosen[variant] = tf
    return chosen


def discover_transcripts(
    projects_dir: Path,
    now: Optional[float] = None,
    min_bytes: int = 500,
    max_dir_age: float = 7200.0,
    max_file_age: float = 600.0,
) -> List[TranscriptFile]:
    """Find recently active transcripts under the runtime's projects dir."""
    now = time.time() if now is None else now
    found: List[TranscriptFile] = []
    if not projects_dir.is_dir():
        return found

    for proj_dir in projects_dir.iterdir():
        try:
            if not proj_dir.is_dir() or now - proj_dir.stat().st_mtime >= max_dir_age:
                continue
            for path in proj_dir.glob("*.jsonl"):
                st = path.stat()
                if st.st_size < min_bytes or now - st.st_mtime > max_file_age:
                    continue
                found.append(TranscriptFile(path=path, size=st.st_size, mtime=st.st_mtime))
        except FileNotFoundError:
            # Removed between listing and stat
            continue
    found.sort(key=lambda tf: tf.mtime, reverse=True)
    return found


# =============================================================================
# Incremental tracking across polls
# =============================================================================

class TranscriptTracker:
    """Keeps a cursor and running aggregates for one transcript file."""

    def __init__(
        self,
        path: Path,
        matcher: VariantMatcher,
        attribution_prefix: int = DEFAULT_ATTRIBUTION_PREFIX,
        min_bytes: int = 500,
    ):
        self.path = path
        self.matcher = matcher
        self.attribution_prefix = attribution_prefix
        self.min_bytes = min_bytes
        self.cursor = LogCursor(path)
        self.telemetry = SessionTelemetry()
        self.variant: Optional[str] = None
        self._prefix: List[ParseResult] = []

    def poll(
        self,
        now: Optional[dt.datetime] = None,
        active_window: float = DEFAULT_ACTIVE_WINDOW_SECONDS,
    ) -> TelemetrySnapshot:
        """Consume newly appended records and return the current snapshot."""
        size = file_size(self.path) or 0
        if size < self.min_bytes:
            return self.telemetry.snapshot(now=now, active_window=active_window, started=False)

        batch = self.cursor.read_new()
        if batch.reset:
            self.telemetry.reset()
            self.variant = None
            self._prefix = []

        if self.variant is None and len(self._prefix) < self.attribution_prefix:
            self._prefix.extend(batch.results[: self.attribution_prefix - len(self._prefix)])
            self.variant = self.matcher.detect_variant(self._prefix, self.attribution_prefix)

        self.telemetry.feed(batch.results)
        return self.telemetry.snapshot(now=now, active_window=active_window)


@dataclasses.dataclass(frozen=True)
class TranscriptStatus:
    file: TranscriptFile
    variant: str
    snapshot: TelemetrySnapshot


class TranscriptIndex:
    """All trackers seen so far, keyed by path; reports one per variant."""

    def __init__(
        self,
        matcher: VariantMatcher,
        attribution_prefix: int = DEFAULT_ATTRIBUTION_PREFIX,
        min_bytes: int = 500,
        active_window: float = DEFAULT_ACTIVE_WINDOW_SECONDS,
    ):
        self.matcher = matcher
        self.attribution_prefix = attribution_prefix
        self.min_bytes = min_bytes
        self.active_window = active_window
        self.trackers: Dict[Path, TranscriptTracker] = {}

    def update(
        self, files: Iterable[TranscriptFile], now: Optional[dt.datetime] = None
    ) -> Dict[str, TranscriptStatus]:
        files = list(files)
        snapshots: Dict[Path, TelemetrySnapshot] = {}
        candidates: List[Tuple[str, TranscriptFile]] = []
        for tf in files:
            tracker = self.trackers.get(tf.path)
            if tracker is None:
                tracker = TranscriptTracker(
                    tf.path, self.matcher, self.attribution_prefix, self.min_bytes
                )
                self.trackers[tf.path] = tracker
            try:
                snapshots[tf.path] = tracker.poll(now=now, active_window=self.active_window)
            except FileNotFoundError:
                continue
            if tracker.variant:
                candidates.append((tracker.variant, tf))
            else:
                logger.debug(f"Transcript {tf.path.name} not attributed to any variant")

        # Forget files that disappeared from discovery
        live = {tf.path for tf in files}
        for path in list(self.trackers):
            if path not in live:
                del self.trackers[path]

        return {
            variant: TranscriptStatus(file=tf, variant=variant, snapshot=snapshots[tf.path])
            for variant, tf in select_latest(candidates).items()
        }
