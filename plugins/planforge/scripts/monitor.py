#!/usr/bin/env python3
"""
Planforge Session Monitor

Shows running agent sessions with live telemetry read from their transcripts,
plus the state of the output files in the most recent run directory.

Usage:
    planforge-monitor              # one-shot table
    planforge-monitor --watch      # refresh every 15s
    planforge-monitor --watch 5    # refresh every 5s

Exit codes: 0 sessions shown, 2 nothing running.
"""
from __future__ import annotations

import argparse
import dataclasses
import datetime as dt
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import psutil
from rich.console import Console
from rich.table import Table
from rich.text import Text

from config import (
    DEFAULT_ARTIFACT_MIN_BYTES,
    MonitorSettings,
    find_config,
    load_project_config,
    resolve_plans_dir,
)
from models import MERGE_VARIANT, MERGED_PLAN_NAME, PLAN_PREFIX, RUN_SUMMARY_NAME
from telemetry import (
    TranscriptIndex,
    TranscriptStatus,
    VariantMatcher,
    discover_transcripts,
)
from utils import configure_logging, human_size, human_tokens, load_json, save_json_atomic

logger = logging.getLogger("planforge")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NO_SESSIONS = 2

UNKNOWN_VARIANT = "unknown"
SESSION_ID_WIDTH = 8

VARIANT_STYLES = ["cyan", "magenta", "blue", "green", "yellow"]

ACTIVITY_NEW = "new"
ACTIVITY_GROWING = "growing"
ACTIVITY_IDLE = "idle"
ACTIVITY_UNKNOWN = "unknown"


@dataclasses.dataclass(frozen=True)
class RunningSession:
    pid: int
    variant: str
    cpu_seconds: float


# =============================================================================
# Process discovery
# =============================================================================

def find_running_sessions(
    signature: str,
    matcher: VariantMatcher,
    processes: Optional[Iterable[Any]] = None,
) -> List[RunningSession]:
    """Running agent sessions from the process table.

    A process qualifies when its full command line contains `signature`.
    `timeout` wrappers are skipped so each session is listed once.
    """
    if processes is None:
        processes = psutil.process_iter(["pid", "cmdline", "cpu_times"])

    sessions = []
    for proc in processes:
        try:
            info = proc.info
            argv = info.get("cmdline") or []
            if not argv:
                continue
            args = " ".join(argv)
            if signature not in args:
                continue
            if os.path.basename(argv[0]) == "timeout":
                continue
            cpu = info.get("cpu_times")
            cpu_seconds = (cpu.user + cpu.system) if cpu is not None else 0.0
            sessions.append(RunningSession(
                pid=int(info["pid"]),
                variant=matcher.match_text(args) or UNKNOWN_VARIANT,
                cpu_seconds=cpu_seconds,
            ))
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    sessions.sort(key=lambda s: s.pid)
    return sessions


# =============================================================================
# Activity between refreshes
# =============================================================================

def classify_activity(size: int, prev: Optional[int]) -> Tuple[str, int]:
    """Compare a transcript size with the previous refresh.

    Returns (activity, growth in bytes).
    """
    if not prev:
        return ACTIVITY_NEW, 0
    if size > prev:
        return ACTIVITY_GROWING, size - prev
    if size == prev and size > 0:
        return ACTIVITY_IDLE, 0
    return ACTIVITY_UNKNOWN, 0


def format_activity(activity: str, delta: int) -> Text:
    if activity == ACTIVITY_NEW:
        return Text("● new", style="cyan")
    if activity == ACTIVITY_GROWING:
        return Text(f"▲ +{human_size(delta)}", style="green")
    if activity == ACTIVITY_IDLE:
        return Text("○ idle", style="yellow")
    return Text("? n/a", style="dim")


def load_size_snapshot(path: Path) -> Dict[str, int]:
    data = load_json(path, {})
    if not isinstance(data, dict):
        return {}
    return {str(k): int(v) for k, v in data.items() if isinstance(v, int)}


def save_size_snapshot(path: Path, sizes: Dict[str, int]) -> None:
    try:
        save_json_atomic(path, sizes)
    except OSError as e:
        logger.warning(f"Could not save size snapshot {path}: {e}")


# =============================================================================
# Rendering
# =============================================================================

def format_cpu(seconds: float) -> str:
    """CPU time as M:SS, or H:MM:SS past an hour."""
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_context(tokens: int, limit: int) -> Text:
    if tokens <= 0:
        return Text("—", style="dim")
    label = f"{human_tokens(tokens)} {tokens * 100 / limit:.0f}%"
    if tokens > limit * 0.8:
        return Text(label, style="red")
    if tokens > limit * 0.5:
        return Text(label, style="yellow")
    return Text(label, style="dim")


def format_agents(active: int, total: int, unknown: int = 0) -> Text:
    if total == 0:
        return Text("—", style="dim")
    suffix = "?" if unknown else ""
    if active > 0:
        return Text(f"{active}▶/{total}{suffix}", style="green")
    return Text(f"0/{total}{suffix}", style="dim")


def variant_style(variant: str, known: List[str]) -> str:
    if variant == MERGE_VARIANT:
        return "bold white"
    if variant in known:
        return VARIANT_STYLES[known.index(variant) % len(VARIANT_STYLES)]
    return "dim"


def render_sessions(
    sessions: List[RunningSession],
    statuses: Dict[str, TranscriptStatus],
    prev_sizes: Dict[str, int],
    context_limit: int,
    known_variants: Optional[List[str]] = None,
) -> Tuple[Table, Dict[str, int]]:
    """Build the session table and the sizes to remember for the next refresh."""
    known = list(known_variants or [])
    table = Table(show_header=True, header_style="bold", show_lines=False)
    for name, justify in [
        ("PID", "right"), ("Variant", "left"), ("Session", "center"),
        ("Size", "right"), ("Tools", "right"), ("Agents", "right"),
        ("Turns", "right"), ("Input", "right"), ("Output", "right"),
        ("Cache+", "right"), ("Cache→", "right"), ("Total", "right"),
        ("Context", "right"), ("C#", "right"), ("CPU", "right"),
        ("Activity", "left"), ("Last Action", "left"),
    ]:
        table.add_column(name, justify=justify, no_wrap=(name != "Last Action"))

    new_sizes: Dict[str, int] = {}
    for session in sessions:
        status = statuses.get(session.variant)
        variant_cell = Text(session.variant, style=variant_style(session.variant, known))
        if status is None:
            table.add_row(
                str(session.pid), variant_cell, "—", "—", "—", Text("—", style="dim"),
                "—", "—", "—", "—", "—", "—", Text("—", style="dim"), Text("—", style="dim"),
                format_cpu(session.cpu_seconds), Text("? n/a", style="dim"),
                Text("waiting for transcript", style="dim"),
            )
            continue

        snap = status.snapshot
        size = status.file.size
        new_sizes[session.variant] = size
        activity, delta = classify_activity(size, prev_sizes.get(session.variant))
        compactions = (
            Text(str(snap.compactions), style="red") if snap.compactions else Text("—", style="dim")
        )
        table.add_row(
            str(session.pid),
            variant_cell,
            status.file.session_id[:SESSION_ID_WIDTH],
            human_size(size),
            str(snap.tool_calls),
            format_agents(snap.agents_active, snap.agents_total, snap.agents_unknown),
            str(snap.turns),
            human_tokens(snap.total_input),
            human_tokens(snap.total_output),
            human_tokens(snap.total_cache_create),
            human_tokens(snap.total_cache_read),
            human_tokens(snap.total_tokens),
            format_context(snap.context_size, context_limit),
            compactions,
            format_cpu(session.cpu_seconds),
            format_activity(activity, delta),
            snap.last_action,
        )
    return table, new_sizes


def find_latest_run_dir(plans_dir: Path) -> Optional[Path]:
    """Newest timestamp run dir inside the most recently modified task dir.

    Symlinks such as `latest` are skipped so they never shadow real runs.
    """
    if not plans_dir.is_dir():
        return None
    task_dirs = [d for d in plans_dir.iterdir() if d.is_dir() and not d.is_symlink()]
    if not task_dirs:
        return None
    task_dir = max(task_dirs, key=lambda d: d.stat().st_mtime)
    runs = sorted(
        (d for d in task_dir.iterdir() if d.is_dir() and not d.is_symlink()),
        key=lambda d: d.name,
        reverse=True,
    )
    return runs[0] if runs else None


def _artifact_line(name: str, size: int, running: bool, min_bytes: int) -> Text:
    if size == 0:
        if running:
            return Text(f"{name}: empty (session running — waiting for Write tool)", style="dim")
        return Text(f"{name}: empty ✗", style="red")
    if size < min_bytes:
        if running:
            return Text(f"{name}: {human_size(size)} ⏳ still writing...", style="cyan")
        return Text(f"{name}: {human_size(size)} ⚠ possibly truncated", style="yellow")
    return Text(f"{name}: {human_size(size)} ✓", style="green")


def run_plan_threshold(run_dir: Path, default: int) -> int:
    """Plan size threshold recorded by generate in run.json, else `default`."""
    data = load_json(run_dir / RUN_SUMMARY_NAME, {})
    value = data.get("min_output_bytes") if isinstance(data, dict) else None
    if isinstance(value, int) and value > 0:
        return value
    return default


def render_artifacts(
    run_dir: Path,
    running_variants: Set[str],
    min_bytes: int = DEFAULT_ARTIFACT_MIN_BYTES,
    merged_min_bytes: Optional[int] = None,
) -> List[Text]:
    """One status line per output file, plus running variants with no file yet.

    Plans are judged against `min_bytes`, merged-plan.md against
    `merged_min_bytes` (falling back to `min_bytes`).
    """
    lines = []
    shown: Set[str] = set()
    for md in sorted(run_dir.glob(f"{PLAN_PREFIX}*.md")):
        variant = md.stem[len(PLAN_PREFIX):]
        shown.add(variant)
        lines.append(_artifact_line(md.name, md.stat().st_size, variant in running_variants, min_bytes))

    merged = run_dir / MERGED_PLAN_NAME
    if merged.is_file():
        shown.add(MERGE_VARIANT)
        lines.append(_artifact_line(
            merged.name, merged.stat().st_size, MERGE_VARIANT in running_variants,
            merged_min_bytes or min_bytes,
        ))

    for variant in sorted(running_variants - shown - {UNKNOWN_VARIANT}):
        name = MERGED_PLAN_NAME if variant == MERGE_VARIANT else f"{PLAN_PREFIX}{variant}.md"
        lines.append(Text(f"{name}: not yet created (researching...)", style="dim"))
    return lines


# =============================================================================
# Monitor
# =============================================================================

class Monitor:
    """One inspection of sessions, transcripts, and output files per tick."""

    def __init__(
        self,
        settings: MonitorSettings,
        plans_dir: Path,
        matcher: VariantMatcher,
        known_variants: Optional[List[str]] = None,
        console: Optional[Console] = None,
        merged_min_bytes: Optional[int] = None,
    ):
        self.settings = settings
        self.plans_dir = plans_dir
        self.matcher = matcher
        self.known_variants = list(known_variants or [])
        self.merged_min_bytes = merged_min_bytes
        self.console = console or Console(highlight=False)
        self.index = TranscriptIndex(
            matcher,
            attribution_prefix=settings.attribution_prefix,
            min_bytes=settings.min_transcript_bytes,
            active_window=settings.active_window_seconds,
        )

    def find_sessions(self) -> List[RunningSession]:
        return find_running_sessions(self.settings.command_signature, self.matcher)

    def collect_telemetry(self, now: Optional[float] = None) -> Dict[str, TranscriptStatus]:
        """Discover transcripts and return the latest status per variant."""
        now = time.time() if now is None else now
        files = discover_transcripts(
            self.settings.projects_dir,
            now=now,
            min_bytes=self.settings.min_transcript_bytes,
            max_dir_age=self.settings.max_dir_age_seconds,
            max_file_age=self.settings.max_file_age_seconds,
        )
        return self.index.update(files, now=dt.datetime.fromtimestamp(now, dt.timezone.utc))

    def tick(self) -> int:
        """Inspect and render once; returns the number of running sessions."""
        sessions = self.find_sessions()
        if not sessions:
            self.console.print(
                f"No running '{self.settings.command_signature}' sessions found.", style="red"
            )
            return 0

        statuses = self.collect_telemetry()
        prev_sizes = load_size_snapshot(self.settings.snapshot_path)
        table, new_sizes = render_sessions(
            sessions, statuses, prev_sizes, self.settings.context_limit, self.known_variants
        )
        self.console.print(table)
        save_size_snapshot(self.settings.snapshot_path, new_sizes)

        self.console.print()
        self.console.print("Output files:", style="bold")
        run_dir = find_latest_run_dir(self.plans_dir)
        if run_dir is None:
            self.console.print("  No output files found yet", style="dim")
        else:
            self.console.print(f"  {run_dir}/", style="dim")
            plan_min = run_plan_threshold(run_dir, self.settings.artifact_min_bytes)
            merged_min = self.merged_min_bytes or self.settings.artifact_min_bytes
            for line in render_artifacts(run_dir, {s.variant for s in sessions}, plan_min, merged_min):
                self.console.print(Text("  ").append_text(line))

        self.console.print()
        self.console.print(
            f"{time.strftime('%H:%M:%S')} — {len(sessions)} session(s) running", style="dim"
        )
        return len(sessions)

    def watch(self, interval: float) -> int:
        """Refresh until every session seen so far has finished."""
        saw_sessions = False
        while True:
            self.console.clear()
            self.console.print(
                f"[bold]Planforge Session Monitor[/bold] (refresh {interval:g}s, Ctrl+C to stop)"
            )
            count = self.tick()
            if count:
                saw_sessions = True
            elif saw_sessions:
                self.console.print()
                self.console.print("All sessions finished. Exiting monitor.", style="bold")
                return EXIT_OK
            time.sleep(interval)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Monitor running plan-generation sessions")
    ap.add_argument(
        "--watch", nargs="?", type=float, const=-1.0, default=None, metavar="SECONDS",
        help="Refresh continuously (default interval: 15s)",
    )
    ap.add_argument("--plans-dir", help="Root directory for run output (default: ./generated-plans)")
    ap.add_argument("--config", help="Config file (default: config.local.yaml, then config.yaml)")
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        cfg = load_project_config(find_config(args.config))
    except ValueError as e:
        logger.error(str(e))
        return EXIT_ERROR

    monitor = Monitor(
        settings=cfg.monitor,
        plans_dir=resolve_plans_dir(args.plans_dir, cfg),
        matcher=VariantMatcher.for_variants(cfg.variants.values()),
        known_variants=list(cfg.variants),
        merged_min_bytes=cfg.merge.min_output_bytes,
    )

    if args.watch is None:
        return EXIT_OK if monitor.tick() else EXIT_NO_SESSIONS

    interval = args.watch if args.watch > 0 else cfg.monitor.interval
    try:
        return monitor.watch(interval)
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
