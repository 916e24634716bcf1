#!/usr/bin/env python3
"""
Planforge Plan Generator

Runs one headless agent session per configured prompt variant, in parallel,
each writing one candidate plan into a shared timestamped run directory:

    <plans_dir>/<task-name>/<timestamp>/plan-<variant>.md
    <plans_dir>/<task-name>/<timestamp>/plan-<variant>.log
    <plans_dir>/<task-name>/latest -> <timestamp>

Diversity comes from prompt variation, so a handful of variants is enough;
comparing N plans costs N*(N-1)/2 pairings at merge time.
"""
from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import logging
import os
import re
import time
from pathlib import Path
from typing import Dict, List, Optional

from config import (
    DEFAULT_VARIANT,
    ProjectConfig,
    RunSettings,
    Variant,
    find_config,
    load_project_config,
    resolve_plans_dir,
    resolve_work_dir,
)
from models import (
    LATEST_LINK_NAME,
    RUN_SUMMARY_NAME,
    RunResult,
    SessionSpec,
    plan_file_name,
    plan_log_name,
)
from prompts import build_generation_prompt
from supervisor import ProcessSupervisor, agent_env, build_agent_command
from utils import configure_logging, human_size, replace_symlink_atomic, save_json_atomic

logger = logging.getLogger("planforge")

EXIT_OK = 0
EXIT_ERROR = 1

RUN_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


def task_name_for(task_file: Path) -> str:
    """Directory-safe task name derived from the task file name."""
    name = re.sub(r"[^A-Za-z0-9_-]+", "-", task_file.stem).strip("-")
    return name or "task"


def select_variants(
    variants: Dict[str, Variant], debug: bool = False, debug_variant: Optional[str] = None
) -> Dict[str, Variant]:
    """All variants normally; a single one in debug mode.

    Raises:
        ValueError: If the requested debug variant is not configured
    """
    if not debug:
        return dict(variants)
    if debug_variant is None:
        debug_variant = DEFAULT_VARIANT if DEFAULT_VARIANT in variants else next(iter(variants))
    if debug_variant not in variants:
        raise ValueError(
            f"unknown variant '{debug_variant}'. Available: {', '.join(variants)}"
        )
    return {debug_variant: variants[debug_variant]}


def create_run_dir(plans_dir: Path, task_name: str, now: Optional[dt.datetime] = None) -> Path:
    """Create a fresh timestamped run directory for this task."""
    stamp = (now or dt.datetime.now()).strftime(RUN_TIMESTAMP_FORMAT)
    task_dir = plans_dir / task_name
    task_dir.mkdir(parents=True, exist_ok=True)
    candidate = task_dir / stamp
    suffix = 1
    while True:
        try:
            candidate.mkdir()
            return candidate
        except FileExistsError:
            candidate = task_dir / f"{stamp}-{suffix}"
            suffix += 1


def update_latest(run_dir: Path) -> Path:
    """Point <task-dir>/latest at this run (relative, replaced atomically)."""
    link = run_dir.parent / LATEST_LINK_NAME
    replace_symlink_atomic(link, run_dir.name)
    return link


def build_session_specs(
    base_prompt: str,
    variants: Dict[str, Variant],
    run_dir: Path,
    settings: RunSettings,
    cfg: ProjectConfig,
    work_dir: Path,
    title: str,
) -> List[SessionSpec]:
    """One session per variant, each owning plan-<variant>.md."""
    add_dirs = cfg.existing_add_dirs()
    env = agent_env(settings.max_output_tokens)
    specs = []
    for name, variant in variants.items():
        artifact = run_dir / plan_file_name(name)
        prompt = build_generation_prompt(base_prompt, variant.guidance, artifact, title)
        specs.append(SessionSpec(
            variant=name,
            cmd=build_agent_command(
                cfg.agent_command, prompt, settings.model, settings.max_turns, add_dirs
            ),
            work_dir=work_dir,
            artifact_path=artifact,
            log_path=run_dir / plan_log_name(name),
            timeout=settings.timeout_seconds,
            min_bytes=settings.min_output_bytes,
            env=dict(env),
        ))
    return specs


async def dispatch(
    specs: List[SessionSpec],
    run_dir: Path,
    stagger_seconds: float,
) -> RunResult:
    """Run all sessions, then record the run and move `latest` to it.

    `latest` moves even when some sessions failed so that downstream tools
    always find the most recent attempt.
    """
    started = time.monotonic()
    min_output_bytes = specs[0].min_bytes if specs else 0
    save_json_atomic(
        run_dir / RUN_SUMMARY_NAME,
        RunResult(run_dir=run_dir, outcomes=[], min_output_bytes=min_output_bytes, finished=False).to_dict(),
    )
    supervisor = ProcessSupervisor(stagger_seconds=stagger_seconds)
    handles = await supervisor.launch_all(specs)
    pids = [str(h.session.pid) for h in handles if h.session.pid]
    print(f"\nAll {len(handles)} sessions launched (PIDs: {' '.join(pids)})")
    print("Waiting for completion...\n")

    outcomes = await supervisor.await_all(handles)
    result = RunResult(
        run_dir=run_dir,
        outcomes=outcomes,
        elapsed_seconds=time.monotonic() - started,
        min_output_bytes=min_output_bytes,
    )

    update_latest(run_dir)
    save_json_atomic(run_dir / RUN_SUMMARY_NAME, result.to_dict())
    return result


def report(result: RunResult, timeout: Optional[float] = None) -> int:
    """Print per-variant results and the run summary; return the exit code."""
    for outcome in result.outcomes:
        print(f"  {outcome.describe(timeout)}")
        if not outcome.succeeded:
            print(f"    Check: {outcome.log_path}")
            if outcome.artifact.exists and not outcome.artifact.is_valid:
                print(f"    (partial plan exists: {outcome.artifact.size} bytes)")

    print()
    print("=" * 64)
    print(f"  Done in {result.elapsed_seconds:.0f}s. "
          f"{len(result.succeeded)}/{result.total} plans succeeded.")
    print(f"  Output: {result.run_dir}/")
    print("=" * 64)
    print()

    for md in sorted(result.run_dir.glob("plan-*.md")):
        print(f"  {human_size(md.stat().st_size):>8}  {md.name}")
    print()

    if result.is_hard_failure:
        print(f"ERROR: No plans generated. Check logs in {result.run_dir}/")
        return EXIT_ERROR

    if result.failed:
        print(f"⚠  {len(result.failed)} plan(s) failed. Check logs:")
        for outcome in result.failed:
            print(f"    {outcome.log_path}")
        print()

    print("Next step — merge plans:")
    print(f"  planforge-merge {result.run_dir}")
    print()
    print("  or using the symlink:")
    print(f"  planforge-merge {result.run_dir.parent / LATEST_LINK_NAME}")
    return EXIT_OK


def run_generate(args: argparse.Namespace) -> int:
    # "--debug task.md" binds the task file to --debug
    if args.task_file is None and args.debug:
        args.task_file, args.debug = args.debug, ""
    if args.task_file is None:
        logger.error("task_file is required")
        return EXIT_ERROR
    task_file = Path(args.task_file).expanduser().resolve()
    if not task_file.is_file():
        logger.error(f"{task_file} not found")
        return EXIT_ERROR

    debug = args.debug is not None or bool(os.environ.get("PLANFORGE_DEBUG"))
    try:
        cfg = load_project_config(find_config(args.config))
        variants = select_variants(cfg.variants, debug, args.debug or None)
        settings = RunSettings.resolve(
            debug=debug,
            model=args.model,
            max_turns=args.max_turns,
            timeout_seconds=args.timeout,
        )
    except ValueError as e:
        logger.error(str(e))
        return EXIT_ERROR

    base_prompt = task_file.read_text(encoding="utf-8")
    task_name = task_name_for(task_file)
    plans_dir = resolve_plans_dir(args.plans_dir, cfg)
    work_dir = resolve_work_dir(args.work_dir, cfg)
    run_dir = create_run_dir(plans_dir, task_name)
    title = cfg.plan_title or f"{task_name} Implementation Plan"

    mode_label = f" (DEBUG: {next(iter(variants))} only)" if debug else ""
    print("=" * 64)
    print(f"  Generating {len(variants)} plan variant(s){mode_label}")
    print(f"  Model: {settings.model} | Max turns: {settings.max_turns} | "
          f"Timeout: {settings.timeout_seconds:.0f}s")
    print(f"  Output: {run_dir}/")
    print(f"  Session CWD: {work_dir}")
    print("=" * 64)
    print()

    specs = build_session_specs(base_prompt, variants, run_dir, settings, cfg, work_dir, title)
    for spec in specs:
        print(f"  → Launching: {spec.variant}")
        print(f"    Plan: {spec.artifact_path}")

    result = asyncio.run(dispatch(specs, run_dir, settings.stagger_seconds))
    return report(result, settings.timeout_seconds)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Generate candidate plans with parallel agent sessions"
    )
    ap.add_argument("task_file", nargs="?", help="Markdown file with the base task description")
    ap.add_argument("--model", "-m", help="Model override (default: opus, sonnet in debug)")
    ap.add_argument("--max-turns", type=int, default=None, help="Max agent turns per session")
    ap.add_argument("--timeout", type=float, default=None, help="Per-session timeout in seconds")
    ap.add_argument(
        "--debug", nargs="?", const="", default=None, metavar="VARIANT",
        help="Run a single variant (default: baseline) with cheap settings and no stagger",
    )
    ap.add_argument("--config", help="Config file (default: config.local.yaml, then config.yaml)")
    ap.add_argument("--plans-dir", help="Root directory for run output (default: ./generated-plans)")
    ap.add_argument("--work-dir", help="Working directory for agent sessions (default: cwd)")
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    return run_generate(args)


if __name__ == "__main__":
    raise SystemExit(main())
