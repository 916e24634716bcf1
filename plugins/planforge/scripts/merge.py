#!/usr/bin/env python3
"""
Planforge Plan Merger

Synthesizes the candidate plans of one run directory into merged-plan.md.

Merge modes:
    debate    (default) Interactive session with competing advocates, one per
              plan, and a lead that compares them dimension by dimension.
              The operator drives it; the result is judged by a human.
    headless  Single non-interactive session. The synthesis task, with every
              plan embedded, is saved to merge-prompt.md and the session is
              pointed at it. Validated automatically.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple

from config import (
    MergeSettings,
    ProjectConfig,
    RunSettings,
    find_config,
    load_project_config,
    resolve_work_dir,
)
from models import (
    MERGE_LOG_NAME,
    MERGE_PROMPT_NAME,
    MERGE_VARIANT,
    MERGED_PLAN_NAME,
    PLAN_PREFIX,
    MergePreconditionError,
    Outcome,
    PlanFile,
    SessionSpec,
)
from prompts import (
    build_debate_kickoff,
    build_debate_prompt,
    build_headless_kickoff,
    build_synthesis_prompt,
)
from supervisor import (
    ProcessSupervisor,
    agent_env,
    build_agent_command,
    run_interactive,
)
from utils import configure_logging, count_lines, write_text_atomic

logger = logging.getLogger("planforge")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_MERGE_FAILED = 3

MODE_HEADLESS = "headless"
MODE_DEBATE = "debate"
MERGE_MODES = (MODE_DEBATE, MODE_HEADLESS)

RULE = "━" * 60


def collect_plans(run_dir: Path, min_bytes: int) -> Tuple[List[PlanFile], List[Path]]:
    """Select merge inputs from plan-*.md files in a run directory.

    Plans smaller than `min_bytes` are skipped with a warning.

    Raises:
        MergePreconditionError: If fewer than two plans qualify
    """
    valid: List[PlanFile] = []
    skipped: List[Path] = []
    for path in sorted(run_dir.glob(f"{PLAN_PREFIX}*.md")):
        if not path.is_file():
            continue
        size = path.stat().st_size
        if size < min_bytes:
            logger.warning(f"Skipping {path.name} — too small ({size} bytes < {min_bytes})")
            skipped.append(path)
            continue
        variant = path.stem[len(PLAN_PREFIX):]
        valid.append(PlanFile(variant=variant, path=path, size=size, lines=count_lines(path)))

    if len(valid) < 2:
        raise MergePreconditionError(
            f"Need at least 2 plan files in {run_dir}/, found {len(valid)}."
        )
    return valid, skipped


def build_merge_spec(
    prompt: str,
    run_dir: Path,
    settings: RunSettings,
    merge_settings: MergeSettings,
    cfg: ProjectConfig,
    work_dir: Path,
) -> SessionSpec:
    return SessionSpec(
        variant=MERGE_VARIANT,
        cmd=build_agent_command(
            cfg.agent_command, prompt, settings.model, merge_settings.max_turns,
            cfg.existing_add_dirs(),
        ),
        work_dir=work_dir,
        artifact_path=run_dir / MERGED_PLAN_NAME,
        log_path=run_dir / MERGE_LOG_NAME,
        timeout=settings.timeout_seconds,
        min_bytes=merge_settings.min_output_bytes,
        env=agent_env(settings.max_output_tokens),
    )


def run_headless_merge(
    plans: List[PlanFile],
    run_dir: Path,
    settings: RunSettings,
    cfg: ProjectConfig,
    work_dir: Path,
) -> Outcome:
    """Run one synthesis session and validate merged-plan.md.

    Any merged-plan.md left by an earlier attempt is moved aside to
    merged-plan.md.prev before the session starts.
    """
    merged_path = run_dir / MERGED_PLAN_NAME
    prompt_path = run_dir / MERGE_PROMPT_NAME
    title = f"{cfg.plan_title} (Merged)" if cfg.plan_title else None
    prompt = build_synthesis_prompt(plans, merged_path, cfg.merge.dimensions, title)
    write_text_atomic(prompt_path, prompt)

    kickoff = build_headless_kickoff(prompt_path, merged_path)
    spec = build_merge_spec(kickoff, run_dir, settings, cfg.merge, cfg, work_dir)
    outcomes = asyncio.run(ProcessSupervisor().run([spec]))
    return outcomes[0]


def report_merge(outcome: Outcome, run_dir: Path, timeout: Optional[float] = None) -> int:
    """Print the merge result; a failed merge has its own exit code."""
    if outcome.succeeded:
        art = outcome.artifact
        print(f"  ✓ Merge completed ({art.lines} lines, {art.size} bytes)")
        print()
        print(f"  Output: {art.path}")
        print()
        print("  Next steps:")
        print(f"    1. Review: less {art.path}")
        print("    2. Iterate: claude --resume")
        return EXIT_OK

    print(f"  ✗ Merge failed — {outcome.describe(timeout)}")
    if outcome.artifact.exists:
        print(f"    (merged plan exists: {outcome.artifact.size} bytes)")
    print(f"    Check: {outcome.log_path}")
    print(f"    Retry: planforge-merge --mode {MODE_HEADLESS} {run_dir}")
    return EXIT_MERGE_FAILED


def run_debate_merge(
    plans: List[PlanFile],
    run_dir: Path,
    settings: RunSettings,
    cfg: ProjectConfig,
    work_dir: Path,
) -> int:
    """Write the debate task and hand the terminal to an interactive session."""
    merged_path = run_dir / MERGED_PLAN_NAME
    prompt_path = run_dir / MERGE_PROMPT_NAME
    write_text_atomic(prompt_path, build_debate_prompt(plans, merged_path, cfg.merge.dimensions))

    print(f"  Merge prompt: {prompt_path}")
    print(f"  Output: {merged_path}")
    print()
    print(RULE)
    print("Launching interactive session with agent teams enabled...")
    print()
    print("  Tip: Use Shift+Up/Down to talk to individual advocates.")
    print("  Press Shift+Tab to enable delegate mode (lead coordinates only).")
    print(RULE)
    print()

    cmd = build_agent_command(
        cfg.agent_command,
        build_debate_kickoff(prompt_path, run_dir),
        settings.model,
        headless=False,
    )
    env = agent_env(settings.max_output_tokens, agent_teams=True)
    return run_interactive(cmd, work_dir, env)


def run_merge(args: argparse.Namespace) -> int:
    run_dir = Path(args.run_dir).expanduser()
    if not run_dir.is_dir():
        logger.error(f"{run_dir} is not a directory")
        return EXIT_ERROR
    # Resolve symlinks such as <task>/latest
    run_dir = run_dir.resolve()

    mode = args.mode or os.environ.get("PLANFORGE_MERGE_MODE") or MODE_DEBATE
    if mode not in MERGE_MODES:
        logger.error(f"Unknown merge mode '{mode}' (expected: {', '.join(MERGE_MODES)})")
        return EXIT_ERROR

    try:
        cfg = load_project_config(find_config(args.config))
        settings = RunSettings.resolve(model=args.model, timeout_seconds=args.timeout)
        plans, _ = collect_plans(run_dir, cfg.merge.min_input_bytes)
    except MergePreconditionError as e:
        logger.error(str(e))
        print("  Run planforge-generate first.")
        return EXIT_ERROR
    except ValueError as e:
        logger.error(str(e))
        return EXIT_ERROR

    print(f"Found {len(plans)} plans in {run_dir}/:")
    for plan in plans:
        print(f"  - {plan.path.name} ({plan.lines} lines)")
    print()

    work_dir = resolve_work_dir(args.work_dir, cfg)
    print(RULE)
    if mode == MODE_DEBATE:
        print("Debate merge (interactive)")
        print()
        try:
            return run_debate_merge(plans, run_dir, settings, cfg, work_dir)
        except OSError as e:
            logger.error(f"Could not start interactive session: {e}")
            return EXIT_ERROR

    print(f"Headless merge with {settings.model}...")
    print(f"  Output: {run_dir / MERGED_PLAN_NAME}")
    print()
    outcome = run_headless_merge(plans, run_dir, settings, cfg, work_dir)
    return report_merge(outcome, run_dir, settings.timeout_seconds)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Merge candidate plans from one run directory")
    ap.add_argument("run_dir", help="Run directory (or its 'latest' symlink)")
    ap.add_argument(
        "--mode", choices=MERGE_MODES, default=None,
        help="Merge mode (default: debate, or PLANFORGE_MERGE_MODE)",
    )
    ap.add_argument("--model", "-m", help="Model override (default: opus)")
    ap.add_argument("--timeout", type=float, default=None, help="Headless merge timeout in seconds")
    ap.add_argument("--config", help="Config file (default: config.local.yaml, then config.yaml)")
    ap.add_argument("--work-dir", help="Working directory for the merge session (default: cwd)")
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    return run_merge(args)


if __name__ == "__main__":
    raise SystemExit(main())
