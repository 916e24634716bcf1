#!/usr/bin/env python3
"""
Planforge Process Supervisor

Launches agent sessions as independent child processes, staggers their
starts, enforces a wall-clock timeout per session, waits on all of them
concurrently, and classifies each result against its expected artifact.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from models import (
    ArtifactCheck,
    ArtifactStatus,
    Outcome,
    OutcomeKind,
    Session,
    SessionSpec,
    SessionState,
)
from utils import count_lines, file_size, utc_now_iso

logger = logging.getLogger("planforge")

DEFAULT_KILL_GRACE_SECONDS = 5.0
MAX_OUTPUT_TOKENS_ENV = "CLAUDE_CODE_MAX_OUTPUT_TOKENS"
AGENT_TEAMS_ENV = "CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS"


def build_agent_command(
    agent_command: Sequence[str],
    prompt: str,
    model: str,
    max_turns: Optional[int] = None,
    add_dirs: Sequence[str] = (),
    headless: bool = True,
) -> List[str]:
    """Build the agent runtime invocation.

    Headless sessions skip permission prompts since nobody is there to
    approve the single Write the task asks for.
    """
    cmd = list(agent_command)
    if headless:
        cmd.extend(["-p", prompt, "--model", model, "--output-format", "text"])
        if max_turns is not None:
            cmd.extend(["--max-turns", str(max_turns)])
        cmd.append("--dangerously-skip-permissions")
        for d in add_dirs:
            cmd.extend(["--add-dir", d])
        return cmd

    cmd.extend(["--model", model])
    for d in add_dirs:
        cmd.extend(["--add-dir", d])
    cmd.append(prompt)
    return cmd


def agent_env(max_output_tokens: int, agent_teams: bool = False) -> Dict[str, str]:
    """Environment overrides for agent sessions.

    The output token cap is set unconditionally so a low value exported in
    the operator's shell cannot truncate long plans.
    """
    env = {MAX_OUTPUT_TOKENS_ENV: str(max_output_tokens)}
    if agent_teams:
        env[AGENT_TEAMS_ENV] = "1"
    return env


def set_aside_artifact(path: Path) -> Optional[Path]:
    """Rename a leftover artifact to <name>.prev before a session starts.

    Only a file written by the new session may count toward its outcome.
    """
    if not (path.exists() or path.is_symlink()):
        return None
    backup = path.with_name(f"{path.name}.prev")
    os.replace(path, backup)
    logger.warning(f"Moved existing {path.name} aside to {backup.name}")
    return backup


def check_artifact(path: Path, min_bytes: int) -> ArtifactCheck:
    """Classify an artifact by existence and size alone."""
    size = file_size(path)
    if size is None:
        return ArtifactCheck(path=path, status=ArtifactStatus.MISSING, min_bytes=min_bytes)
    status = ArtifactStatus.VALID if size >= min_bytes else ArtifactStatus.UNDERSIZED
    return ArtifactCheck(
        path=path, status=status, size=size, lines=count_lines(path), min_bytes=min_bytes
    )


def classify_outcome(
    timed_out: bool,
    exit_code: Optional[int],
    artifact: ArtifactCheck,
    launch_failed: bool = False,
) -> OutcomeKind:
    """Map how a session ended onto exactly one outcome kind.

    Process-level failures take precedence; a clean exit is only a success
    when the artifact is valid.
    """
    if launch_failed:
        return OutcomeKind.LAUNCH_FAILED
    if timed_out:
        return OutcomeKind.TIMEOUT
    if exit_code != 0:
        return OutcomeKind.NONZERO_EXIT
    if artifact.status is ArtifactStatus.MISSING:
        return OutcomeKind.ARTIFACT_MISSING
    if artifact.status is ArtifactStatus.UNDERSIZED:
        return OutcomeKind.ARTIFACT_UNDERSIZED
    return OutcomeKind.SUCCESS


_STATE_BY_KIND = {
    OutcomeKind.SUCCESS: SessionState.SUCCEEDED,
    OutcomeKind.TIMEOUT: SessionState.TIMED_OUT,
}


@dataclasses.dataclass
class SessionHandle:
    """A launched (or failed-to-launch) session."""
    session: Session
    process: Optional[asyncio.subprocess.Process] = None
    started: float = 0.0
    launch_error: Optional[str] = None


class ProcessSupervisor:
    """Runs a fixed set of sessions concurrently."""

    def __init__(
        self,
        stagger_seconds: float = 0.0,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ):
        self.stagger_seconds = stagger_seconds
        self.kill_grace_seconds = kill_grace_seconds

    async def launch(self, spec: SessionSpec) -> SessionHandle:
        """Start one session with stdout and stderr going to its log file.

        A pre-existing artifact is moved aside first; failing to do so is a
        launch failure.
        """
        session = Session(spec=spec)
        spec.log_path.parent.mkdir(parents=True, exist_ok=True)
        env = {**os.environ, **spec.env}

        with open(spec.log_path, "wb") as log_file:
            try:
                set_aside_artifact(spec.artifact_path)
                proc = await asyncio.create_subprocess_exec(
                    *spec.cmd,
                    cwd=str(spec.work_dir),
                    env=env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except OSError as e:
                log_file.write(f"launch failed: {e}\n".encode("utf-8"))
                logger.error(f"Could not launch {spec.variant}: {e}")
                return SessionHandle(session=session, started=time.monotonic(), launch_error=str(e))

        session.mark_running(proc.pid, utc_now_iso())
        logger.debug(f"Launched {spec.variant} (pid {proc.pid}), log: {spec.log_path}")
        return SessionHandle(session=session, process=proc, started=time.monotonic())

    async def launch_all(self, specs: Sequence[SessionSpec]) -> List[SessionHandle]:
        """Launch sessions in order, pausing between launches.

        All sessions share the agent provider's rate limits, so spacing the
        starts avoids a burst of simultaneous first requests.
        """
        handles = []
        for i, spec in enumerate(specs):
            handles.append(await self.launch(spec))
            if self.stagger_seconds > 0 and i < len(specs) - 1:
                await asyncio.sleep(self.stagger_seconds)
        return handles

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """Terminate, then kill if the process ignores SIGTERM."""
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"pid {proc.pid} ignored SIGTERM, killing")
            proc.kill()
            await proc.wait()
        except ProcessLookupError:
            pass

    async def wait(self, handle: SessionHandle) -> Outcome:
        """Wait for one session and classify its outcome."""
        spec = handle.session.spec
        timed_out = False
        exit_code: Optional[int] = None

        if handle.process is not None:
            remaining = None
            if spec.timeout:
                # The clock started at launch, not when waiting began
                remaining = max(0.0, spec.timeout - (time.monotonic() - handle.started))
            try:
                exit_code = await asyncio.wait_for(handle.process.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                timed_out = True
                await self._terminate(handle.process)
                exit_code = handle.process.returncode

        artifact = check_artifact(spec.artifact_path, spec.min_bytes)
        kind = classify_outcome(
            timed_out, exit_code, artifact, launch_failed=handle.launch_error is not None
        )
        handle.session.finish(_STATE_BY_KIND.get(kind, SessionState.FAILED), utc_now_iso())

        outcome = Outcome(
            variant=spec.variant,
            kind=kind,
            log_path=spec.log_path,
            artifact=artifact,
            exit_code=exit_code,
            duration_seconds=time.monotonic() - handle.started,
            error=handle.launch_error,
        )
        logger.debug(f"{spec.variant}: {kind.value} (exit {exit_code}, artifact {artifact.status.value})")
        return outcome

    async def await_all(self, handles: Sequence[SessionHandle]) -> List[Outcome]:
        """Wait on every handle concurrently; results keep launch order."""
        return list(await asyncio.gather(*(self.wait(h) for h in handles)))

    async def run(self, specs: Sequence[SessionSpec]) -> List[Outcome]:
        handles = await self.launch_all(specs)
        return await self.await_all(handles)


def run_interactive(cmd: Sequence[str], cwd: Path, env: Dict[str, str]) -> int:
    """Hand the terminal to an interactive agent session and return its exit code."""
    logger.debug(f"Starting interactive session in {cwd}: {cmd[0]}")
    result = subprocess.run(list(cmd), cwd=str(cwd), env={**os.environ, **env})
    return result.returncode
