#!/usr/bin/env python3
"""
Planforge Data Models

Data classes for supervised sessions: launch specs, lifecycle state,
artifact checks, per-session outcomes, and run summaries.
"""
from __future__ import annotations

import dataclasses
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger("planforge")

MERGE_VARIANT = "merge"

PLAN_PREFIX = "plan-"
MERGED_PLAN_NAME = "merged-plan.md"
MERGE_PROMPT_NAME = "merge-prompt.md"
MERGE_LOG_NAME = "merge.log"
RUN_SUMMARY_NAME = "run.json"
LATEST_LINK_NAME = "latest"


def plan_file_name(variant: str) -> str:
    return f"{PLAN_PREFIX}{variant}.md"


def plan_log_name(variant: str) -> str:
    return f"{PLAN_PREFIX}{variant}.log"


class MergePreconditionError(Exception):
    """Fewer than two valid plans are available to merge."""


class SessionState(Enum):
    """Lifecycle of one supervised child process."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.SUCCEEDED, SessionState.TIMED_OUT, SessionState.FAILED)


class ArtifactStatus(Enum):
    MISSING = "missing"
    UNDERSIZED = "undersized"
    VALID = "valid"


class OutcomeKind(Enum):
    """Exactly one of these is assigned to every launched session."""
    SUCCESS = "success"
    TIMEOUT = "timeout"
    NONZERO_EXIT = "nonzero_exit"
    ARTIFACT_MISSING = "artifact_missing"
    ARTIFACT_UNDERSIZED = "artifact_undersized"
    LAUNCH_FAILED = "launch_failed"


@dataclasses.dataclass(frozen=True)
class ArtifactCheck:
    """Result of validating an artifact file against a size threshold."""
    path: Path
    status: ArtifactStatus
    size: int = 0
    lines: int = 0
    min_bytes: int = 0

    @property
    def is_valid(self) -> bool:
        return self.status is ArtifactStatus.VALID

    @property
    def exists(self) -> bool:
        return self.status is not ArtifactStatus.MISSING


@dataclasses.dataclass
class SessionSpec:
    """Everything needed to launch one session."""
    variant: str
    cmd: List[str]
    work_dir: Path
    artifact_path: Path
    log_path: Path
    timeout: Optional[float]
    min_bytes: int
    env: Dict[str, str] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class Session:
    """One supervised child-process invocation."""
    spec: SessionSpec
    pid: Optional[int] = None
    launched_at: Optional[str] = None
    state: SessionState = SessionState.PENDING
    finished_at: Optional[str] = None

    @property
    def variant(self) -> str:
        return self.spec.variant

    @property
    def artifact_path(self) -> Path:
        return self.spec.artifact_path

    @property
    def log_path(self) -> Path:
        return self.spec.log_path

    def mark_running(self, pid: int, launched_at: str) -> None:
        self.pid = pid
        self.launched_at = launched_at
        self.state = SessionState.RUNNING

    def finish(self, state: SessionState, finished_at: str) -> None:
        """Record the terminal state. A session is finished exactly once."""
        if self.state.is_terminal:
            raise RuntimeError(
                f"Session {self.variant} already finished as {self.state.value}"
            )
        if not state.is_terminal:
            raise ValueError(f"{state.value} is not a terminal state")
        self.state = state
        self.finished_at = finished_at


@dataclasses.dataclass
class Outcome:
    """Classified result of one session."""
    variant: str
    kind: OutcomeKind
    log_path: Path
    artifact: ArtifactCheck
    exit_code: Optional[int] = None
    duration_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    def describe(self, timeout: Optional[float] = None) -> str:
        """One-line operator summary for this outcome."""
        art = self.artifact
        if self.kind is OutcomeKind.SUCCESS:
            return f"✓ {self.variant} completed ({art.lines} lines, {art.size} bytes)"
        if self.kind is OutcomeKind.TIMEOUT:
            limit = f" after {timeout:.0f}s" if timeout else ""
            return f"✗ {self.variant} TIMED OUT{limit}"
        if self.kind is OutcomeKind.NONZERO_EXIT:
            return f"✗ {self.variant} FAILED (exit code: {self.exit_code})"
        if self.kind is OutcomeKind.ARTIFACT_MISSING:
            return f"✗ {self.variant}: output file not created (agent never wrote it)"
        if self.kind is OutcomeKind.ARTIFACT_UNDERSIZED:
            return (
                f"⚠ {self.variant}: output too small "
                f"({art.size} bytes < {art.min_bytes}). Likely incomplete."
            )
        return f"✗ {self.variant} could not be launched: {self.error}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant": self.variant,
            "kind": self.kind.value,
            "exit_code": self.exit_code,
            "duration_seconds": round(self.duration_seconds, 1),
            "log_path": str(self.log_path),
            "artifact": {
                "path": str(self.artifact.path),
                "status": self.artifact.status.value,
                "size": self.artifact.size,
                "lines": self.artifact.lines,
                "min_bytes": self.artifact.min_bytes,
            },
            "error": self.error,
        }


@dataclasses.dataclass
class RunResult:
    """Summary of one Generate phase.

    Written to run.json once at launch (finished=False, no outcomes) and
    again when every session has ended.
    """
    run_dir: Path
    outcomes: List[Outcome]
    elapsed_seconds: float = 0.0
    min_output_bytes: int = 0
    finished: bool = True

    @property
    def succeeded(self) -> List[Outcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failed(self) -> List[Outcome]:
        return [o for o in self.outcomes if not o.succeeded]

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def is_hard_failure(self) -> bool:
        return not self.succeeded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_dir": str(self.run_dir),
            "elapsed_seconds": round(self.elapsed_seconds, 1),
            "finished": self.finished,
            "min_output_bytes": self.min_output_bytes,
            "succeeded": len(self.succeeded),
            "total": self.total,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclasses.dataclass(frozen=True)
class PlanFile:
    """A validated candidate plan selected as merge input."""
    variant: str
    path: Path
    size: int
    lines: int

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")
