#!/usr/bin/env python3
"""
Planforge Configuration Loading

Loads the project YAML (variants, readable directories, merge and monitor
options) and resolves run settings from defaults, debug mode, environment
variables, and CLI overrides.
"""
from __future__ import annotations

import dataclasses
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from utils import validate_name

logger = logging.getLogger("planforge")

SCRIPT_DIR = Path(__file__).parent.resolve()
# Bundled config dir is a sibling of scripts/ in the plugin layout. A regular
# (non-editable) install ships it as data files under <prefix>/share/planforge.
DEFAULT_CONFIG_DIR = SCRIPT_DIR.parent / "config"
INSTALLED_CONFIG_DIR = Path(sys.prefix) / "share" / "planforge" / "config"

CONFIG_FILE_NAME = "config.yaml"
LOCAL_CONFIG_FILE_NAME = "config.local.yaml"
CONFIG_ENV_VAR = "PLANFORGE_CONFIG"

DEFAULT_VARIANT = "baseline"
DEFAULT_AGENT_COMMAND = ["claude"]
DEFAULT_PLANS_DIR = "generated-plans"
DEFAULT_ARTIFACT_MIN_BYTES = 5000

DEFAULT_MERGE_DIMENSIONS = [
    "Staging strategy (number of stages, granularity, boundaries)",
    "MVP scope (what's in/out, validation gates)",
    "Testing strategy (levels, tooling, fixtures)",
    "Deployment detail (steps, commands, specificity)",
    "Code architecture (package layout, modularity, models)",
    "Reference documentation (papers, external references, internals)",
    "Implementation planning (PR breakdown, acceptance criteria)",
]


@dataclasses.dataclass
class Variant:
    """A named guidance fragment appended to the base task."""
    name: str
    guidance: str = ""
    # Phrase unique to this variant's prompt, used to attribute transcripts
    marker: Optional[str] = None

    @classmethod
    def from_value(cls, name: str, value: Any) -> "Variant":
        validate_name(str(name), "variant")
        if isinstance(value, dict):
            guidance = value.get("guidance") or ""
            marker = value.get("marker")
            return cls(
                name=str(name),
                guidance=str(guidance).strip(),
                marker=str(marker).strip() if marker else None,
            )
        return cls(name=str(name), guidance=str(value).strip() if value else "")


@dataclasses.dataclass
class MonitorSettings:
    """Thresholds and paths used by the live monitor."""
    interval: float = 15.0
    projects_dir: Path = dataclasses.field(
        default_factory=lambda: Path("~/.claude/projects").expanduser()
    )
    command_signature: str = "claude -p"
    active_window_seconds: float = 120.0
    context_limit: int = 200_000
    min_transcript_bytes: int = 500
    max_dir_age_seconds: float = 7200.0
    max_file_age_seconds: float = 600.0
    attribution_prefix: int = 16
    # Plan threshold when a run directory has no run.json
    artifact_min_bytes: int = DEFAULT_ARTIFACT_MIN_BYTES
    snapshot_path: Path = dataclasses.field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "planforge-monitor-sizes.json"
    )

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MonitorSettings":
        base = cls()
        return cls(
            interval=float(d.get("interval", base.interval)),
            projects_dir=Path(d["projects_dir"]).expanduser() if d.get("projects_dir") else base.projects_dir,
            command_signature=d.get("command_signature", base.command_signature),
            active_window_seconds=float(d.get("active_window_seconds", base.active_window_seconds)),
            context_limit=int(d.get("context_limit", base.context_limit)),
            min_transcript_bytes=int(d.get("min_transcript_bytes", base.min_transcript_bytes)),
            max_dir_age_seconds=float(d.get("max_dir_age_seconds", base.max_dir_age_seconds)),
            max_file_age_seconds=float(d.get("max_file_age_seconds", base.max_file_age_seconds)),
            attribution_prefix=int(d.get("attribution_prefix", base.attribution_prefix)),
            artifact_min_bytes=int(d.get("artifact_min_bytes", base.artifact_min_bytes)),
            snapshot_path=Path(d["snapshot_path"]).expanduser() if d.get("snapshot_path") else base.snapshot_path,
        )


@dataclasses.dataclass
class MergeSettings:
    dimensions: List[str] = dataclasses.field(
        default_factory=lambda: list(DEFAULT_MERGE_DIMENSIONS)
    )
    min_input_bytes: int = 1000
    min_output_bytes: int = 5000
    max_turns: int = 30

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MergeSettings":
        base = cls()
        dims = d.get("dimensions")
        if dims is not None and not isinstance(dims, list):
            logger.warning("merge.dimensions must be a list, using defaults")
            dims = None
        return cls(
            dimensions=[str(x) for x in dims] if dims else base.dimensions,
            min_input_bytes=int(d.get("min_input_bytes", base.min_input_bytes)),
            min_output_bytes=int(d.get("min_output_bytes", base.min_output_bytes)),
            max_turns=int(d.get("max_turns", base.max_turns)),
        )


@dataclasses.dataclass
class ProjectConfig:
    """Declarative project configuration loaded from YAML."""
    variants: Dict[str, Variant] = dataclasses.field(
        default_factory=lambda: {DEFAULT_VARIANT: Variant(DEFAULT_VARIANT)}
    )
    add_dirs: List[str] = dataclasses.field(default_factory=list)
    agent_command: List[str] = dataclasses.field(
        default_factory=lambda: list(DEFAULT_AGENT_COMMAND)
    )
    plans_dir: Optional[str] = None
    work_dir: Optional[str] = None
    plan_title: Optional[str] = None
    merge: MergeSettings = dataclasses.field(default_factory=MergeSettings)
    monitor: MonitorSettings = dataclasses.field(default_factory=MonitorSettings)
    source_path: Optional[Path] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any], source_path: Optional[Path] = None) -> "ProjectConfig":
        raw_variants = d.get("variants") or {DEFAULT_VARIANT: ""}
        if not isinstance(raw_variants, dict):
            raise ValueError(f"'variants' must be a mapping in {source_path}")
        variants = {
            str(name): Variant.from_value(str(name), value)
            for name, value in raw_variants.items()
        }

        add_dirs = d.get("add_dirs") or []
        if not isinstance(add_dirs, list):
            raise ValueError(f"'add_dirs' must be a list in {source_path}")

        agent_command = d.get("agent_command") or DEFAULT_AGENT_COMMAND
        if isinstance(agent_command, str):
            agent_command = agent_command.split()

        return cls(
            variants=variants,
            add_dirs=[str(Path(str(x)).expanduser()) for x in add_dirs],
            agent_command=[str(x) for x in agent_command],
            plans_dir=d.get("plans_dir"),
            work_dir=d.get("work_dir"),
            plan_title=d.get("plan_title"),
            merge=MergeSettings.from_dict(d.get("merge") or {}),
            monitor=MonitorSettings.from_dict(d.get("monitor") or {}),
            source_path=source_path,
        )

    def existing_add_dirs(self) -> List[str]:
        """Readable-directory grants that actually exist on this machine."""
        return [d for d in self.add_dirs if Path(d).is_dir()]


def find_config(
    explicit: Optional[str] = None,
    search_dirs: Optional[List[Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[Path]:
    """Locate the config file.

    Priority: explicit path (argument, then PLANFORGE_CONFIG) >
    config.local.yaml > config.yaml. Each file name is looked up in
    `search_dirs` in order (default: current directory, the plugin's bundled
    config, then the installed copy of it).

    Raises:
        ValueError: If an explicitly named file does not exist
    """
    environ = os.environ if environ is None else environ
    explicit = explicit or environ.get(CONFIG_ENV_VAR)
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise ValueError(f"Config file not found: {path}")
        return path

    if search_dirs is None:
        search_dirs = [Path.cwd(), DEFAULT_CONFIG_DIR, INSTALLED_CONFIG_DIR]
    for name in (LOCAL_CONFIG_FILE_NAME, CONFIG_FILE_NAME):
        for d in search_dirs:
            candidate = d / name
            if candidate.is_file():
                return candidate
    return None


def load_project_config(path: Optional[Path]) -> ProjectConfig:
    """Load a ProjectConfig from YAML; None means baseline-only defaults."""
    if path is None:
        logger.warning(f"No {CONFIG_FILE_NAME} found. Using {DEFAULT_VARIANT}-only variant.")
        return ProjectConfig()

    try:
        content = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"YAML parse error in {path}: {e}") from e
    if not isinstance(content, dict):
        raise ValueError(f"Config {path} must be a YAML mapping, got {type(content).__name__}")

    cfg = ProjectConfig.from_dict(content, source_path=path)
    logger.debug(f"Loaded config {path}: variants={list(cfg.variants)}")
    return cfg


@dataclasses.dataclass
class RunSettings:
    """Per-invocation settings for generation sessions.

    Normal and debug modes have different defaults; environment variables
    override defaults and explicit CLI values override both.
    """
    model: str = "opus"
    max_turns: int = 80
    timeout_seconds: float = 3600
    min_output_bytes: int = 5000
    stagger_seconds: float = 10
    max_output_tokens: int = 128_000
    debug: bool = False

    @classmethod
    def debug_defaults(cls) -> "RunSettings":
        return cls(
            model="sonnet",
            max_turns=20,
            timeout_seconds=600,
            min_output_bytes=500,
            stagger_seconds=0,
            debug=True,
        )

    @classmethod
    def resolve(
        cls,
        debug: bool = False,
        model: Optional[str] = None,
        max_turns: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "RunSettings":
        """Build settings: mode defaults < environment < explicit arguments.

        Environment variables:
            PLANFORGE_MODEL: Override model
            PLANFORGE_MAX_TURNS: Override max turns
            PLANFORGE_TIMEOUT: Override timeout in seconds
        """
        environ = os.environ if environ is None else environ
        settings = cls.debug_defaults() if debug else cls()

        if environ.get("PLANFORGE_MODEL"):
            settings.model = environ["PLANFORGE_MODEL"]
        if environ.get("PLANFORGE_MAX_TURNS"):
            settings.max_turns = _env_int(environ, "PLANFORGE_MAX_TURNS")
        if environ.get("PLANFORGE_TIMEOUT"):
            settings.timeout_seconds = _env_int(environ, "PLANFORGE_TIMEOUT")

        if model:
            settings.model = model
        if max_turns is not None:
            settings.max_turns = max_turns
        if timeout_seconds is not None:
            settings.timeout_seconds = timeout_seconds
        return settings


def _env_int(environ: Mapping[str, str], key: str) -> int:
    try:
        return int(environ[key])
    except ValueError as e:
        raise ValueError(f"{key} must be an integer, got {environ[key]!r}") from e


def resolve_plans_dir(cli_value: Optional[str], cfg: ProjectConfig) -> Path:
    """Plans root: CLI flag > PLANFORGE_PLANS_DIR > config > ./generated-plans."""
    value = cli_value or os.environ.get("PLANFORGE_PLANS_DIR") or cfg.plans_dir or DEFAULT_PLANS_DIR
    return Path(value).expanduser().resolve()


def resolve_work_dir(cli_value: Optional[str], cfg: ProjectConfig) -> Path:
    """Session working directory: CLI flag > PLANFORGE_WORK_DIR > config > cwd."""
    value = cli_value or os.environ.get("PLANFORGE_WORK_DIR") or cfg.work_dir
    return Path(value).expanduser().resolve() if value else Path.cwd()
