#!/usr/bin/env python3
"""
Planforge Utilities

Common helpers for file I/O, atomic aliasing, name validation, and
human-readable formatting. Shared by the generate, merge, and monitor tools.
"""
from __future__ import annotations

import datetime as dt
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("planforge")

# Valid characters for variant names (security: they become file names)
VALID_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(verbose: bool = False) -> None:
    """Configure the root handler once for a CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def utc_now_iso() -> str:
    """Return current UTC time in ISO format."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


def parse_iso_timestamp(value: str) -> Optional[dt.datetime]:
    """Parse an ISO-8601 timestamp (accepts a trailing 'Z'). None if invalid."""
    if not value or not isinstance(value, str):
        return None
    try:
        ts = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.timezone.utc)
    return ts


def read_text(path: Path) -> str:
    """Read text from file, return empty string if file doesn't exist."""
    return path.read_text(encoding="utf-8") if path.exists() else ""


def file_size(path: Path) -> Optional[int]:
    """Return file size in bytes, or None if the file doesn't exist."""
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return None


def count_lines(path: Path) -> int:
    """Count newline-terminated lines in a file (0 if missing)."""
    try:
        with path.open("rb") as f:
            return sum(1 for _ in f)
    except FileNotFoundError:
        return 0


def write_text_atomic(path: Path, text: str) -> None:
    """Atomic write: write to temp file, fsync, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def load_json(path: Path, default: Any) -> Any:
    """Load JSON from file. Returns default if file missing or invalid."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in {path}: {e}")
        return default


def save_json_atomic(path: Path, obj: Any) -> None:
    """Save object as JSON with atomic write."""
    write_text_atomic(path, json.dumps(obj, indent=2, ensure_ascii=False))


def replace_symlink_atomic(link: Path, target: str) -> None:
    """Point `link` at `target` without a window where the link is missing.

    A temporary symlink is created next to `link` and renamed over it, so
    readers see either the old target or the new one.
    """
    link.parent.mkdir(parents=True, exist_ok=True)
    tmp_link = link.parent / f".{link.name}.{os.getpid()}.tmp"
    if tmp_link.is_symlink() or tmp_link.exists():
        tmp_link.unlink()
    tmp_link.symlink_to(target)
    try:
        os.replace(tmp_link, link)
    except Exception:
        if tmp_link.is_symlink():
            tmp_link.unlink()
        raise


def validate_name(name: str, kind: str) -> None:
    """Validate a variant/task name so it is safe to embed in file names."""
    if not VALID_NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid {kind} name '{name}': must contain only alphanumeric, underscore, or hyphen"
        )


def human_size(b: int) -> str:
    if b > 1_048_576:
        return f"{b / 1_048_576:.1f}MB"
    if b > 1024:
        return f"{b / 1024:.1f}KB"
    return f"{b}B"


def human_tokens(t: int) -> str:
    if t >= 1_000_000:
        return f"{t / 1_000_000:.1f}M"
    if t >= 1_000:
        return f"{t / 1_000:.0f}K"
    return str(t)


def truncate(text: str, width: int) -> str:
    """Fit text to `width` visible characters, marking the cut with an ellipsis."""
    if width <= 0 or len(text) <= width:
        return text
    if width == 1:
        return "…"
    return text[: width - 1] + "…"
