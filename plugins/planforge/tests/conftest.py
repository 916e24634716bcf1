"""Shared fixtures for planforge tests."""
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import yaml

from models import SessionSpec

# Stand-in agent runtime: finds the output path in its task text (or in the
# prompt file the task points at) and writes `size` bytes there, mimicking a
# session that ends with a single Write call.
FAKE_AGENT = '''\
import re
import sys

args = sys.argv[1:]
size = int(args[args.index("--fake-size") + 1]) if "--fake-size" in args else 8000
prompt = args[args.index("-p") + 1] if "-p" in args else args[-1]
pointer = re.search(r"merge prompt at (\\S+) and follow", prompt)
if pointer:
    with open(pointer.group(1)) as f:
        prompt = f.read()
match = re.search(r"file path using the Write tool:\\n  (\\S+)", prompt)
if match:
    with open(match.group(1), "w") as f:
        f.write("# Plan\\n" + "x" * max(0, size - 7))
print("Plan written to", match.group(1) if match else "nowhere")
'''


def assistant_record(
    input_tokens: int = 0,
    output_tokens: int = 0,
    cache_creation: int = 0,
    cache_read: int = 0,
    content: Optional[List[Dict[str, Any]]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    record = {
        "type": "assistant",
        "timestamp": "2026-01-01T00:00:00Z",
        "message": {
            "role": "assistant",
            "content": content or [],
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_creation_input_tokens": cache_creation,
                "cache_read_input_tokens": cache_read,
            },
        },
    }
    record.update(extra)
    return record


def user_record(text: str, **extra: Any) -> Dict[str, Any]:
    record = {
        "type": "user",
        "timestamp": "2026-01-01T00:00:00Z",
        "message": {"role": "user", "content": text},
    }
    record.update(extra)
    return record


def tool_use(name: str, **tool_input: Any) -> Dict[str, Any]:
    return {"type": "tool_use", "id": f"toolu_{name}", "name": name, "input": tool_input}


def write_jsonl(path: Path, lines: List[Any], trailing_newline: bool = True) -> Path:
    """Write records (dicts) or raw strings as JSONL."""
    rendered = [line if isinstance(line, str) else json.dumps(line) for line in lines]
    text = "\n".join(rendered)
    if trailing_newline:
        text += "\n"
    path.write_text(text, encoding="utf-8")
    return path


def append_jsonl(path: Path, lines: List[Any]) -> None:
    with path.open("a", encoding="utf-8") as f:
        for line in lines:
            f.write((line if isinstance(line, str) else json.dumps(line)) + "\n")


@pytest.fixture
def fake_agent(tmp_path) -> List[str]:
    """Agent command that runs the stand-in agent script."""
    script = tmp_path / "fake_agent.py"
    script.write_text(FAKE_AGENT, encoding="utf-8")
    return [sys.executable, str(script)]


@pytest.fixture
def write_config(tmp_path):
    """Write a YAML config file and return its path."""
    def _write(data: Dict[str, Any], name: str = "config.yaml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return path
    return _write


@pytest.fixture
def make_spec(tmp_path):
    """Build a SessionSpec running inline Python code."""
    def _make(
        variant: str,
        code: str,
        timeout: Optional[float] = 30,
        min_bytes: int = 5000,
        env: Optional[Dict[str, str]] = None,
        run_dir: Optional[Path] = None,
    ) -> SessionSpec:
        run_dir = run_dir or tmp_path
        artifact = run_dir / f"plan-{variant}.md"
        return SessionSpec(
            variant=variant,
            cmd=[sys.executable, "-c", code, str(artifact)],
            work_dir=tmp_path,
            artifact_path=artifact,
            log_path=run_dir / f"plan-{variant}.log",
            timeout=timeout,
            min_bytes=min_bytes,
            env=env or {},
        )
    return _make


def writer_code(size: int, exit_code: int = 0) -> str:
    """Child code that writes `size` bytes to argv[1] then exits."""
    return (
        "import sys\n"
        f"open(sys.argv[1], 'w').write('x' * {size})\n"
        f"sys.exit({exit_code})\n"
    )
