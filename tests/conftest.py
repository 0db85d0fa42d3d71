"""Shared fixtures: isolated config and fake backend CLIs.

Fake backends are small executable Python scripts so real subprocess
lifecycles (pipes, exit codes, signals) are exercised.
"""

import json
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from agentdeck.config import DeckConfig


def write_script(path: Path, body: str) -> Path:
    """Write an executable Python script running ``body``."""
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


CLAUDE_OK = """
import json, sys

if "--version" in sys.argv:
    print("1.0.42 (Claude Code)")
    sys.exit(0)

prompt = sys.stdin.read()
session = "sess-resumed" if "--resume" in sys.argv else "sess-1"

def emit(record):
    print(json.dumps(record), flush=True)

emit({"type": "system", "subtype": "init", "session_id": session, "model": "claude-test", "tools": ["Bash"]})
emit({"type": "assistant", "message": {"content": [
    {"type": "text", "text": "Hello "},
    {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "git status"}},
]}})
emit({"type": "user", "message": {"content": [
    {"type": "tool_result", "tool_use_id": "toolu_1", "content": "On branch main", "is_error": False},
]}})
emit({"type": "assistant", "message": {"content": [{"type": "text", "text": "world"}],
      "usage": {"input_tokens": 10, "output_tokens": 5}}})
emit({"type": "result", "subtype": "success", "is_error": False, "result": "Hello world",
      "session_id": session, "total_cost_usd": 0.01, "duration_ms": 12, "num_turns": 1})
sys.stderr.write("PROMPT_BYTES=%d\\n" % len(prompt))
"""

CLAUDE_SLOW = """
import sys, time

if "--version" in sys.argv:
    print("1.0.42")
    sys.exit(0)

sys.stdin.read()
print('{"type": "system", "subtype": "init", "session_id": "slow"}', flush=True)
time.sleep(30)
"""

CLAUDE_STUBBORN = """
import os, signal, sys, time

if "--version" in sys.argv:
    print("1.0.42")
    sys.exit(0)

signal.signal(signal.SIGTERM, signal.SIG_IGN)
with open(sys.argv[0] + ".pid", "w") as f:
    f.write(str(os.getpid()))
sys.stdin.read()
print('{"type": "system", "subtype": "init", "session_id": "stubborn"}', flush=True)
time.sleep(60)
"""

GEMINI_OK = """
import sys

if "--version" in sys.argv:
    print("0.9.0")
    sys.exit(0)

prompt = sys.stdin.read()
print("Slow response times detected. Switching to gemini-flash.", flush=True)
print("Gemini says hi", flush=True)
print("lines: %d" % len(prompt.splitlines()), flush=True)
"""

UNAVAILABLE = """
import sys
sys.stderr.write("not installed\\n")
sys.exit(127)
"""

FAILING = """
import sys

if "--version" in sys.argv:
    print("2.0.0")
    sys.exit(0)

sys.stdin.read()
sys.stderr.write("Error: authentication required\\n")
sys.exit(1)
"""


@pytest.fixture
def backend_dir(tmp_path: Path) -> Path:
    path = tmp_path / "bin"
    path.mkdir()
    return path


@pytest.fixture
def fake_claude(backend_dir: Path) -> Path:
    return write_script(backend_dir / "claude", CLAUDE_OK)


@pytest.fixture
def slow_claude(backend_dir: Path) -> Path:
    return write_script(backend_dir / "claude-slow", CLAUDE_SLOW)


@pytest.fixture
def stubborn_claude(backend_dir: Path) -> Path:
    """Ignores SIGTERM and writes its pid to ``<script>.pid``."""
    return write_script(backend_dir / "claude-stubborn", CLAUDE_STUBBORN)


@pytest.fixture
def fake_gemini(backend_dir: Path) -> Path:
    return write_script(backend_dir / "gemini", GEMINI_OK)


@pytest.fixture
def missing_backend(backend_dir: Path) -> Path:
    return write_script(backend_dir / "missing", UNAVAILABLE)


@pytest.fixture
def failing_backend(backend_dir: Path) -> Path:
    return write_script(backend_dir / "failing", FAILING)


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    """Workspace root with one workspace ``ws1`` containing a manifest."""
    root = tmp_path / "workspaces"
    ws = root / "ws1"
    (ws / "context").mkdir(parents=True)
    (ws / "target").mkdir()
    (ws / "context" / "context-manifest.json").write_text(
        json.dumps(
            {
                "name": "Demo",
                "description": "A demo workspace for the API service",
                "context_items": [
                    {"title": "API notes", "type": "document"},
                    {"title": "Ticket 42", "type": "jira"},
                ],
            }
        )
    )
    (ws / "target" / "summary.md").write_text("A small Python API.\n")
    return root


@pytest.fixture
def deck_config(tmp_path: Path, workspace_root: Path, fake_claude: Path, fake_gemini: Path) -> DeckConfig:
    return DeckConfig(
        workspace_root=str(workspace_root),
        checkpoints_dir=str(tmp_path / "checkpoints"),
        claude_binary=str(fake_claude),
        gemini_binary=str(fake_gemini),
        claude_timeout=20.0,
        gemini_timeout=20.0,
        probe_timeout=10.0,
        kill_grace=2.0,
        fallback_word_delay=0.0,
    )


@pytest.fixture
def isolated_home(tmp_path: Path, monkeypatch):
    """Point the user-level config dir at a temp directory."""
    home = tmp_path / ".agentdeck"
    monkeypatch.setattr("agentdeck.config.AGENTDECK_DIR", home)
    monkeypatch.setattr("agentdeck.cli.AGENTDECK_DIR", home)
    monkeypatch.delenv("AGENTDECK_WORKSPACE_DIR", raising=False)
    monkeypatch.delenv("AGENTDECK_CHECKPOINTS_DIR", raising=False)
    return home


@pytest.fixture
def make_script(tmp_path: Path):
    """Factory writing executable scripts into ``tmp_path``."""

    def make(name: str, body: str) -> Path:
        return write_script(tmp_path / name, body)

    return make
