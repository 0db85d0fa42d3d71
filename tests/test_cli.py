"""Tests for the agentdeck CLI."""

from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from agentdeck import __version__
from agentdeck.checkpoint_store import CheckpointStore
from agentdeck.cli import main


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_args(isolated_home: Path, tmp_path: Path, workspace_root: Path, fake_claude: Path, fake_gemini: Path):
    """User config pointing at the fake backends; returns the global CLI options."""
    isolated_home.mkdir(parents=True, exist_ok=True)
    (isolated_home / "config.yaml").write_text(
        yaml.safe_dump(
            {
                "claude_binary": str(fake_claude),
                "gemini_binary": str(fake_gemini),
                "checkpoints_dir": str(tmp_path / "checkpoints"),
                "fallback_word_delay": 0.0,
            }
        )
    )
    return ["--workspace-root", str(workspace_root)]


def checkpoint_ids(tmp_path: Path) -> list[str]:
    return [s.id for s in CheckpointStore(tmp_path / "checkpoints").load_summaries()]


class TestBasics:
    def test_version(self, runner: CliRunner):
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_backends(self, runner: CliRunner, cli_args):
        result = runner.invoke(main, [*cli_args, "backends"])

        assert result.exit_code == 0
        assert "claude" in result.output
        assert "gemini" in result.output
        assert "unavailable" not in result.output


class TestAsk:
    def test_streaming(self, runner: CliRunner, cli_args):
        result = runner.invoke(main, [*cli_args, "ask", "ws1", "a1", "hello"])

        assert result.exit_code == 0
        assert "Hello world" in result.output
        assert "AGENT_METADATA" not in result.output

    def test_show_tools(self, runner: CliRunner, cli_args):
        result = runner.invoke(main, [*cli_args, "ask", "ws1", "a1", "hello", "--show-tools"])

        assert result.exit_code == 0
        assert "> Bash" in result.output
        assert "On branch main" in result.output

    def test_no_stream(self, runner: CliRunner, cli_args):
        result = runner.invoke(main, [*cli_args, "ask", "ws1", "a1", "hello", "--no-stream", "-b", "gemini"])

        assert result.exit_code == 0
        assert "Gemini says hi" in result.output
        assert "gemini completed" in result.output

    def test_history(self, runner: CliRunner, cli_args):
        runner.invoke(main, [*cli_args, "ask", "ws1", "a1", "hello"])

        result = runner.invoke(main, [*cli_args, "history", "ws1", "a1"])

        assert result.exit_code == 0
        assert "user" in result.output
        assert "assistant" in result.output
        assert "Hello world" in result.output

    def test_unsafe_agent_id(self, runner: CliRunner, cli_args):
        result = runner.invoke(main, [*cli_args, "ask", "ws1", "../outside", "hello"])

        assert result.exit_code == 1
        assert "INVALID_ID" in result.output

        result = runner.invoke(main, [*cli_args, "history", "..", "a1"])

        assert result.exit_code == 1
        assert "INVALID_ID" in result.output

    def test_empty_history(self, runner: CliRunner, cli_args):
        result = runner.invoke(main, [*cli_args, "history", "ws1", "nobody"])

        assert result.exit_code == 0
        assert "No history" in result.output


class TestCheckpointCommands:
    def test_create_list_show_rm(self, runner: CliRunner, cli_args, tmp_path: Path):
        runner.invoke(main, [*cli_args, "ask", "ws1", "a1", "hello"])

        result = runner.invoke(main, [*cli_args, "checkpoint", "create", "ws1", "a1", "Greeting", "-t", "demo"])
        assert result.exit_code == 0, result.output
        assert "Created checkpoint" in result.output
        [cp_id] = checkpoint_ids(tmp_path)

        result = runner.invoke(main, [*cli_args, "checkpoint", "list"])
        assert result.exit_code == 0
        assert "Greeting" in result.output

        result = runner.invoke(main, [*cli_args, "checkpoint", "show", cp_id])
        assert result.exit_code == 0
        assert "Greeting" in result.output
        assert "Tags: demo" in result.output

        result = runner.invoke(main, [*cli_args, "checkpoint", "rm", cp_id])
        assert result.exit_code == 0
        assert "Deleted" in result.output
        assert checkpoint_ids(tmp_path) == []

    def test_create_without_conversation_fails(self, runner: CliRunner, cli_args):
        result = runner.invoke(main, [*cli_args, "checkpoint", "create", "ws1", "nobody", "Nothing"])

        assert result.exit_code == 1
        assert "EMPTY_CONVERSATION" in result.output

    def test_show_missing(self, runner: CliRunner, cli_args):
        result = runner.invoke(main, [*cli_args, "checkpoint", "show", "missing-id"])

        assert result.exit_code == 1
        assert "CHECKPOINT_NOT_FOUND" in result.output

    def test_search_and_stats(self, runner: CliRunner, cli_args):
        runner.invoke(main, [*cli_args, "ask", "ws1", "a1", "hello"])
        runner.invoke(main, [*cli_args, "checkpoint", "create", "ws1", "a1", "Greeting", "-t", "demo"])

        result = runner.invoke(main, [*cli_args, "checkpoint", "search", "greeting", "--tag", "demo"])
        assert result.exit_code == 0
        assert "1 match(es)" in result.output

        result = runner.invoke(main, [*cli_args, "checkpoint", "search", "nothing-like-this"])
        assert result.exit_code == 0
        assert "No matching checkpoints" in result.output

        result = runner.invoke(main, [*cli_args, "checkpoint", "stats"])
        assert result.exit_code == 0
        assert "Checkpoints: 1" in result.output

    def test_restore(self, runner: CliRunner, cli_args, tmp_path: Path):
        runner.invoke(main, [*cli_args, "ask", "ws1", "a1", "hello"])
        runner.invoke(main, [*cli_args, "checkpoint", "create", "ws1", "a1", "Greeting"])
        [cp_id] = checkpoint_ids(tmp_path)

        cancelled = runner.invoke(main, [*cli_args, "checkpoint", "restore", cp_id, "ws1", "a2"], input="n\n")
        assert "Cancelled" in cancelled.output

        result = runner.invoke(main, [*cli_args, "checkpoint", "restore", cp_id, "ws1", "a2", "--force"])
        assert result.exit_code == 0
        assert "Restored 2 messages" in result.output

        history = runner.invoke(main, [*cli_args, "history", "ws1", "a2"])
        assert "Hello world" in history.output

    def test_empty_list(self, runner: CliRunner, cli_args):
        result = runner.invoke(main, [*cli_args, "checkpoint", "list"])

        assert result.exit_code == 0
        assert "No checkpoints found" in result.output


class TestConfigCommands:
    def test_set_and_list(self, runner: CliRunner, isolated_home: Path):
        result = runner.invoke(main, ["config", "set", "claude_timeout", "600"])
        assert result.exit_code == 0

        saved = yaml.safe_load((isolated_home / "config.yaml").read_text())
        assert saved == {"claude_timeout": 600.0}

        result = runner.invoke(main, ["config", "list"])
        assert "claude_timeout: 600.0 (default: 300.0)" in result.output

    def test_set_list_value(self, runner: CliRunner, isolated_home: Path):
        result = runner.invoke(main, ["config", "set", "backend-priority", "gemini, claude"])

        assert result.exit_code == 0
        saved = yaml.safe_load((isolated_home / "config.yaml").read_text())
        assert saved["backend_priority"] == ["gemini", "claude"]

    def test_unknown_key(self, runner: CliRunner, isolated_home: Path):
        result = runner.invoke(main, ["config", "set", "nope", "1"])

        assert result.exit_code == 1
        assert "Unknown config key" in result.output

    def test_invalid_value(self, runner: CliRunner, isolated_home: Path):
        result = runner.invoke(main, ["config", "set", "conversation_cap", "many"])

        assert result.exit_code == 1
        assert "Invalid value" in result.output

    def test_workspace_level(self, runner: CliRunner, isolated_home: Path, workspace_root: Path):
        result = runner.invoke(
            main, ["--workspace-root", str(workspace_root), "config", "set", "history_window", "4", "--workspace"]
        )

        assert result.exit_code == 0
        saved = yaml.safe_load((workspace_root / ".agentdeck" / "config.yaml").read_text())
        assert saved == {"history_window": 4}
        assert not (isolated_home / "config.yaml").exists()

    def test_workspace_level_needs_root(self, runner: CliRunner, isolated_home: Path):
        result = runner.invoke(main, ["config", "set", "history_window", "4", "--workspace"])

        assert result.exit_code == 1
