"""Tests for agentdeck.backends: invocations, prompts, probes, fallback."""

import json
from pathlib import Path

import pytest

from agentdeck.backends import ADAPTERS, build_adapters
from agentdeck.backends.base import PromptRequest
from agentdeck.backends.claude import ClaudeAdapter, permission_rules
from agentdeck.backends.fallback import failure_message, generate_fallback, word_stream
from agentdeck.backends.gemini import GeminiAdapter
from agentdeck.config import DeckConfig
from agentdeck.conversation import ConversationMessage
from agentdeck.errors import BackendExitError, BackendTimeout
from agentdeck.events import AssistantText
from agentdeck.workspace import PermissionBundle


def history(n: int) -> tuple[ConversationMessage, ...]:
    messages = []
    for i in range(n):
        role = "user" if i % 2 == 0 else "assistant"
        messages.append(ConversationMessage.create(role, f"turn {i}"))
    return tuple(messages)


@pytest.fixture
def request_for(tmp_path: Path):
    def make(**overrides) -> PromptRequest:
        values = {
            "system_prompt": "You are helpful.",
            "user_message": "What does main.py do?",
            "workspace_path": tmp_path / "ws1",
            "agent_id": "agent-1",
        }
        values.update(overrides)
        return PromptRequest(**values)

    return make


# =============================================================================
# Claude
# =============================================================================


class TestClaudeAdapter:
    def test_fresh_session_invocation(self, request_for):
        adapter = ClaudeAdapter(binary="claude", timeout=300)
        request = request_for(history=history(2))

        invocation = adapter.build_invocation(request)

        assert invocation.command == "claude"
        assert invocation.args == ("--print", "--output-format", "stream-json", "--verbose")
        assert invocation.stdin.startswith("You are helpful.")
        assert "CONVERSATION SO FAR:" in invocation.stdin
        assert invocation.stdin.rstrip().endswith("USER: What does main.py do?")
        assert invocation.cwd == request.workspace_path

    def test_resume_sends_only_new_message(self, request_for):
        adapter = ClaudeAdapter(binary="claude")

        invocation = adapter.build_invocation(request_for(history=history(4), session_id="sess-9"))

        assert invocation.args[-2:] == ("--resume", "sess-9")
        assert invocation.stdin == "What does main.py do?"

    def test_model_flag(self, request_for):
        invocation = ClaudeAdapter(binary="claude", model="opus").build_invocation(request_for())

        assert "--model" in invocation.args
        assert invocation.args[invocation.args.index("--model") + 1] == "opus"

    def test_writes_settings_and_points_env_at_them(self, request_for):
        request = request_for()

        invocation = ClaudeAdapter(binary="claude").build_invocation(request)

        config_dir = request.workspace_path / ".agentdeck" / "agents" / "agent-1" / "claude"
        assert invocation.env["CLAUDE_CONFIG_DIR"] == str(config_dir)
        settings = json.loads((config_dir / "settings.json").read_text())
        assert "Bash(sudo:*)" in settings["permissions"]["deny"]
        assert settings["env"]["AGENTDECK_AGENT_ID"] == "agent-1"

    def test_supports_resume(self):
        assert ClaudeAdapter.supports_resume
        assert not GeminiAdapter.supports_resume


class TestPermissionRules:
    def test_reviewer_edits_feedback_only(self):
        rules = permission_rules(PermissionBundle.for_project_type("review"))

        assert "Edit(target/**)" not in rules["allow"]
        assert "Edit(feedback/**)" in rules["allow"]
        assert "Bash(git commit:*)" in rules["deny"]

    def test_developer_can_edit_target(self):
        rules = permission_rules(PermissionBundle())

        assert "Edit(target/**)" in rules["allow"]
        assert "Bash(git commit:*)" in rules["allow"]
        assert "Bash(npm install:*)" in rules["deny"]


# =============================================================================
# Gemini
# =============================================================================


class TestGeminiAdapter:
    def test_history_window_limits_replay(self, request_for):
        adapter = GeminiAdapter(binary="gemini", history_window=8)

        invocation = adapter.build_invocation(request_for(history=history(12)))

        assert "turn 3" not in invocation.stdin
        assert "turn 4" in invocation.stdin
        assert "turn 11" in invocation.stdin
        assert invocation.args == ()

    def test_zero_window_sends_no_history(self, request_for):
        adapter = GeminiAdapter(binary="gemini", history_window=0)

        invocation = adapter.build_invocation(request_for(history=history(3)))

        assert "CONVERSATION SO FAR" not in invocation.stdin

    def test_system_messages_not_replayed(self, request_for):
        adapter = GeminiAdapter(binary="gemini")
        messages = (ConversationMessage.create("system", "internal note"), *history(2))

        invocation = adapter.build_invocation(request_for(history=messages))

        assert "internal note" not in invocation.stdin

    def test_settings_env(self, request_for):
        request = request_for()

        invocation = GeminiAdapter(binary="gemini").build_invocation(request)

        path = Path(invocation.env["GEMINI_CLI_SYSTEM_SETTINGS_PATH"])
        assert path == request.workspace_path / ".agentdeck" / "agents" / "agent-1" / "gemini" / "settings.json"
        assert "ShellTool(sudo)" in json.loads(path.read_text())["excludeTools"]

    def test_plain_lines_are_text(self):
        assert GeminiAdapter(binary="gemini").decode_line("Hello") == [AssistantText("Hello\n")]

    def test_model_switch_notice_dropped(self):
        adapter = GeminiAdapter(binary="gemini")

        assert adapter.decode_line("Slow response times detected. Switching to gemini-2.5-flash") == []


# =============================================================================
# Availability and registry
# =============================================================================


class TestAvailability:
    @pytest.mark.asyncio
    async def test_available_backend(self, fake_claude: Path):
        assert await ClaudeAdapter(binary=str(fake_claude), probe_timeout=10).check_availability()

    @pytest.mark.asyncio
    async def test_failing_probe(self, missing_backend: Path):
        assert not await ClaudeAdapter(binary=str(missing_backend), probe_timeout=10).check_availability()

    @pytest.mark.asyncio
    async def test_missing_binary_never_raises(self, tmp_path: Path):
        assert not await GeminiAdapter(binary=str(tmp_path / "nope")).check_availability()

    @pytest.mark.asyncio
    async def test_probe_timeout(self, make_script):
        script = make_script("hang", "import time\ntime.sleep(30)\n")

        assert not await GeminiAdapter(binary=str(script), probe_timeout=0.5).check_availability()

    @pytest.mark.asyncio
    async def test_version_output_counts_despite_exit_code(self, make_script):
        script = make_script("odd", "import sys\nprint('gemini 0.1.2')\nsys.exit(1)\n")

        assert await GeminiAdapter(binary=str(script), probe_timeout=10).check_availability()


class TestBuildAdapters:
    def test_priority_order(self):
        adapters = build_adapters(DeckConfig(backend_priority=["gemini", "claude"], gemini_timeout=7))

        assert [a.name for a in adapters] == ["gemini", "claude"]
        assert adapters[0].timeout == 7

    def test_unknown_names_skipped(self):
        assert [a.name for a in build_adapters(DeckConfig(backend_priority=["gpt", "claude"]))] == ["claude"]

    def test_registry(self):
        assert set(ADAPTERS) == {"claude", "gemini"}


# =============================================================================
# Fallback
# =============================================================================


class TestFallback:
    PROBES = {"claude": False, "gemini": False}

    def test_help(self):
        text = generate_fallback("help", (), self.PROBES)

        assert "status" in text and "version" in text

    def test_status_lists_probes(self):
        text = generate_fallback("status", history(3), self.PROBES)

        assert text.startswith("Backend status:")
        assert "- claude: not available" in text
        assert "Messages in this conversation: 3" in text

    def test_version(self):
        from agentdeck import __version__

        assert generate_fallback("version", (), self.PROBES) == f"agentdeck {__version__}"

    def test_git_commands_not_run(self):
        assert "git status" in generate_fallback("git status", (), self.PROBES)

    def test_general_question_with_topic_hint(self):
        text = generate_fallback("Why does this test fail?", (), self.PROBES)

        assert text.startswith('I understand you\'re asking: "Why does this test fail?"')
        assert "For tests:" in text

    def test_deterministic(self):
        assert generate_fallback("hello", (), self.PROBES) == generate_fallback("hello", (), self.PROBES)

    def test_failure_message_timeout(self):
        text = failure_message(BackendTimeout("slow", timeout=120.0), "gemini", "hi")

        assert "gemini did not respond within 120 seconds." in text
        assert '"hi"' in text

    def test_failure_message_exit(self):
        text = failure_message(BackendExitError("claude exited with code 1"), "claude", "hi")

        assert "claude failed: claude exited with code 1" in text

    @pytest.mark.asyncio
    async def test_word_stream_preserves_text(self):
        chunks = [c async for c in word_stream("one two  three", delay=0)]

        assert len(chunks) == 4
        assert "".join(chunks) == "one two  three"
