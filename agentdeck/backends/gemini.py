"""Gemini CLI backend.

The gemini CLI prints plain text and keeps no resumable session, so recent
history is replayed inside every prompt.
"""

import logging

from agentdeck.backends.base import BackendAdapter, Invocation, PromptRequest
from agentdeck.events import AssistantText, StreamEvent

logger = logging.getLogger(__name__)

SETTINGS_PATH_ENV = "GEMINI_CLI_SYSTEM_SETTINGS_PATH"

# Printed on stdout when the CLI downgrades models under load
NOTICE_MARKERS = (
    "slow response times detected",
    "switching to",
    "falling back to",
    "generating with",
)


class GeminiAdapter(BackendAdapter):
    name = "gemini"
    supports_resume = False

    def build_invocation(self, request: PromptRequest) -> Invocation:
        settings_path = self.write_settings(
            request.workspace_path,
            request.agent_id,
            {
                "coreTools": ["ReadFileTool", "GlobTool", "SearchText"]
                + (["WriteFileTool", "EditTool"] if request.permissions.write else []),
                "excludeTools": [f"ShellTool({cmd})" for cmd in request.permissions.commands_forbidden],
            },
        )

        args = []
        if self.model:
            args += ["--model", self.model]

        env = self.base_env()
        env[SETTINGS_PATH_ENV] = str(settings_path)
        return Invocation(
            command=self.binary,
            args=tuple(args),
            stdin=self.render_prompt(request, include_history=True),
            cwd=request.workspace_path,
            env=env,
        )

    def decode_line(self, line: str) -> list[StreamEvent]:
        lowered = line.lower()
        if any(marker in lowered for marker in NOTICE_MARKERS):
            logger.info(f"gemini notice: {line.strip()}")
            return []
        return [AssistantText(text=line + "\n")]
