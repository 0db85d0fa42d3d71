"""Claude CLI backend (``claude --print --output-format stream-json``)."""

import logging

from agentdeck.backends.base import BackendAdapter, Invocation, PromptRequest
from agentdeck.events import StreamEvent
from agentdeck.stream import decode_claude_line
from agentdeck.workspace import PermissionBundle

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "CLAUDE_CONFIG_DIR"


def permission_rules(bundle: PermissionBundle) -> dict[str, list[str]]:
    """Translate a permission bundle into Claude allow/deny tool rules."""
    allow = ["Read", "Grep", "Glob", "LS"]
    if bundle.write:
        allow += [f"Edit({pattern})" for pattern in bundle.write]
        allow += [f"Write({pattern})" for pattern in bundle.write]
    allow += [f"Bash({cmd}:*)" for cmd in bundle.commands_allowed if cmd != "git"]
    allow += [f"Bash(git {op}:*)" for op in bundle.git_allowed]

    deny = [f"Bash({cmd}:*)" for cmd in bundle.commands_forbidden]
    deny += [f"Bash(git {op}:*)" for op in bundle.git_requires_approval]
    if not bundle.can_install_packages:
        deny += ["Bash(pip install:*)", "Bash(npm install:*)"]
    deny.append("Read(../**)")
    return {"allow": allow, "deny": deny}


class ClaudeAdapter(BackendAdapter):
    """Streams structured events and resumes sessions by id."""

    name = "claude"
    supports_resume = True

    def build_invocation(self, request: PromptRequest) -> Invocation:
        config_dir = self.artifacts_dir(request.workspace_path, request.agent_id)
        self.write_settings(
            request.workspace_path,
            request.agent_id,
            {
                "permissions": permission_rules(request.permissions),
                "env": {"AGENTDECK_AGENT_ID": request.agent_id},
            },
        )

        args = ["--print", "--output-format", "stream-json", "--verbose"]
        if self.model:
            args += ["--model", self.model]

        if request.session_id:
            # The backend holds the transcript; replaying it would duplicate turns
            args += ["--resume", request.session_id]
            prompt = request.user_message
            logger.debug(f"Resuming claude session {request.session_id} for {request.agent_id}")
        else:
            prompt = self.render_prompt(request, include_history=True)

        env = self.base_env()
        env[CONFIG_DIR_ENV] = str(config_dir)
        return Invocation(
            command=self.binary,
            args=tuple(args),
            stdin=prompt,
            cwd=request.workspace_path,
            env=env,
        )

    def decode_line(self, line: str) -> list[StreamEvent]:
        return decode_claude_line(line)
