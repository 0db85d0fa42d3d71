"""Backend adapter interface.

An adapter knows how to talk to one CLI: how to probe it, how to turn a
prompt into a command line, and how to decode what it prints. Everything
else (spawning, deadlines, persistence) is shared and never branches on
which backend is in use.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

from agentdeck.atomic import atomic_write_json
from agentdeck.conversation import ConversationMessage
from agentdeck.errors import SpawnFailure
from agentdeck.events import StreamEvent
from agentdeck.stream import BENIGN_STDERR_PATTERNS, ERROR_STDERR_PATTERNS, is_error_stderr
from agentdeck.supervisor import probe_command
from agentdeck.workspace import PermissionBundle

logger = logging.getLogger(__name__)

ARTIFACTS_DIR = Path(".agentdeck") / "agents"

_VERSION_RE = re.compile(r"\d+\.\d+")


@dataclass(frozen=True)
class PromptRequest:
    """Everything an adapter needs to build one invocation."""

    system_prompt: str
    user_message: str
    workspace_path: Path
    agent_id: str
    history: Sequence[ConversationMessage] = ()
    session_id: str | None = None
    permissions: PermissionBundle = field(default_factory=PermissionBundle)


@dataclass(frozen=True)
class Invocation:
    command: str
    args: tuple[str, ...]
    stdin: str
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)


class BackendAdapter(ABC):
    """Base class for CLI backends.

    Subclasses set ``name`` and implement ``build_invocation`` and
    ``decode_line``. ``supports_resume`` marks backends that keep their own
    session state, in which case the prompt carries only the new message.
    """

    name: ClassVar[str]
    supports_resume: ClassVar[bool] = False
    error_patterns: ClassVar[tuple[str, ...]] = ERROR_STDERR_PATTERNS
    benign_patterns: ClassVar[tuple[str, ...]] = BENIGN_STDERR_PATTERNS

    def __init__(
        self,
        binary: str,
        timeout: float = 300.0,
        probe_timeout: float = 5.0,
        model: str = "",
        history_window: int = 8,
    ):
        self.binary = binary
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self.model = model
        self.history_window = history_window

    def __repr__(self) -> str:
        return f"{type(self).__name__}(binary={self.binary!r}, timeout={self.timeout})"

    async def check_availability(self) -> bool:
        """Probe ``<binary> --version``. Never raises."""
        try:
            result = await probe_command(self.binary, ["--version"], timeout=self.probe_timeout)
        except SpawnFailure as e:
            logger.debug(f"{self.name} unavailable: {e.message}")
            return False

        if result.timed_out:
            logger.info(f"{self.name} probe timed out after {self.probe_timeout}s")
            return False
        available = result.exit_code == 0 or bool(_VERSION_RE.search(result.stdout))
        logger.debug(f"{self.name} probe: exit={result.exit_code} available={available}")
        return available

    @abstractmethod
    def build_invocation(self, request: PromptRequest) -> Invocation:
        """Build the command line, environment, and stdin for a request."""

    @abstractmethod
    def decode_line(self, line: str) -> list[StreamEvent]:
        """Decode one stdout line into events."""

    def is_error_stderr(self, line: str) -> bool:
        return is_error_stderr(line, self.error_patterns, self.benign_patterns)

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def artifacts_dir(self, workspace_path: Path, agent_id: str) -> Path:
        """Per-agent directory for this backend's generated settings."""
        return workspace_path / ARTIFACTS_DIR / agent_id / self.name

    def write_settings(self, workspace_path: Path, agent_id: str, settings: dict) -> Path:
        """Write the per-agent settings file the CLI is pointed at.

        Raises:
            SpawnFailure: The file could not be written, so the backend cannot start
        """
        path = self.artifacts_dir(workspace_path, agent_id) / "settings.json"
        result = atomic_write_json(path, settings)
        if result.is_err():
            raise SpawnFailure(
                f"Could not write {self.name} settings: {result.unwrap_err().message}",
                command=self.binary,
                path=str(path),
            )
        return result.unwrap()

    def base_env(self) -> dict[str, str]:
        return dict(os.environ)

    def render_history(self, history: Sequence[ConversationMessage]) -> str:
        """Serialize the last ``history_window`` messages as a transcript."""
        if self.history_window <= 0:
            return ""
        window = [m for m in history if m.role in ("user", "assistant")][-self.history_window :]
        return "\n\n".join(f"{m.role.upper()}: {m.content}" for m in window)

    def render_prompt(self, request: PromptRequest, include_history: bool = True) -> str:
        parts = [request.system_prompt.strip()]
        if include_history and (transcript := self.render_history(request.history)):
            parts.append(f"CONVERSATION SO FAR:\n{transcript}")
        parts.append(f"USER: {request.user_message}")
        return "\n\n".join(p for p in parts if p) + "\n"
