"""Per-agent conversation and command history.

Storage Structure
-----------------
<workspace_root>/<workspace_id>/agents/<agent_id>/
├── conversation.json          # ConversationMessage array, capped
├── commands.json              # CommandExecution array, capped
└── checkpoint-restore.json    # Written when a checkpoint is restored

Both logs are append-only from the caller's point of view; each append
rewrites the file atomically. There is a single writer per (workspace, agent)
by convention, turns within one conversation being serialized by the caller.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agentdeck.atomic import atomic_write_json, read_json
from agentdeck.types import AgentId, Role, WorkspaceId, check_id

logger = logging.getLogger(__name__)

CONVERSATION_FILE = "conversation.json"
COMMANDS_FILE = "commands.json"
RESTORE_MARKER_FILE = "checkpoint-restore.json"

DEFAULT_CAP = 50
DEFAULT_COMMAND_CAP = 200


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_message_id(prefix: str = "msg") -> str:
    """Generate an id like ``msg_1760871234567_3fa9c2``."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


@dataclass(frozen=True)
class ConversationMessage:
    """One entry in an agent's conversation log.

    Assistant messages carry backend metadata (backend name, session id,
    usage, tool activity, success flag).
    """

    id: str
    role: Role
    content: str
    timestamp: str = field(default_factory=_now_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, role: Role, content: str, metadata: dict[str, Any] | None = None) -> "ConversationMessage":
        return cls(id=new_message_id(), role=role, content=content, metadata=metadata or {})

    @property
    def session_id(self) -> str | None:
        value = self.metadata.get("session_id")
        return value if isinstance(value, str) and value else None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "role": self.role,
            "content": self.content,
        }
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationMessage":
        return cls(
            id=str(data.get("id") or new_message_id()),
            role=data.get("role", "user"),
            content=str(data.get("content", "")),
            timestamp=data.get("timestamp") or _now_iso(),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class CommandExecution:
    """A tool or command the agent ran, used for performance metrics."""

    id: str
    command_id: str
    timestamp: str = field(default_factory=_now_iso)
    input_params: dict[str, Any] = field(default_factory=dict)
    output: str = ""
    success: bool = True
    error_message: str | None = None
    execution_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "command_id": self.command_id,
            "timestamp": self.timestamp,
            "input_params": self.input_params,
            "output": self.output,
            "success": self.success,
            "execution_time_ms": self.execution_time_ms,
        }
        if self.error_message:
            data["error_message"] = self.error_message
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CommandExecution":
        return cls(
            id=str(data.get("id") or new_message_id("cmd")),
            command_id=str(data.get("command_id", "unknown")),
            timestamp=data.get("timestamp") or _now_iso(),
            input_params=dict(data.get("input_params") or {}),
            output=str(data.get("output", "")),
            success=bool(data.get("success", True)),
            error_message=data.get("error_message"),
            execution_time_ms=float(data.get("execution_time_ms") or 0.0),
        )


def latest_session_id(history: list[ConversationMessage]) -> str | None:
    """Session id from the most recent message that recorded one."""
    for message in reversed(history):
        if message.session_id:
            return message.session_id
    return None


class ConversationStore:
    """Read and append conversation/command logs under a workspace root."""

    def __init__(self, workspace_root: Path, cap: int = DEFAULT_CAP, command_cap: int = DEFAULT_COMMAND_CAP):
        self.workspace_root = Path(workspace_root)
        self.cap = cap
        self.command_cap = command_cap

    def agent_dir(self, workspace_id: WorkspaceId | str, agent_id: AgentId | str) -> Path:
        workspace = check_id(workspace_id, "workspace id")
        return self.workspace_root / workspace / "agents" / check_id(agent_id, "agent id")

    # ------------------------------------------------------------------
    # Conversation log
    # ------------------------------------------------------------------

    def load_history(self, workspace_id: str, agent_id: str) -> list[ConversationMessage]:
        """Load the conversation log, oldest first. Missing log = empty."""
        data = read_json(self.agent_dir(workspace_id, agent_id) / CONVERSATION_FILE, default=[])
        if not isinstance(data, list):
            logger.warning(f"Conversation log for {workspace_id}/{agent_id} is not a list, ignoring")
            return []
        return [ConversationMessage.from_dict(item) for item in data if isinstance(item, dict)]

    def append_messages(self, workspace_id: str, agent_id: str, *messages: ConversationMessage) -> None:
        """Append messages, trimming the oldest beyond the cap."""
        history = self.load_history(workspace_id, agent_id)
        history.extend(messages)
        if len(history) > self.cap:
            dropped = len(history) - self.cap
            history = history[dropped:]
            logger.debug(f"Trimmed {dropped} message(s) from {workspace_id}/{agent_id}")
        self.replace_history(workspace_id, agent_id, history)

    def replace_history(self, workspace_id: str, agent_id: str, messages: list[ConversationMessage]) -> None:
        path = self.agent_dir(workspace_id, agent_id) / CONVERSATION_FILE
        atomic_write_json(path, [m.to_dict() for m in messages]).unwrap()

    # ------------------------------------------------------------------
    # Command history
    # ------------------------------------------------------------------

    def load_commands(self, workspace_id: str, agent_id: str) -> list[CommandExecution]:
        data = read_json(self.agent_dir(workspace_id, agent_id) / COMMANDS_FILE, default=[])
        if not isinstance(data, list):
            return []
        return [CommandExecution.from_dict(item) for item in data if isinstance(item, dict)]

    def append_commands(self, workspace_id: str, agent_id: str, *commands: CommandExecution) -> None:
        """Append command executions, trimming the oldest beyond ``command_cap``."""
        if not commands:
            return
        existing = self.load_commands(workspace_id, agent_id)
        existing.extend(commands)
        if len(existing) > self.command_cap:
            dropped = len(existing) - self.command_cap
            existing = existing[dropped:]
            logger.debug(f"Trimmed {dropped} command(s) from {workspace_id}/{agent_id}")
        self.replace_commands(workspace_id, agent_id, existing)

    def replace_commands(self, workspace_id: str, agent_id: str, commands: list[CommandExecution]) -> None:
        path = self.agent_dir(workspace_id, agent_id) / COMMANDS_FILE
        atomic_write_json(path, [c.to_dict() for c in commands]).unwrap()

    # ------------------------------------------------------------------
    # Restore marker
    # ------------------------------------------------------------------

    def write_restore_marker(self, workspace_id: str, agent_id: str, marker: dict[str, Any]) -> Path:
        path = self.agent_dir(workspace_id, agent_id) / RESTORE_MARKER_FILE
        return atomic_write_json(path, marker).unwrap()

    def read_restore_marker(self, workspace_id: str, agent_id: str) -> dict[str, Any] | None:
        return read_json(self.agent_dir(workspace_id, agent_id) / RESTORE_MARKER_FILE)
