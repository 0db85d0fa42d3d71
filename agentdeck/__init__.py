"""agentdeck: Orchestration layer for command-line AI agent backends."""

__version__ = "0.3.0"

# Branded types for type-safe IDs
from agentdeck.types import AgentId, CheckpointId, SessionId, WorkspaceId

__all__ = [
    "__version__",
    "AgentId",
    "CheckpointId",
    "SessionId",
    "WorkspaceId",
]
