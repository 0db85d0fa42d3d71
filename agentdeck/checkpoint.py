"""Agent checkpoints.

A checkpoint freezes an agent's conversation, command history, workspace
snapshot, and derived expertise so the agent can be restored later (in the
same or another workspace) and so good checkpoints can be found again by
search.

A checkpoint is created once. Afterwards only ``usage_count``,
``last_used`` and ``analytics_summary`` change, through the store.

Derived fields (expertise areas, learned patterns, success indicators) are
keyword and command heuristics over the conversation, not model output.
"""

import logging
import re
import secrets
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from agentdeck.config import DeckConfig
from agentdeck.conversation import CommandExecution, ConversationMessage, ConversationStore
from agentdeck.errors import EmptyConversation, InvalidCheckpoint
from agentdeck.git import capture_git_state
from agentdeck.types import CheckpointId
from agentdeck.workspace import WorkspaceContextLoader

if TYPE_CHECKING:
    from agentdeck.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 150
RECOMMENDATION_THRESHOLD = 0.7


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def generate_checkpoint_id(title: str) -> CheckpointId:
    """Generate a checkpoint ID from timestamp, title, and a random suffix."""
    ts = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S")
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")[:40]
    return CheckpointId(f"{ts}_{slug}_{secrets.token_hex(3)}")


# ============================================================================
# Data Types
# ============================================================================


@dataclass(frozen=True)
class ConversationState:
    """The agent's conversation as it was when checkpointed."""

    messages: tuple[ConversationMessage, ...] = ()
    total_tokens: int = 0
    command_history: tuple[CommandExecution, ...] = ()
    knowledge_areas: tuple[str, ...] = ()
    learned_patterns: tuple[str, ...] = ()
    summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "total_tokens": self.total_tokens,
            "command_history": [c.to_dict() for c in self.command_history],
            "knowledge_areas": list(self.knowledge_areas),
            "learned_patterns": list(self.learned_patterns),
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationState":
        return cls(
            messages=tuple(ConversationMessage.from_dict(m) for m in data.get("messages", [])),
            total_tokens=int(data.get("total_tokens", 0)),
            command_history=tuple(CommandExecution.from_dict(c) for c in data.get("command_history", [])),
            knowledge_areas=tuple(data.get("knowledge_areas", [])),
            learned_patterns=tuple(data.get("learned_patterns", [])),
            summary=data.get("summary", ""),
        )


@dataclass(frozen=True)
class AgentConfiguration:
    model: str = ""
    permissions: dict[str, Any] = field(default_factory=dict)
    specialized_commands: tuple[str, ...] = ()
    context_understanding: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "permissions": self.permissions,
            "specialized_commands": list(self.specialized_commands),
            "context_understanding": self.context_understanding,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentConfiguration":
        return cls(
            model=data.get("model", ""),
            permissions=dict(data.get("permissions") or {}),
            specialized_commands=tuple(data.get("specialized_commands", [])),
            context_understanding=dict(data.get("context_understanding") or {}),
        )


@dataclass(frozen=True)
class PerformanceMetrics:
    """Command-derived performance of the checkpointed agent.

    ``success_rate`` is successful/total commands, 1.0 when none ran.
    """

    success_rate: float = 1.0
    avg_response_time: float = 0.0  # ms per command
    commands_executed: int = 0
    errors_encountered: int = 0
    tokens_processed: int = 0
    messages_exchanged: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_rate": self.success_rate,
            "avg_response_time": self.avg_response_time,
            "commands_executed": self.commands_executed,
            "errors_encountered": self.errors_encountered,
            "tokens_processed": self.tokens_processed,
            "messages_exchanged": self.messages_exchanged,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PerformanceMetrics":
        return cls(
            success_rate=float(data.get("success_rate", 1.0)),
            avg_response_time=float(data.get("avg_response_time", 0.0)),
            commands_executed=int(data.get("commands_executed", 0)),
            errors_encountered=int(data.get("errors_encountered", 0)),
            tokens_processed=int(data.get("tokens_processed", 0)),
            messages_exchanged=int(data.get("messages_exchanged", 0)),
        )


@dataclass(frozen=True)
class AnalyticsSummary:
    total_sessions: int = 1
    successful_restorations: int = 0
    avg_continuation_length: float = 0.0
    user_feedback_score: float = 0.0  # 0-5
    effectiveness_rating: float = 0.0  # 0-5
    most_common_use_cases: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_sessions": self.total_sessions,
            "successful_restorations": self.successful_restorations,
            "avg_continuation_length": self.avg_continuation_length,
            "user_feedback_score": self.user_feedback_score,
            "effectiveness_rating": self.effectiveness_rating,
            "most_common_use_cases": list(self.most_common_use_cases),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalyticsSummary":
        return cls(
            total_sessions=int(data.get("total_sessions", 1)),
            successful_restorations=int(data.get("successful_restorations", 0)),
            avg_continuation_length=float(data.get("avg_continuation_length", 0.0)),
            user_feedback_score=float(data.get("user_feedback_score", 0.0)),
            effectiveness_rating=float(data.get("effectiveness_rating", 0.0)),
            most_common_use_cases=tuple(data.get("most_common_use_cases", [])),
        )


@dataclass(frozen=True)
class AgentCheckpoint:
    """A restorable snapshot of one agent."""

    id: CheckpointId
    title: str
    description: str
    agent_type: str
    conversation_id: str
    workspace_id: str
    agent_id: str
    created_at: str
    created_by: str = "system"

    tags: tuple[str, ...] = ()
    expertise_areas: tuple[str, ...] = ()
    context_types: tuple[str, ...] = ()
    expertise_summary: str = ""
    success_indicators: tuple[str, ...] = ()

    workspace_context: dict[str, Any] = field(default_factory=dict)
    full_conversation_state: ConversationState = field(default_factory=ConversationState)
    agent_configuration: AgentConfiguration = field(default_factory=AgentConfiguration)
    performance_metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    analytics_summary: AnalyticsSummary = field(default_factory=AnalyticsSummary)

    usage_count: int = 0
    last_used: str | None = None

    @property
    def performance_score(self) -> float:
        return self.performance_metrics.success_rate

    def conversation_preview(self) -> str:
        messages = self.full_conversation_state.messages
        if not messages:
            return "No conversation preview available"
        content = messages[-1].content
        preview = content[:PREVIEW_LENGTH]
        return preview + "..." if len(preview) < len(content) else preview

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "agent_type": self.agent_type,
            "conversation_id": self.conversation_id,
            "workspace_id": self.workspace_id,
            "agent_id": self.agent_id,
            "created_at": self.created_at,
            "created_by": self.created_by,
            "tags": list(self.tags),
            "expertise_areas": list(self.expertise_areas),
            "context_types": list(self.context_types),
            "expertise_summary": self.expertise_summary,
            "success_indicators": list(self.success_indicators),
            "workspace_context": self.workspace_context,
            "full_conversation_state": self.full_conversation_state.to_dict(),
            "agent_configuration": self.agent_configuration.to_dict(),
            "performance_metrics": self.performance_metrics.to_dict(),
            "analytics_summary": self.analytics_summary.to_dict(),
            "usage_count": self.usage_count,
            "last_used": self.last_used,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentCheckpoint":
        return cls(
            id=CheckpointId(data["id"]),
            title=data.get("title", ""),
            description=data.get("description", ""),
            agent_type=data.get("agent_type", ""),
            conversation_id=data.get("conversation_id", ""),
            workspace_id=data.get("workspace_id", ""),
            agent_id=data.get("agent_id", ""),
            created_at=data.get("created_at", ""),
            created_by=data.get("created_by", "system"),
            tags=tuple(data.get("tags", [])),
            expertise_areas=tuple(data.get("expertise_areas", [])),
            context_types=tuple(data.get("context_types", [])),
            expertise_summary=data.get("expertise_summary", ""),
            success_indicators=tuple(data.get("success_indicators", [])),
            workspace_context=dict(data.get("workspace_context") or {}),
            full_conversation_state=ConversationState.from_dict(data.get("full_conversation_state") or {}),
            agent_configuration=AgentConfiguration.from_dict(data.get("agent_configuration") or {}),
            performance_metrics=PerformanceMetrics.from_dict(data.get("performance_metrics") or {}),
            analytics_summary=AnalyticsSummary.from_dict(data.get("analytics_summary") or {}),
            usage_count=int(data.get("usage_count", 0)),
            last_used=data.get("last_used"),
        )


@dataclass(frozen=True)
class CheckpointSummary:
    """Small projection of a checkpoint, what search reads."""

    id: CheckpointId
    title: str
    description: str
    agent_type: str
    tags: tuple[str, ...]
    context_types: tuple[str, ...]
    expertise_areas: tuple[str, ...]
    performance_score: float
    usage_count: int
    last_used: str | None
    conversation_preview: str
    created_by: str
    created_at: str

    @classmethod
    def from_checkpoint(cls, checkpoint: AgentCheckpoint) -> "CheckpointSummary":
        return cls(
            id=checkpoint.id,
            title=checkpoint.title,
            description=checkpoint.description,
            agent_type=checkpoint.agent_type,
            tags=checkpoint.tags,
            context_types=checkpoint.context_types,
            expertise_areas=checkpoint.expertise_areas,
            performance_score=checkpoint.performance_score,
            usage_count=checkpoint.usage_count,
            last_used=checkpoint.last_used,
            conversation_preview=checkpoint.conversation_preview(),
            created_by=checkpoint.created_by,
            created_at=checkpoint.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "agent_type": self.agent_type,
            "tags": list(self.tags),
            "context_types": list(self.context_types),
            "expertise_areas": list(self.expertise_areas),
            "performance_score": self.performance_score,
            "usage_count": self.usage_count,
            "last_used": self.last_used,
            "conversation_preview": self.conversation_preview,
            "created_by": self.created_by,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckpointSummary":
        return cls(
            id=CheckpointId(data["id"]),
            title=data.get("title", ""),
            description=data.get("description", ""),
            agent_type=data.get("agent_type", ""),
            tags=tuple(data.get("tags", [])),
            context_types=tuple(data.get("context_types", [])),
            expertise_areas=tuple(data.get("expertise_areas", [])),
            performance_score=float(data.get("performance_score", 0.0)),
            usage_count=int(data.get("usage_count", 0)),
            last_used=data.get("last_used"),
            conversation_preview=data.get("conversation_preview", ""),
            created_by=data.get("created_by", "system"),
            created_at=data.get("created_at", ""),
        )


@dataclass(frozen=True)
class CheckpointFilters:
    """Search filters. List filters match if any value matches."""

    context_types: tuple[str, ...] = ()
    expertise_areas: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    performance_threshold: float = 0.0
    recently_used: bool = False  # last used within RECENT_DAYS
    created_by: str | None = None
    created_after: str | None = None  # ISO timestamps, inclusive
    created_before: str | None = None


SORT_KEYS = ("relevance", "performance", "usage", "recent", "created")


@dataclass(frozen=True)
class CheckpointSearchQuery:
    query: str = ""
    filters: CheckpointFilters = field(default_factory=CheckpointFilters)
    sort_by: str = "relevance"
    limit: int = 20
    offset: int = 0


@dataclass(frozen=True)
class CheckpointSearchResult:
    results: list[CheckpointSummary]
    total_count: int
    suggested_tags: list[str]
    related_expertise: list[str]
    search_time_ms: float


@dataclass(frozen=True)
class StorageStats:
    total_checkpoints: int
    total_size_bytes: int
    average_size_bytes: float
    most_used_tags: list[str]
    most_common_expertise: list[str]


# ============================================================================
# Heuristics
# ============================================================================

# keyword -> expertise area
EXPERTISE_KEYWORDS = {
    "react": "react",
    "jsx": "react",
    "typescript": "typescript",
    "python": "python",
    "nodejs": "nodejs",
    "node.js": "nodejs",
    "api": "api",
    "endpoint": "api",
    "database": "database",
    "sql": "database",
    "docker": "containers",
    "test": "testing",
    "deploy": "deployment",
    "ci/cd": "deployment",
}

# command id -> expertise area
COMMAND_EXPERTISE = {
    "git": "version-control",
    "npm": "package-management",
    "yarn": "package-management",
    "pip": "package-management",
    "test": "testing",
    "pytest": "testing",
    "docker": "containers",
}

TOPIC_LABELS = {
    "react": "React development",
    "typescript": "TypeScript",
    "python": "Python",
    "nodejs": "Node.js",
    "api": "API development",
    "database": "Database operations",
    "containers": "Containers",
    "version-control": "Version control",
    "package-management": "Package management",
    "testing": "Testing",
    "deployment": "Deployment",
}

_WORD_RE = re.compile(r"[a-z0-9./+-]+")


def derive_expertise_areas(
    messages: Sequence[ConversationMessage],
    commands: Sequence[CommandExecution],
) -> list[str]:
    """Expertise areas from message keywords and commands, first-seen order."""
    areas: list[str] = []
    for message in messages:
        for word in _WORD_RE.findall(message.content.lower()):
            word = word.strip(".")
            area = EXPERTISE_KEYWORDS.get(word) or EXPERTISE_KEYWORDS.get(word.removesuffix("s"))
            if area and area not in areas:
                areas.append(area)
    for command in commands:
        area = COMMAND_EXPERTISE.get(command.command_id)
        if area and area not in areas:
            areas.append(area)
    return areas


def derive_learned_patterns(
    messages: Sequence[ConversationMessage],
    commands: Sequence[CommandExecution],
) -> list[str]:
    patterns = []
    if any(m.role == "user" and "error" in m.content.lower() for m in messages):
        patterns.append("error-debugging")
    if any(m.role == "assistant" and "test" in m.content.lower() for m in messages):
        patterns.append("test-driven-development")
    if any(c.command_id == "git" for c in commands):
        patterns.append("git-workflow")
    if any(c.command_id in ("edit", "write", "multiedit") for c in commands):
        patterns.append("file-editing")
    return patterns


def derive_success_indicators(
    messages: Sequence[ConversationMessage],
    commands: Sequence[CommandExecution],
) -> list[str]:
    """Signals from the last 5 messages and last 10 commands."""
    indicators = []
    recent = messages[-5:]
    if any(m.role == "assistant" and "success" in m.content.lower() for m in recent):
        indicators.append("task-completion")
    if any(m.role == "user" and "thank" in m.content.lower() for m in recent):
        indicators.append("user-satisfaction")
    recent_commands = commands[-10:]
    if recent_commands and sum(c.success for c in recent_commands) / len(recent_commands) > 0.8:
        indicators.append("high-command-success")
    return indicators


def summarize_expertise(areas: Sequence[str]) -> str:
    if not areas:
        return "General development assistance"
    return "Expert in: " + ", ".join(TOPIC_LABELS.get(a, a) for a in areas)


def summarize_conversation(messages: Sequence[ConversationMessage], commands: Sequence[CommandExecution]) -> str:
    rate = sum(c.success for c in commands) / len(commands) if commands else 0.0
    return (
        f"Conversation with {len(messages)} messages, {len(commands)} commands executed "
        f"({round(rate * 100)}% success rate)"
    )


def count_tokens(messages: Sequence[ConversationMessage]) -> int:
    """Sum of usage recorded on assistant messages."""
    total = 0
    for message in messages:
        usage = message.metadata.get("usage") or {}
        if isinstance(usage, dict):
            total += int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
    return total


def compute_performance_metrics(
    messages: Sequence[ConversationMessage],
    commands: Sequence[CommandExecution],
) -> PerformanceMetrics:
    total = len(commands)
    successes = sum(1 for c in commands if c.success)
    return PerformanceMetrics(
        success_rate=successes / total if total else 1.0,
        avg_response_time=sum(c.execution_time_ms for c in commands) / total if total else 0.0,
        commands_executed=total,
        errors_encountered=total - successes,
        tokens_processed=count_tokens(messages),
        messages_exchanged=len(messages),
    )


def validate_checkpoint(checkpoint: AgentCheckpoint, agent_types: Sequence[str]) -> tuple[list[str], list[str]]:
    """Structural checks before persistence.

    Returns:
        (errors, warnings); the checkpoint is valid when errors is empty
    """
    errors: list[str] = []
    warnings: list[str] = []

    for name in ("id", "title", "description", "agent_type", "conversation_id",
                 "expertise_summary", "created_at", "agent_id", "workspace_id", "created_by"):
        if not getattr(checkpoint, name):
            errors.append(f"Missing required field: {name}")

    if checkpoint.title and len(checkpoint.title) < 3:
        errors.append("Title must be at least 3 characters long")
    if checkpoint.description and len(checkpoint.description) < 10:
        errors.append("Description must be at least 10 characters long")
    if checkpoint.agent_type and checkpoint.agent_type not in agent_types:
        errors.append(f"Agent type must be one of: {', '.join(agent_types)}")
    if not 0.0 <= checkpoint.performance_metrics.success_rate <= 1.0:
        errors.append("Success rate must be between 0 and 1")

    if not checkpoint.tags:
        warnings.append("No tags provided - this may make the checkpoint harder to find")
    if checkpoint.expertise_summary and len(checkpoint.expertise_summary) < 20:
        warnings.append("Expertise summary is very short")

    return errors, warnings


# ============================================================================
# Manager
# ============================================================================


class CheckpointManager:
    """Create, restore-support, search, and maintain agent checkpoints.

    Synchronous; async callers go through ``asyncio.to_thread``.
    """

    def __init__(
        self,
        store: "CheckpointStore",
        conversations: ConversationStore,
        context_loader: WorkspaceContextLoader,
        config: DeckConfig | None = None,
    ):
        self.store = store
        self.conversations = conversations
        self.context_loader = context_loader
        self.config = config or DeckConfig()

    @property
    def agent_types(self) -> list[str]:
        from agentdeck.backends import ADAPTERS

        return list(ADAPTERS)

    def create_checkpoint(
        self,
        workspace_id: str,
        agent_id: str,
        title: str,
        description: str | None = None,
        tags: Sequence[str] | None = None,
        created_by: str = "system",
    ) -> CheckpointId:
        """Snapshot an agent's conversation and derived expertise.

        Raises:
            EmptyConversation: The agent has no conversation history
            InvalidCheckpoint: The assembled checkpoint failed validation
        """
        messages = self.conversations.load_history(workspace_id, agent_id)
        if not messages:
            raise EmptyConversation(
                f"No conversation history for agent {agent_id} - cannot create checkpoint",
                workspace_id=workspace_id,
                agent_id=agent_id,
            )
        commands = self.conversations.load_commands(workspace_id, agent_id)
        context = self.context_loader.load(workspace_id)

        areas = derive_expertise_areas(messages, commands)
        metrics = compute_performance_metrics(messages, commands)
        agent_type = self._agent_type(messages)
        git_state = capture_git_state(context.target_path) if context.has_git else None

        checkpoint = AgentCheckpoint(
            id=generate_checkpoint_id(title),
            title=title,
            description=description or f"Checkpoint of {title}",
            agent_type=agent_type,
            conversation_id=f"{agent_id}-{int(datetime.now(UTC).timestamp() * 1000)}",
            workspace_id=workspace_id,
            agent_id=agent_id,
            created_at=_now_iso(),
            created_by=created_by,
            tags=tuple(dict.fromkeys(t.strip() for t in tags or () if t.strip())),
            expertise_areas=tuple(areas),
            context_types=tuple(context.context_types),
            expertise_summary=summarize_expertise(areas),
            success_indicators=tuple(derive_success_indicators(messages, commands)),
            workspace_context={
                "timestamp": _now_iso(),
                "name": context.name,
                "context_description": context.description,
                "project_type": context.project_type,
                "context_items": [item.to_dict() for item in context.context_items],
                "git_state": git_state.to_dict() if git_state else None,
            },
            full_conversation_state=ConversationState(
                messages=tuple(messages),
                total_tokens=metrics.tokens_processed,
                command_history=tuple(commands),
                knowledge_areas=tuple(areas),
                learned_patterns=tuple(derive_learned_patterns(messages, commands)),
                summary=summarize_conversation(messages, commands),
            ),
            agent_configuration=AgentConfiguration(
                model=self._model(messages, agent_type),
                permissions=context.permissions.to_dict(),
                specialized_commands=tuple(dict.fromkeys(c.command_id for c in commands)),
                context_understanding={t: 0.8 for t in context.context_types},
            ),
            performance_metrics=metrics,
            analytics_summary=AnalyticsSummary(effectiveness_rating=metrics.success_rate * 5),
        )

        errors, warnings = validate_checkpoint(checkpoint, self.agent_types)
        if errors:
            raise InvalidCheckpoint(f"Invalid checkpoint: {', '.join(errors)}", errors=errors)
        for warning in warnings:
            logger.debug(f"Checkpoint {checkpoint.id}: {warning}")

        self.store.save(checkpoint)
        logger.info(f"Created checkpoint {checkpoint.id} for {workspace_id}/{agent_id}")
        return checkpoint.id

    def _agent_type(self, messages: Sequence[ConversationMessage]) -> str:
        """Backend that answered most recently, else the first configured."""
        known = self.agent_types
        for message in reversed(messages):
            backend = message.metadata.get("backend")
            if message.role == "assistant" and backend in known:
                return backend
        for name in self.config.backend_priority:
            if name in known:
                return name
        return known[0]

    def _model(self, messages: Sequence[ConversationMessage], agent_type: str) -> str:
        for message in reversed(messages):
            if message.role == "assistant" and message.metadata.get("model"):
                return str(message.metadata["model"])
        return getattr(self.config, f"{agent_type}_model", "") or agent_type

    def load_checkpoint(self, checkpoint_id: str) -> AgentCheckpoint:
        """Load a checkpoint, counting the load as a use.

        Raises:
            CheckpointNotFound: No checkpoint with this id
        """
        return self.store.load(checkpoint_id, track_usage=True)

    def get_checkpoint(self, checkpoint_id: str) -> AgentCheckpoint:
        """Load a checkpoint without touching its usage counters."""
        return self.store.load(checkpoint_id, track_usage=False)

    def search_checkpoints(self, query: CheckpointSearchQuery) -> CheckpointSearchResult:
        return self.store.search(query)

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        return self.store.delete(checkpoint_id)

    def list_summaries(self) -> list[CheckpointSummary]:
        return self.store.load_summaries()

    def update_checkpoint_analytics(
        self,
        checkpoint_id: str,
        session_length: int,
        user_feedback: float | None = None,
    ) -> AgentCheckpoint:
        """Fold one continued session into the rolling analytics.

        Effectiveness is ``(success_rate*0.4 + feedback/5*0.6) * 5``.
        """

        def update(checkpoint: AgentCheckpoint) -> AgentCheckpoint:
            current = checkpoint.analytics_summary
            sessions = current.total_sessions + 1
            feedback = current.user_feedback_score
            if user_feedback is not None:
                feedback = (feedback * (sessions - 1) + user_feedback) / sessions
            analytics = replace(
                current,
                total_sessions=sessions,
                successful_restorations=current.successful_restorations + 1,
                avg_continuation_length=(current.avg_continuation_length * (sessions - 1) + session_length) / sessions,
                user_feedback_score=feedback,
                effectiveness_rating=(checkpoint.performance_score * 0.4 + feedback / 5 * 0.6) * 5,
            )
            return replace(checkpoint, analytics_summary=analytics)

        updated = self.store.update(checkpoint_id, update)
        self.store.append_analytics_event(
            checkpoint_id,
            {"timestamp": _now_iso(), "session_length": session_length, "user_feedback": user_feedback},
        )
        return updated

    def get_recommended_checkpoints(
        self,
        context_types: Sequence[str] = (),
        description: str = "",
        limit: int = 5,
    ) -> list[CheckpointSummary]:
        """High-performing checkpoints matching the given context.

        The description narrows results only when some checkpoint matches it;
        otherwise recommendations come from context types alone.
        """
        filters = CheckpointFilters(context_types=tuple(context_types), performance_threshold=RECOMMENDATION_THRESHOLD)
        query = CheckpointSearchQuery(query=description.lower(), filters=filters, sort_by="performance", limit=limit)
        result = self.store.search(query)
        if not result.results and description:
            result = self.store.search(replace(query, query=""))
        return result.results

    def get_storage_stats(self) -> StorageStats:
        return self.store.stats()
