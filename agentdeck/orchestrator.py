"""Agent orchestration.

``AgentOrchestrator`` is the single entry point downstream code uses: it
loads workspace context, picks a backend, streams the backend's answer back
as text chunks (with metadata events inlined as sentinel chunks), persists
the turn, and exposes checkpoint operations.

Request lifecycle::

    Idle -> ContextLoaded -> BackendSelected -> Streaming -> Completed
                                                          -> Failed
                                                          -> TimedOut

Transport failures never propagate to the caller. They end the turn in
Failed/TimedOut and the caller receives a synthesized explanatory message
instead. Checkpoint errors do propagate.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from agentdeck.backends import build_adapters
from agentdeck.backends.base import BackendAdapter, PromptRequest
from agentdeck.backends.fallback import failure_message, generate_fallback, word_stream
from agentdeck.checkpoint import (
    AgentCheckpoint,
    CheckpointManager,
    CheckpointSearchQuery,
    CheckpointSearchResult,
    CheckpointSummary,
    StorageStats,
)
from agentdeck.checkpoint_store import CheckpointStore
from agentdeck.config import DeckConfig, get_config
from agentdeck.conversation import (
    CommandExecution,
    ConversationMessage,
    ConversationStore,
    latest_session_id,
    new_message_id,
)
from agentdeck.errors import (
    TRANSPORT_ERRORS,
    AgentDeckException,
    BackendTimeout,
    BackendUnavailable,
    InvalidCheckpoint,
)
from agentdeck.events import (
    AssistantText,
    RawText,
    StreamEvent,
    ToolResult,
    ToolUse,
    encode_metadata,
    is_metadata_event,
)
from agentdeck.selector import BackendSelector, NoServiceAvailable
from agentdeck.stream import StreamTranslator
from agentdeck.supervisor import ProcessSupervisor
from agentdeck.types import check_id
from agentdeck.workspace import WorkspaceContext, WorkspaceContextLoader

logger = logging.getLogger(__name__)

FALLBACK_BACKEND = "no-service-fallback"


class TurnState(str, Enum):
    IDLE = "idle"
    CONTEXT_LOADED = "context_loaded"
    BACKEND_SELECTED = "backend_selected"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class Response:
    content: str
    metadata: dict[str, Any]


@dataclass
class _Turn:
    """Mutable record of one request while it runs."""

    workspace_id: str
    agent_id: str
    user_message: str
    state: TurnState = TurnState.IDLE
    backend: str | None = None
    chunks: list[str] = field(default_factory=list)
    translator: StreamTranslator | None = None
    error: AgentDeckException | None = None
    probes: dict[str, bool] = field(default_factory=dict)
    started: float = field(default_factory=time.monotonic)
    # tool_use_id -> (ToolUse, monotonic time seen)
    pending_tools: dict[str, tuple[ToolUse, float]] = field(default_factory=dict)
    commands: list[CommandExecution] = field(default_factory=list)

    @property
    def content(self) -> str:
        return "".join(self.chunks)

    def observe_tool(self, event: StreamEvent) -> None:
        """Pair tool uses with their results as command executions."""
        if isinstance(event, ToolUse):
            self.pending_tools[event.id] = (event, time.monotonic())
        elif isinstance(event, ToolResult):
            pending = self.pending_tools.pop(event.tool_use_id, None)
            if pending is None:
                return
            use, seen_at = pending
            self.commands.append(
                CommandExecution(
                    id=use.id or new_message_id("cmd"),
                    command_id=command_id_for(use),
                    input_params=dict(use.input),
                    output=event.content_preview,
                    success=not event.is_error,
                    error_message=event.content_preview if event.is_error else None,
                    execution_time_ms=round((time.monotonic() - seen_at) * 1000, 1),
                )
            )

    def metadata(self) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "backend": self.backend,
            "success": self.state == TurnState.COMPLETED,
            "state": self.state.value,
            "duration_ms": round((time.monotonic() - self.started) * 1000),
        }
        summary = self.translator.summary if self.translator else None
        if summary is not None:
            if summary.session_id:
                meta["session_id"] = summary.session_id
            if summary.model:
                meta["model"] = summary.model
            if summary.usage is not None:
                meta["usage"] = {
                    "input_tokens": summary.usage.input_tokens,
                    "output_tokens": summary.usage.output_tokens,
                    "cache_read_input_tokens": summary.usage.cache_read_input_tokens,
                    "cache_creation_input_tokens": summary.usage.cache_creation_input_tokens,
                }
            if summary.tool_uses:
                meta["tool_uses"] = [{"id": t.id, "name": t.name} for t in summary.tool_uses]
            if summary.tool_results:
                meta["tool_results"] = [
                    {"tool_use_id": r.tool_use_id, "is_error": r.is_error, "preview": r.content_preview}
                    for r in summary.tool_results
                ]
            if summary.final is not None:
                meta["result"] = {
                    "is_error": summary.final.is_error,
                    "total_cost_usd": summary.final.total_cost_usd,
                    "duration_ms": summary.final.duration_ms,
                    "num_turns": summary.final.num_turns,
                }
        if self.probes:
            meta["probes"] = dict(self.probes)
        if self.error is not None:
            meta["error"] = self.error.message
            meta["error_kind"] = self.error.code
        return meta


def command_id_for(tool: ToolUse) -> str:
    """Command id for metrics: the program for shell tools, else the tool."""
    command = tool.input.get("command")
    if tool.name.lower() == "bash" and isinstance(command, str) and command.split():
        return command.split()[0].rsplit("/", 1)[-1]
    return tool.name.lower()


def build_system_prompt(context: WorkspaceContext, agent_id: str) -> str:
    """Instruction preamble sent with every fresh (non-resumed) session."""
    items = "\n".join(f"{i}. {item.title} ({item.type})" for i, item in enumerate(context.context_items, 1))
    return f"""You are an AI assistant helping with software development tasks in a workspace called "{context.name}".

IMPORTANT CONSTRAINTS:
- You are ONLY allowed to work within the current workspace directory
- The workspace has these folders: target/ (code), context/ (reference), feedback/ (user feedback), agents/ (agent data)
- NEVER attempt to access files outside the workspace
- Always use relative paths from the workspace root

WORKSPACE CONTEXT:
- Name: {context.name}
- Description: {context.description}
- Project type: {context.project_type}
- Available Context Items: {len(context.context_items)}
- Git Repository: {"Yes" if context.has_git else "No"}

TARGET SUMMARY:
{context.target_summary.strip()}

AVAILABLE CONTEXT:
{items or "None"}

PERMISSIONS:
{context.permissions.describe()}

Your agent ID is: {agent_id}
You can save agent-specific data in: agents/{agent_id}/

Be helpful, accurate, and focused on the development tasks at hand."""


class AgentOrchestrator:
    """Route agent requests to CLI backends and manage their state.

    Usage:
        orchestrator = AgentOrchestrator()
        async for chunk in orchestrator.generate_streaming_response("ws", "agent-1", "hi"):
            if not is_metadata_chunk(chunk):
                print(chunk, end="")
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        config: DeckConfig | None = None,
        adapters: Sequence[BackendAdapter] | None = None,
    ):
        self.config = config or get_config()
        self.supervisor = ProcessSupervisor(grace=self.config.kill_grace)
        self.selector = BackendSelector(adapters if adapters is not None else build_adapters(self.config))
        self.context_loader = WorkspaceContextLoader(
            self.config.workspace_path, ttl_seconds=self.config.context_cache_ttl
        )
        self.conversations = ConversationStore(
            self.config.workspace_path,
            cap=self.config.conversation_cap,
            command_cap=self.config.command_cap,
        )
        self.checkpoints = CheckpointManager(
            CheckpointStore(self.config.checkpoints_path),
            self.conversations,
            self.context_loader,
            self.config,
        )

    # ========================================================================
    # Responses
    # ========================================================================

    async def generate_streaming_response(
        self,
        workspace_id: str,
        agent_id: str,
        user_message: str,
        history: Sequence[ConversationMessage] | None = None,
        preferred_backend: str | None = None,
    ) -> AsyncIterator[str]:
        """Stream the answer to ``user_message`` chunk by chunk.

        Text is forwarded as it arrives; tool activity, usage, and session
        events arrive as sentinel chunks (see ``agentdeck.events``). Never
        raises for backend failures.

        Raises:
            InvalidIdentifier: ``workspace_id`` or ``agent_id`` is not a safe directory name
        """
        turn = self._new_turn(workspace_id, agent_id, user_message)
        async with aclosing(self._run_turn(turn, history, preferred_backend, paced=True)) as chunks:
            async for chunk in chunks:
                yield chunk
        await self._persist(turn)

    async def generate_response(
        self,
        workspace_id: str,
        agent_id: str,
        user_message: str,
        history: Sequence[ConversationMessage] | None = None,
        preferred_backend: str | None = None,
    ) -> Response:
        """Non-streaming variant: the whole answer plus turn metadata."""
        turn = self._new_turn(workspace_id, agent_id, user_message)
        async with aclosing(self._run_turn(turn, history, preferred_backend, paced=False)) as chunks:
            async for _ in chunks:
                pass
        await self._persist(turn)
        return Response(content=turn.content, metadata=turn.metadata())

    @staticmethod
    def _new_turn(workspace_id: str, agent_id: str, user_message: str) -> _Turn:
        check_id(workspace_id, "workspace id")
        check_id(agent_id, "agent id")
        return _Turn(workspace_id, agent_id, user_message)

    async def _run_turn(
        self,
        turn: _Turn,
        history: Sequence[ConversationMessage] | None,
        preferred_backend: str | None,
        paced: bool,
    ) -> AsyncIterator[str]:
        """Drive one request; text chunks are recorded on ``turn`` as yielded."""
        if history is None:
            history = await asyncio.to_thread(self.conversations.load_history, turn.workspace_id, turn.agent_id)
        context = await asyncio.to_thread(self.context_loader.load, turn.workspace_id)
        turn.state = TurnState.CONTEXT_LOADED

        selection = await self.selector.select(preferred_backend)
        if isinstance(selection, NoServiceAvailable):
            turn.backend = FALLBACK_BACKEND
            turn.probes = selection.probes
            turn.error = BackendUnavailable("No backend available", probes=selection.probes)
            turn.state = TurnState.FAILED
            logger.warning(
                f"No backend available for {turn.workspace_id}/{turn.agent_id}, answering locally: {selection.probes}"
            )
            text = generate_fallback(turn.user_message, history, selection.probes)
            async for chunk in self._emit_text(turn, text, paced):
                yield chunk
            return

        adapter = selection
        turn.backend = adapter.name
        turn.state = TurnState.BACKEND_SELECTED
        session_id = latest_session_id(list(history)) if adapter.supports_resume else None
        request = PromptRequest(
            system_prompt=build_system_prompt(context, turn.agent_id),
            user_message=turn.user_message,
            workspace_path=context.path,
            agent_id=turn.agent_id,
            history=tuple(history),
            session_id=session_id,
            permissions=context.permissions,
        )

        translator = StreamTranslator(adapter.decode_line, adapter.is_error_stderr)
        turn.translator = translator
        handle = None
        try:
            invocation = await asyncio.to_thread(adapter.build_invocation, request)
            handle = await self.supervisor.spawn(
                invocation.command,
                invocation.args,
                cwd=invocation.cwd if invocation.cwd.is_dir() else None,
                env=invocation.env,
                timeout=adapter.timeout,
            )
            turn.state = TurnState.STREAMING
            async with (
                aclosing(self.supervisor.run(handle, invocation.stdin)) as lines,
                aclosing(translator.events(lines)) as events,
            ):
                async for event in events:
                    for chunk in self._render(turn, event):
                        yield chunk

            # Claude repeats the final answer in its result record
            final = translator.summary.final
            if final is not None and final.result and not translator.summary.text.strip():
                turn.chunks.append(final.result)
                yield final.result

            translator.raise_for_outcome(
                handle.exit_code,
                handle.stderr_lines,
                backend=adapter.name,
                workspace_id=turn.workspace_id,
            )
            turn.state = TurnState.COMPLETED
            logger.info(f"{adapter.name} answered {turn.workspace_id}/{turn.agent_id}")

        except TRANSPORT_ERRORS as e:
            turn.error = e
            turn.state = TurnState.TIMED_OUT if isinstance(e, BackendTimeout) else TurnState.FAILED
            logger.error(
                f"{adapter.name} request failed for {turn.workspace_id}/{turn.agent_id}: "
                f"{e.message} {e.context}"
            )
            text = failure_message(e, adapter.name, turn.user_message)
            if turn.content.strip():
                text = "\n\n" + text
            async for chunk in self._emit_text(turn, text, paced):
                yield chunk

        finally:
            # Covers a consumer that stops before the stream started
            if handle is not None:
                await handle.cleanup()

    def _render(self, turn: _Turn, event: StreamEvent) -> list[str]:
        turn.observe_tool(event)
        if isinstance(event, AssistantText):
            turn.chunks.append(event.text)
            return [event.text]
        if isinstance(event, RawText):
            text = event.text + "\n"
            turn.chunks.append(text)
            return [text]
        if is_metadata_event(event):
            return [encode_metadata(event)]
        return []

    async def _emit_text(self, turn: _Turn, text: str, paced: bool) -> AsyncIterator[str]:
        delay = self.config.fallback_word_delay if paced else 0.0
        async for chunk in word_stream(text, delay):
            turn.chunks.append(chunk)
            yield chunk

    async def _persist(self, turn: _Turn) -> None:
        user = ConversationMessage.create("user", turn.user_message)
        assistant = ConversationMessage.create("assistant", turn.content, turn.metadata())
        try:
            await asyncio.to_thread(
                self.conversations.append_messages, turn.workspace_id, turn.agent_id, user, assistant
            )
            if turn.commands:
                await asyncio.to_thread(
                    self.conversations.append_commands, turn.workspace_id, turn.agent_id, *turn.commands
                )
        except (OSError, ValueError) as e:
            logger.error(f"Could not persist turn for {turn.workspace_id}/{turn.agent_id}: {e}")

    # ========================================================================
    # Conversation access
    # ========================================================================

    async def load_conversation_history(self, workspace_id: str, agent_id: str) -> list[ConversationMessage]:
        return await asyncio.to_thread(self.conversations.load_history, workspace_id, agent_id)

    async def save_conversation_message(
        self, workspace_id: str, agent_id: str, message: ConversationMessage
    ) -> None:
        await asyncio.to_thread(self.conversations.append_messages, workspace_id, agent_id, message)

    async def record_command(self, workspace_id: str, agent_id: str, command: CommandExecution) -> None:
        await asyncio.to_thread(self.conversations.append_commands, workspace_id, agent_id, command)

    async def backend_status(self) -> dict[str, bool]:
        return await self.selector.probe_all()

    # ========================================================================
    # Checkpoints
    # ========================================================================

    async def create_checkpoint(
        self,
        workspace_id: str,
        agent_id: str,
        title: str,
        description: str | None = None,
        tags: Sequence[str] | None = None,
    ) -> str:
        return await asyncio.to_thread(
            self.checkpoints.create_checkpoint, workspace_id, agent_id, title, description, tags
        )

    async def restore_from_checkpoint(
        self,
        workspace_id: str,
        agent_id: str,
        checkpoint_id: str,
    ) -> AgentCheckpoint:
        """Replace an agent's conversation with a checkpoint's.

        The restore counts as a use of the checkpoint and as one more
        session in its analytics.

        Raises:
            CheckpointNotFound: No such checkpoint
            InvalidCheckpoint: The checkpoint has no conversation to restore
        """
        checkpoint = await asyncio.to_thread(self.checkpoints.load_checkpoint, checkpoint_id)
        state = checkpoint.full_conversation_state
        if not state.messages:
            raise InvalidCheckpoint(f"Checkpoint {checkpoint_id} has no conversation", checkpoint_id=checkpoint_id)

        await asyncio.to_thread(
            self.conversations.replace_history, workspace_id, agent_id, list(state.messages)
        )
        await asyncio.to_thread(
            self.conversations.replace_commands, workspace_id, agent_id, list(state.command_history)
        )
        await asyncio.to_thread(
            self.conversations.write_restore_marker,
            workspace_id,
            agent_id,
            {
                "restored_from": checkpoint.id,
                "restored_at": datetime.now(UTC).isoformat(),
                "original_title": checkpoint.title,
                "original_description": checkpoint.description,
                "original_workspace_id": checkpoint.workspace_id,
                "original_agent_id": checkpoint.agent_id,
            },
        )
        updated = await asyncio.to_thread(self.checkpoints.update_checkpoint_analytics, checkpoint.id, 0)
        logger.info(f"Restored {workspace_id}/{agent_id} from checkpoint {checkpoint.id}")
        return updated

    async def search_checkpoints(self, query: CheckpointSearchQuery) -> CheckpointSearchResult:
        return await asyncio.to_thread(self.checkpoints.search_checkpoints, query)

    async def delete_checkpoint(self, checkpoint_id: str) -> bool:
        return await asyncio.to_thread(self.checkpoints.delete_checkpoint, checkpoint_id)

    async def get_recommended_checkpoints(self, workspace_id: str, limit: int = 5) -> list[CheckpointSummary]:
        context = await asyncio.to_thread(self.context_loader.load, workspace_id)
        return await asyncio.to_thread(
            self.checkpoints.get_recommended_checkpoints, context.context_types, context.description, limit
        )

    async def get_checkpoint_stats(self) -> StorageStats:
        return await asyncio.to_thread(self.checkpoints.get_storage_stats)

    async def shutdown(self) -> None:
        """Terminate any backend process still running."""
        await self.supervisor.shutdown()
