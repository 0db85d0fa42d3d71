"""Stream event types decoded from backend output.

Each backend adapter maps its native wire format onto this closed set of
immutable events. Anything that cannot be decoded becomes ``RawText`` so no
output is ever silently dropped.

Metadata events (everything except text) are forwarded to callers inside the
token stream using a sentinel wrapper::

    <<<AGENT_METADATA:TOOL_USE:{"id": "toolu_1", "name": "Read", ...}>>>

so display text and structural metadata share one channel.
"""

import json
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class SystemInit:
    """Backend announced a (new or resumed) session.

    Attributes:
        session_id: Opaque id usable for session resumption
        model: Model the backend reports it is running
        tools: Tool names the backend exposes
        cwd: Working directory the backend sees
    """

    session_id: str | None = None
    model: str | None = None
    tools: tuple[str, ...] = ()
    cwd: str | None = None


@dataclass(frozen=True)
class AssistantText:
    """A span of assistant prose to display."""

    text: str


@dataclass(frozen=True)
class ToolUse:
    """The assistant invoked a tool.

    Attributes:
        id: Tool-use id, pairs with ToolResult.tool_use_id
        name: Tool name (e.g. "Read", "Bash")
        input: Tool arguments
    """

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """Result of a tool invocation.

    Attributes:
        tool_use_id: Id of the ToolUse this answers
        is_error: Whether the tool reported failure
        content_preview: Human-readable preview, at most ~150 characters
        content_length: Length of the full content
    """

    tool_use_id: str
    is_error: bool = False
    content_preview: str = ""
    content_length: int = 0


@dataclass(frozen=True)
class UsageInfo:
    """Token counters reported mid-stream."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class FinalResult:
    """Terminal record carrying aggregate request statistics."""

    is_error: bool = False
    result: str = ""
    session_id: str | None = None
    total_cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0


@dataclass(frozen=True)
class RawText:
    """A line that did not decode as a structured record."""

    text: str


StreamEvent = Union[SystemInit, AssistantText, ToolUse, ToolResult, UsageInfo, FinalResult, RawText]


# ============================================================================
# Sentinel encoding
# ============================================================================

METADATA_PREFIX = "<<<AGENT_METADATA:"
METADATA_SUFFIX = ">>>"

_KIND_BY_TYPE: dict[type, str] = {
    SystemInit: "SYSTEM",
    ToolUse: "TOOL_USE",
    ToolResult: "TOOL_RESULT",
    UsageInfo: "USAGE",
    FinalResult: "RESULT",
}
_TYPE_BY_KIND = {kind: cls for cls, kind in _KIND_BY_TYPE.items()}

_METADATA_RE = re.compile(r"^<<<AGENT_METADATA:([A-Z_]+):(.*)>>>$", re.DOTALL)


def is_metadata_event(event: StreamEvent) -> bool:
    return type(event) in _KIND_BY_TYPE


def encode_metadata(event: StreamEvent) -> str:
    """Wrap a metadata event as a sentinel chunk."""
    kind = _KIND_BY_TYPE.get(type(event))
    if kind is None:
        raise ValueError(f"{type(event).__name__} is not a metadata event")
    payload = asdict(event)
    if isinstance(event, SystemInit):
        payload["tools"] = list(event.tools)
    return f"{METADATA_PREFIX}{kind}:{json.dumps(payload, ensure_ascii=False)}{METADATA_SUFFIX}"


def is_metadata_chunk(chunk: str) -> bool:
    return chunk.startswith(METADATA_PREFIX) and chunk.endswith(METADATA_SUFFIX)


def decode_metadata_chunk(chunk: str) -> tuple[str, dict[str, Any]] | None:
    """Split a sentinel chunk into (kind, payload); None if not one."""
    match = _METADATA_RE.match(chunk)
    if not match:
        return None
    kind, body = match.groups()
    if kind not in _TYPE_BY_KIND:
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return kind, payload
