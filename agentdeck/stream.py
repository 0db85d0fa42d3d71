"""Stream translation for backend output.

Backends write a line-oriented event stream on stdout. This module decodes
those lines into ``StreamEvent`` values and keeps a running summary of the
turn (session id, usage, tool activity, terminal result) so the caller can
decide afterwards whether the request succeeded.

Architecture:
- ``decode_claude_line`` maps Claude's ``stream-json`` records onto events
- ``make_tool_preview`` renders the short preview attached to ToolResult
- ``is_error_stderr`` classifies stderr diagnostics (best-effort heuristic)
- ``StreamTranslator`` wraps an adapter's decoder around a line iterator and
  accumulates a ``StreamSummary``

Parsing policy: a line that is not valid JSON, or a JSON record of an unknown
shape, is preserved verbatim as ``RawText``. Nothing is dropped and nothing
raises out of the decoder.
"""

import json
import logging
import re
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from agentdeck.errors import BackendExitError, ParseDegraded
from agentdeck.events import (
    AssistantText,
    FinalResult,
    RawText,
    StreamEvent,
    SystemInit,
    ToolResult,
    ToolUse,
    UsageInfo,
)

logger = logging.getLogger(__name__)

# Lines beyond this are not decoded (memory exhaustion guard)
MAX_LINE_LENGTH = 10_000_000

PREVIEW_LENGTH = 150

# Tool output longer than this that reads as prose is labelled as text
# output rather than previewed as if it were a command result
PROSE_MIN_LENGTH = 400

ERROR_STDERR_PATTERNS = (
    "error:",
    "failed:",
    "authentication",
    "unauthorized",
    "permission denied",
    "api key",
)

BENIGN_STDERR_PATTERNS = (
    "slow response times",
    "generating with",
    "switching to",
    "model switch",
    "falling back to",
)


# ============================================================================
# Claude stream-json decoding
# ============================================================================


def decode_claude_line(line: str) -> list[StreamEvent]:
    """Decode one line of ``claude --output-format stream-json`` output.

    Args:
        line: A single line without its trailing newline

    Returns:
        Zero or more events. Blank lines yield nothing; anything that cannot
        be decoded yields a single RawText.
    """
    if not line.strip():
        return []
    if len(line) > MAX_LINE_LENGTH:
        logger.warning(f"Skipping oversized stream line ({len(line)} chars)")
        return [RawText(text=f"[output line of {len(line)} characters omitted]")]

    try:
        return _decode_record(json.loads(line))
    except json.JSONDecodeError:
        return [RawText(text=line)]
    except ParseDegraded as e:
        logger.debug(f"Degraded stream line ({e.message}): {line[:200]}")
        return [RawText(text=line)]
    except (TypeError, ValueError) as e:
        # Well-formed JSON with fields of the wrong type
        logger.debug(f"Degraded stream line ({e}): {line[:200]}")
        return [RawText(text=line)]


def _decode_record(data: Any) -> list[StreamEvent]:
    if not isinstance(data, dict):
        raise ParseDegraded("record is not an object")

    record_type = data.get("type")

    if record_type == "system":
        if data.get("subtype") not in (None, "init"):
            # Hook and status notices carry nothing the caller needs
            return []
        tools = data.get("tools") or []
        if not isinstance(tools, list):
            raise ParseDegraded("tools is not a list")
        return [
            SystemInit(
                session_id=_text_field(data, "session_id"),
                model=_text_field(data, "model"),
                tools=tuple(str(t) for t in tools if t),
                cwd=_text_field(data, "cwd"),
            )
        ]

    if record_type == "assistant":
        message = _require_message(data)
        events = _decode_assistant_content(message.get("content", []))
        usage = _decode_usage(message.get("usage"))
        if usage is not None:
            events.append(usage)
        return events

    if record_type == "user":
        message = _require_message(data)
        return _decode_tool_results(message.get("content", []))

    if record_type == "result":
        events: list[StreamEvent] = []
        usage = _decode_usage(data.get("usage"))
        if usage is not None:
            events.append(usage)
        result_text = data.get("result", "")
        events.append(
            FinalResult(
                is_error=bool(data.get("is_error", False)) or data.get("subtype", "success") != "success",
                result=result_text if isinstance(result_text, str) else "",
                session_id=_text_field(data, "session_id"),
                total_cost_usd=float(data.get("total_cost_usd") or data.get("cost_usd") or 0.0),
                duration_ms=int(data.get("duration_ms") or 0),
                num_turns=int(data.get("num_turns") or 0),
            )
        )
        return events

    if record_type == "usage":
        usage = _decode_usage(data.get("usage", data))
        return [usage] if usage is not None else []

    raise ParseDegraded(f"unknown record type: {record_type!r}")


def _text_field(data: dict[str, Any], key: str) -> str | None:
    """A non-empty string field, else None; ids end up on command lines."""
    value = data.get(key)
    return value if isinstance(value, str) and value else None


def _require_message(data: dict[str, Any]) -> dict[str, Any]:
    message = data.get("message")
    if not isinstance(message, dict):
        raise ParseDegraded("message field missing or not an object")
    return message


def _decode_assistant_content(content: Any) -> list[StreamEvent]:
    if isinstance(content, str):
        return [AssistantText(text=content)] if content else []
    if not isinstance(content, list):
        raise ParseDegraded("assistant content is neither text nor a block list")

    events: list[StreamEvent] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text" and block.get("text"):
            events.append(AssistantText(text=block["text"]))
        elif block_type == "tool_use":
            tool_input = block.get("input", {})
            events.append(
                ToolUse(
                    id=str(block.get("id", "")),
                    name=str(block.get("name", "unknown")),
                    input=tool_input if isinstance(tool_input, dict) else {"value": tool_input},
                )
            )
        # thinking and other block types are not forwarded
    return events


def _decode_tool_results(content: Any) -> list[StreamEvent]:
    if not isinstance(content, list):
        return []

    events: list[StreamEvent] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_result":
            continue
        text = _flatten_content(block.get("content", ""))
        is_error = bool(block.get("is_error", False))
        events.append(
            ToolResult(
                tool_use_id=str(block.get("tool_use_id", "")),
                is_error=is_error,
                content_preview=make_tool_preview(text, is_error=is_error),
                content_length=len(text),
            )
        )
    return events


def _decode_usage(usage: Any) -> UsageInfo | None:
    if not isinstance(usage, dict):
        return None
    try:
        return UsageInfo(
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
            cache_read_input_tokens=int(usage.get("cache_read_input_tokens") or 0),
            cache_creation_input_tokens=int(usage.get("cache_creation_input_tokens") or 0),
        )
    except (TypeError, ValueError):
        return None


def _flatten_content(content: Any) -> str:
    """Tool result content may be a string or a list of text blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    return ""


# ============================================================================
# Tool result previews
# ============================================================================


def _looks_like_prose(text: str) -> bool:
    """Heuristic: long, sentence-shaped text rather than command output."""
    if len(text) < PROSE_MIN_LENGTH:
        return False
    lines = [ln for ln in text.splitlines() if ln.strip()]
    if not lines:
        return False
    sentences = len(re.findall(r"[a-z][.!?](?:\s|$)", text))
    avg_line = sum(len(ln) for ln in lines) / len(lines)
    code_like = sum(1 for ln in lines if re.match(r"^\s*(\d+[→:\t]|[$#>]|[{}\[\]]|def |class |import )", ln))
    return sentences >= 3 and avg_line >= 60 and code_like < len(lines) / 4


def make_tool_preview(text: str, is_error: bool = False, limit: int = PREVIEW_LENGTH) -> str:
    """Render a one-line preview of tool output, at most ``limit`` chars.

    Long free-text analysis is labelled as text output so a UI does not show
    the first sentence of an essay as if it were a command result.
    """
    collapsed = " ".join(text.split())
    if not collapsed:
        return "(error with no output)" if is_error else "(no output)"

    prefix = "Error: " if is_error else ""
    if not is_error and _looks_like_prose(text):
        prefix = f"Text output ({len(text)} chars): "

    budget = max(limit - len(prefix), 20)
    if len(collapsed) > budget:
        collapsed = collapsed[: budget - 3].rstrip() + "..."
    return f"{prefix}{collapsed}"[:limit]


# ============================================================================
# stderr classification
# ============================================================================


def is_error_stderr(
    line: str,
    error_patterns: Iterable[str] = ERROR_STDERR_PATTERNS,
    benign_patterns: Iterable[str] = BENIGN_STDERR_PATTERNS,
) -> bool:
    """Best-effort check that a stderr line reports a genuine failure.

    Benign notices (a backend announcing a model switch, verbose progress)
    never count, even if they happen to contain an error-like word.
    """
    lowered = line.lower()
    if any(p in lowered for p in benign_patterns):
        return False
    return any(p in lowered for p in error_patterns)


# ============================================================================
# Translator
# ============================================================================


@dataclass
class StreamSummary:
    """Everything observed while translating one backend response."""

    session_id: str | None = None
    model: str | None = None
    tools: tuple[str, ...] = ()
    text_parts: list[str] = field(default_factory=list)
    raw_lines: int = 0
    tool_uses: list[ToolUse] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    usage: UsageInfo | None = None
    final: FinalResult | None = None
    model_switched: bool = False

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @property
    def has_output(self) -> bool:
        return bool(self.text.strip()) or bool(self.final and self.final.result.strip())

    def observe(self, event: StreamEvent) -> None:
        if isinstance(event, SystemInit):
            if event.session_id:
                self.session_id = event.session_id
            if event.model:
                if self.model and event.model != self.model:
                    self.model_switched = True
                self.model = event.model
            if event.tools:
                self.tools = event.tools
        elif isinstance(event, AssistantText):
            self.text_parts.append(event.text)
        elif isinstance(event, RawText):
            self.text_parts.append(event.text + "\n")
            self.raw_lines += 1
        elif isinstance(event, ToolUse):
            self.tool_uses.append(event)
        elif isinstance(event, ToolResult):
            self.tool_results.append(event)
        elif isinstance(event, UsageInfo):
            self.usage = event
        elif isinstance(event, FinalResult):
            self.final = event
            if event.session_id:
                self.session_id = event.session_id


class StreamTranslator:
    """Turn a backend's stdout lines into ``StreamEvent`` values.

    ``events()`` is lazy and can be restarted only from the start: each call
    resets the summary.

    Usage:
        translator = StreamTranslator(adapter.decode_line, adapter.is_error_stderr)
        async for event in translator.events(lines):
            ...
        translator.raise_for_outcome(exit_code, stderr_lines, backend="claude")
    """

    def __init__(
        self,
        decode_line: Callable[[str], list[StreamEvent]],
        is_error_line: Callable[[str], bool] = is_error_stderr,
    ):
        self._decode_line = decode_line
        self._is_error_line = is_error_line
        self.summary = StreamSummary()

    async def events(self, lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
        self.summary = StreamSummary()
        async for line in lines:
            for event in self._decode_line(line):
                self.summary.observe(event)
                yield event

    def stderr_errors(self, stderr_lines: Iterable[str]) -> list[str]:
        """Return the stderr lines that look like genuine errors."""
        return [ln for ln in stderr_lines if self._is_error_line(ln)]

    def raise_for_outcome(
        self,
        exit_code: int | None,
        stderr_lines: Iterable[str],
        backend: str,
        **context: Any,
    ) -> None:
        """Raise BackendExitError unless the process exited 0 with output."""
        stderr_lines = list(stderr_lines)
        errors = self.stderr_errors(stderr_lines)
        final = self.summary.final

        reason = None
        if exit_code != 0:
            reason = f"exited with code {exit_code}"
        elif errors:
            reason = f"reported an error: {errors[0][:200]}"
        elif final is not None and final.is_error:
            reason = f"returned an error result: {final.result[:200]}"
        elif not self.summary.has_output:
            reason = "returned an empty response"

        if reason is not None:
            raise BackendExitError(
                f"{backend} {reason}",
                backend=backend,
                exit_code=exit_code,
                stderr_tail=stderr_lines[-5:],
                **context,
            )
