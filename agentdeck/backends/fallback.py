"""Canned responses used when no backend can answer.

Deterministic: the same message and probe results always produce the same
text, so the degraded path is testable.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping, Sequence

from agentdeck import __version__
from agentdeck.conversation import ConversationMessage
from agentdeck.errors import AgentDeckException, BackendTimeout

logger = logging.getLogger(__name__)

TOPIC_HINTS = (
    (("debug", "error", "exception", "traceback", "bug"),
     "For debugging: reproduce the failure with the smallest input you can, read the full "
     "traceback from the bottom up, and check what changed since it last worked."),
    (("test", "pytest", "jest", "spec"),
     "For tests: run the failing test on its own with verbose output, then compare the "
     "assertion's expected and actual values before touching the code."),
    (("build", "compile", "deploy", "ci"),
     "For build problems: rerun the build from a clean state and look at the first error "
     "it reports, not the last."),
)


def _probe_lines(probes: Mapping[str, bool]) -> list[str]:
    if not probes:
        return ["No backends are configured."]
    return [f"- {name}: {'available' if ok else 'not available'}" for name, ok in probes.items()]


def generate_fallback(
    user_message: str,
    history: Sequence[ConversationMessage],
    probes: Mapping[str, bool],
) -> str:
    """Answer ``user_message`` without any backend.

    Args:
        user_message: What the user asked
        history: Conversation so far (only used for the turn count)
        probes: Backend name -> probe outcome from the last selection
    """
    text = user_message.strip()
    lowered = text.lower()
    words = lowered.split()
    first = words[0] if words else ""

    if first in ("help", "/help", "?"):
        return (
            "No AI backend is reachable right now, so only basic commands work:\n"
            "- help: this message\n"
            "- status: which backends were probed\n"
            "- version: agentdeck version\n"
            "Install and authenticate the claude or gemini CLI to get full answers."
        )

    if first in ("status", "/status"):
        lines = ["Backend status:", *_probe_lines(probes)]
        lines.append(f"Messages in this conversation: {len(history)}")
        return "\n".join(lines)

    if first in ("version", "/version"):
        return f"agentdeck {__version__}"

    if first == "git":
        return (
            f'I cannot run "{text}" for you without a backend. Run it in the workspace '
            "target directory yourself; read-only commands like git status, git log and "
            "git diff are always safe."
        )

    parts = [f'I understand you\'re asking: "{text}"']
    parts.append(
        "Unfortunately, no AI backend is currently available. This could be due to the CLI "
        "tools not being installed, authentication issues, or network problems."
    )
    parts.append("\n".join(_probe_lines(probes)))
    for keywords, hint in TOPIC_HINTS:
        if any(k in lowered for k in keywords):
            parts.append(hint)
            break
    parts.append("Check that the claude or gemini CLI is installed and authenticated, then try again.")
    return "\n\n".join(parts)


def failure_message(error: AgentDeckException, backend: str, user_message: str) -> str:
    """Explain a failed request to the user, in place of an answer."""
    if isinstance(error, BackendTimeout):
        reason = f"{backend} did not respond within {error.context.get('timeout', 0):g} seconds."
    else:
        reason = f"{backend} failed: {error.message}"
    return (
        f'I encountered an error while processing your request: "{user_message}"\n\n'
        f"{reason}\n\n"
        "Please try again, or let me know if you need help with something else."
    )


async def word_stream(text: str, delay: float = 0.05) -> AsyncIterator[str]:
    """Yield ``text`` word by word, keeping the separating spaces."""
    words = text.split(" ")
    for i, word in enumerate(words):
        yield word + (" " if i < len(words) - 1 else "")
        if delay > 0:
            await asyncio.sleep(delay)
