"""Backend adapters and the registry used to build them from config."""

from agentdeck.backends.base import BackendAdapter, Invocation, PromptRequest
from agentdeck.backends.claude import ClaudeAdapter
from agentdeck.backends.gemini import GeminiAdapter
from agentdeck.config import DeckConfig

ADAPTERS: dict[str, type[BackendAdapter]] = {
    ClaudeAdapter.name: ClaudeAdapter,
    GeminiAdapter.name: GeminiAdapter,
}


def build_adapters(config: DeckConfig) -> list[BackendAdapter]:
    """Instantiate adapters in ``config.backend_priority`` order.

    Unknown names in the priority list are skipped.
    """
    adapters: list[BackendAdapter] = []
    for name in config.backend_priority:
        cls = ADAPTERS.get(name)
        if cls is None:
            continue
        adapters.append(
            cls(
                binary=getattr(config, f"{name}_binary"),
                timeout=getattr(config, f"{name}_timeout"),
                probe_timeout=config.probe_timeout,
                model=getattr(config, f"{name}_model"),
                history_window=config.history_window,
            )
        )
    return adapters


__all__ = [
    "ADAPTERS",
    "BackendAdapter",
    "ClaudeAdapter",
    "GeminiAdapter",
    "Invocation",
    "PromptRequest",
    "build_adapters",
]
