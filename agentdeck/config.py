"""Configuration management for agentdeck.

Storage Structure
-----------------
~/.agentdeck/                     # User-level
├── config.yaml                   # Tuning overrides (see DeckConfig)
├── workspaces/                   # Default workspace root
└── checkpoints/                  # Default checkpoint store
    ├── data/<id>.json
    ├── summaries/<id>.json
    ├── analytics/<id>.json
    └── checkpoint-index.json

<workspace_root>/.agentdeck/config.yaml   # Installation-level overrides

Cascade: workspace-root config → user config → built-in defaults, then
environment variables (AGENTDECK_WORKSPACE_DIR, AGENTDECK_CHECKPOINTS_DIR)
override the two storage locations.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

AGENTDECK_DIR = Path.home() / ".agentdeck"
CONFIG_FILENAME = "config.yaml"

WORKSPACE_DIR_ENV = "AGENTDECK_WORKSPACE_DIR"
CHECKPOINTS_DIR_ENV = "AGENTDECK_CHECKPOINTS_DIR"


@dataclass
class DeckConfig:
    """Tunable parameters for orchestration and storage."""

    # Storage (empty string = default under AGENTDECK_DIR)
    workspace_root: str = ""
    checkpoints_dir: str = ""

    # Conversation handling
    conversation_cap: int = 50
    command_cap: int = 200
    history_window: int = 8
    context_cache_ttl: float = 30.0

    # Backends
    claude_binary: str = "claude"
    gemini_binary: str = "gemini"
    claude_model: str = ""  # empty = CLI default
    gemini_model: str = ""
    claude_timeout: float = 300.0
    gemini_timeout: float = 120.0
    probe_timeout: float = 5.0
    kill_grace: float = 5.0
    backend_priority: list[str] = field(default_factory=lambda: ["claude", "gemini"])

    # Fallback streaming pace (seconds between words)
    fallback_word_delay: float = 0.05

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace_root).expanduser() if self.workspace_root else AGENTDECK_DIR / "workspaces"

    @property
    def checkpoints_path(self) -> Path:
        return Path(self.checkpoints_dir).expanduser() if self.checkpoints_dir else AGENTDECK_DIR / "checkpoints"

    @classmethod
    def load(cls, config_dir: Path) -> "DeckConfig":
        """Load config from ``config_dir/config.yaml``, or defaults if absent.

        Unknown keys are ignored so a config written by a newer version
        still loads.
        """
        config_path = config_dir / CONFIG_FILENAME
        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            overrides = yaml.safe_load(f) or {}
        if not isinstance(overrides, dict):
            logger.warning(f"Ignoring malformed config at {config_path}")
            return cls()

        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            logger.debug(f"Ignoring unknown config keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in overrides.items() if k in known})

    def save(self, config_dir: Path) -> Path:
        """Write non-default values to ``config_dir/config.yaml``."""
        from agentdeck.atomic import atomic_write_yaml

        defaults = DeckConfig()
        data = {k: v for k, v in self.to_dict().items() if getattr(defaults, k) != v}
        if not data:
            data = {"_version": 1}

        config_path = config_dir / CONFIG_FILENAME
        result = atomic_write_yaml(config_path, data)
        if result.is_err():
            raise OSError(f"Failed to save config: {result.unwrap_err().message}")
        return config_path

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def get_config(workspace_root: Path | None = None) -> DeckConfig:
    """Resolve the effective configuration.

    Priority (highest to lowest):
    1. Environment variables for storage locations
    2. ``<workspace_root>/.agentdeck/config.yaml``
    3. ``~/.agentdeck/config.yaml``
    4. Built-in defaults
    """
    root = workspace_root
    if root is None and os.environ.get(WORKSPACE_DIR_ENV):
        root = Path(os.environ[WORKSPACE_DIR_ENV])

    config = None
    if root is not None and (root / ".agentdeck" / CONFIG_FILENAME).exists():
        config = DeckConfig.load(root / ".agentdeck")
    if config is None:
        config = DeckConfig.load(AGENTDECK_DIR)

    if root is not None:
        config.workspace_root = str(root)
    if env_checkpoints := os.environ.get(CHECKPOINTS_DIR_ENV):
        config.checkpoints_dir = env_checkpoints

    return config
