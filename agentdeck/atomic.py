"""Crash-safe file persistence for agentdeck.

Every JSON document agentdeck owns (conversation logs, command history,
checkpoint data/summaries/index) is rewritten in full on each mutation, so a
torn write would corrupt the whole record. Writes go to a sibling temp file
which is then renamed over the target; rename is atomic on POSIX.

Write helpers return ``Result`` values; readers return a caller-supplied
default when the file is missing or unreadable.

Security:
- Files are created 0o600, parent directories 0o700
- Temp files are removed on any failure
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from agentdeck.errors import AgentDeckError, Err, Ok, Result

logger = logging.getLogger(__name__)


def atomic_write_text(
    path: Path,
    content: str,
    mode: int = 0o600,
) -> Result[Path, AgentDeckError]:
    """Replace ``path`` with ``content`` via temp file + rename.

    Args:
        path: Destination file
        content: Full text of the new file
        mode: Permissions applied before the rename

    Returns:
        Ok(path) on success, Err(AgentDeckError) on failure
    """
    path = Path(path)
    temp_name: str | None = None

    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        # Same directory as the target, otherwise rename may cross devices
        fd, temp_name = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.stem}_",
            suffix=f"{path.suffix}.tmp",
        )
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(temp_name, mode)
        os.replace(temp_name, path)
        temp_name = None

        logger.debug(f"Wrote {path}")
        return Ok(path)

    except PermissionError as e:
        logger.error(f"Permission denied writing {path}: {e}")
        return Err(
            AgentDeckError(
                code="WRITE_PERMISSION_DENIED",
                message=f"Permission denied writing to {path}",
                context={"path": str(path)},
            )
        )

    except OSError as e:
        logger.error(f"Failed writing {path}: {e}")
        return Err(
            AgentDeckError(
                code="WRITE_FAILED",
                message=f"Failed to write {path}: {e}",
                context={"path": str(path), "error": str(e)},
            )
        )

    finally:
        if temp_name is not None:
            _discard(temp_name)


def atomic_write_json(
    path: Path,
    data: Any,
    mode: int = 0o600,
    indent: int | None = 2,
) -> Result[Path, AgentDeckError]:
    """Serialize ``data`` as UTF-8 JSON and write it atomically."""
    try:
        content = json.dumps(data, indent=indent, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.error(f"JSON serialization failed for {path}: {e}")
        return Err(
            AgentDeckError(
                code="JSON_SERIALIZATION_FAILED",
                message=f"Failed to serialize data to JSON: {e}",
                context={"path": str(path), "error": str(e)},
            )
        )

    return atomic_write_text(path, content, mode)


def atomic_write_yaml(path: Path, data: Any, mode: int = 0o600) -> Result[Path, AgentDeckError]:
    """Serialize ``data`` with ``yaml.safe_dump`` and write it atomically."""
    try:
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True)
    except yaml.YAMLError as e:
        logger.error(f"YAML serialization failed for {path}: {e}")
        return Err(
            AgentDeckError(
                code="YAML_SERIALIZATION_FAILED",
                message=f"Failed to serialize data to YAML: {e}",
                context={"path": str(path), "error": str(e)},
            )
        )

    return atomic_write_text(path, content, mode)


def read_json(path: Path, default: Any = None) -> Any:
    """Load a JSON document, returning ``default`` if missing or corrupt."""
    path = Path(path)
    if not path.exists():
        return default
    try:
        with open(path, encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not read {path}: {e}")
        return default


def _discard(temp_name: str) -> None:
    try:
        os.unlink(temp_name)
    except OSError:
        pass
