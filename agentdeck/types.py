"""Branded identifier types for agentdeck.

NewType wrappers are free at runtime but let type checkers catch a
workspace id passed where an agent id belongs.
"""

import re
from typing import Literal, NewType

from agentdeck.errors import InvalidIdentifier

WorkspaceId = NewType("WorkspaceId", str)
AgentId = NewType("AgentId", str)
CheckpointId = NewType("CheckpointId", str)
SessionId = NewType("SessionId", str)


Role = Literal["user", "assistant", "system"]

# Ids become path components under the storage roots
SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def is_safe_id(value: str | None) -> bool:
    """True if ``value`` can be used as a single path component."""
    return bool(value) and SAFE_ID_RE.match(value) is not None and value not in (".", "..")


def check_id(value: str, kind: str = "id") -> str:
    """Return ``value`` unchanged, or raise if it is not a safe id.

    Raises:
        InvalidIdentifier: Empty, has a separator or other unsafe character, or is ``.``/``..``
    """
    if not is_safe_id(value):
        raise InvalidIdentifier(f"Invalid {kind}: {value!r}", kind=kind, value=value)
    return value
