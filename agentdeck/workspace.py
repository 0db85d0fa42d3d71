"""Workspace context loading.

A workspace is a directory under the workspace root:

<workspace_root>/<workspace_id>/
├── context/context-manifest.json   # name, description, context_items[]
├── target/                         # The code being worked on
│   ├── summary.md
│   └── .git/HEAD                   # Presence = version controlled
└── .agentdeck/permissions.yaml     # Optional permission bundle

Missing pieces never fail a load: each falls back to a default so an agent
can always be prompted. Loaded contexts are cached per workspace with TTL +
manifest mtime validation; ``invalidate()`` drops an entry explicitly.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

import yaml

from agentdeck.atomic import read_json
from agentdeck.types import WorkspaceId, check_id

logger = logging.getLogger(__name__)

MANIFEST_PATH = Path("context") / "context-manifest.json"
TARGET_SUMMARY_PATH = Path("target") / "summary.md"
GIT_HEAD_PATH = Path("target") / ".git" / "HEAD"
PERMISSIONS_PATH = Path(".agentdeck") / "permissions.yaml"

DEFAULT_DESCRIPTION = "Development workspace"
NO_TARGET_SUMMARY = "No target summary available"

ProjectType = Literal["review", "analysis", "development", "general"]


# ============================================================================
# Data Types
# ============================================================================


@dataclass(frozen=True)
class ContextItem:
    """A reference document attached to the workspace."""

    title: str
    type: str = "document"
    path: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContextItem":
        return cls(
            title=str(data.get("title") or data.get("name") or "Untitled"),
            type=str(data.get("type") or "document"),
            path=data.get("path"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"title": self.title, "type": self.type}
        if self.path:
            data["path"] = self.path
        return data


@dataclass(frozen=True)
class PermissionBundle:
    """What an agent may touch inside its workspace.

    Rendered into the system prompt and into backend settings artifacts.
    """

    role: str = "developer"
    read: tuple[str, ...] = ("context/**", "target/**", "feedback/**")
    write: tuple[str, ...] = ("target/**", "feedback/**")
    execute: tuple[str, ...] = ("target/**",)
    git_allowed: tuple[str, ...] = ("diff", "status", "log", "show", "blame", "add", "commit")
    git_requires_approval: tuple[str, ...] = ("push", "branch", "checkout")
    protected_branches: tuple[str, ...] = ("main", "master", "production")
    commands_allowed: tuple[str, ...] = ("ls", "cat", "head", "tail", "grep", "find", "git", "npm", "node")
    commands_requiring_approval: tuple[str, ...] = ("rm", "rmdir", "mv", "cp", "chmod", "chown")
    commands_forbidden: tuple[str, ...] = ("sudo", "su", "passwd", "shutdown", "reboot")
    can_install_packages: bool = False
    can_access_network: bool = True

    @classmethod
    def for_project_type(cls, project_type: ProjectType) -> "PermissionBundle":
        """Default bundle: reviewers and analysts write feedback only."""
        if project_type == "review":
            return cls(
                role="reviewer",
                write=("feedback/**",),
                execute=(),
                git_allowed=("diff", "status", "log", "show", "blame"),
                git_requires_approval=("add", "commit", "push", "branch", "checkout"),
            )
        if project_type == "analysis":
            return cls(
                role="analyst",
                write=("feedback/**", "agents/**"),
                execute=(),
                git_allowed=("diff", "status", "log", "show"),
                git_requires_approval=("add", "commit", "push", "branch", "checkout"),
                commands_allowed=("ls", "cat", "head", "tail", "grep", "find", "git"),
            )
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any], base: "PermissionBundle | None" = None) -> "PermissionBundle":
        """Overlay ``data`` on ``base`` (defaults). Unknown keys are ignored."""
        base = base or cls()
        values = {}
        for f in fields(cls):
            if f.name not in data:
                values[f.name] = getattr(base, f.name)
            elif isinstance(getattr(base, f.name), tuple):
                values[f.name] = tuple(str(v) for v in data[f.name] or ())
            else:
                values[f.name] = data[f.name]
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: list(v) if isinstance(v := getattr(self, f.name), tuple) else v for f in fields(self)}

    def describe(self) -> str:
        lines = [
            f"- Role: {self.role}",
            f"- File system: read {', '.join(self.read) or 'nothing'}; write {', '.join(self.write) or 'nothing'}",
            f"- Git: {', '.join(self.git_allowed) or 'read-only'}"
            + (f" (ask before: {', '.join(self.git_requires_approval)})" if self.git_requires_approval else ""),
            f"- Commands: {', '.join(self.commands_allowed)}",
        ]
        if self.commands_forbidden:
            lines.append(f"- Forbidden: {', '.join(self.commands_forbidden)}")
        lines.append(f"- Package installation: {'allowed' if self.can_install_packages else 'denied'}")
        return "\n".join(lines)


@dataclass(frozen=True)
class WorkspaceContext:
    """Immutable snapshot of a workspace, as seen when a request starts."""

    workspace_id: str
    path: Path
    name: str
    description: str = DEFAULT_DESCRIPTION
    context_items: tuple[ContextItem, ...] = ()
    target_summary: str = NO_TARGET_SUMMARY
    has_git: bool = False
    project_type: ProjectType = "general"
    permissions: PermissionBundle = field(default_factory=PermissionBundle)

    @property
    def target_path(self) -> Path:
        return self.path / "target"

    @property
    def context_item_count(self) -> int:
        return len(self.context_items)

    @property
    def context_types(self) -> list[str]:
        return sorted({item.type for item in self.context_items})


def detect_project_type(description: str, items: tuple[ContextItem, ...], has_git: bool) -> ProjectType:
    """Classify a workspace from its context items, description, and VCS."""
    for item in items:
        title = item.title.lower()
        if item.type == "code_review" or "review" in title or "analysis" in title:
            return "review"

    lowered = description.lower()
    if "analysis" in lowered or "investigate" in lowered:
        return "analysis"
    if has_git:
        return "development"
    return "general"


# ============================================================================
# Loader
# ============================================================================


@dataclass
class _CacheEntry:
    context: WorkspaceContext
    mtime: float
    loaded_at: float


class WorkspaceContextLoader:
    """Load and cache ``WorkspaceContext`` snapshots.

    Thread-safe: the orchestrator calls ``load`` through ``asyncio.to_thread``.
    """

    def __init__(self, workspace_root: Path, ttl_seconds: float = 30.0):
        self.workspace_root = Path(workspace_root)
        self.ttl_seconds = ttl_seconds
        self._cache: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def workspace_path(self, workspace_id: WorkspaceId | str) -> Path:
        return self.workspace_root / check_id(workspace_id, "workspace id")

    def load(self, workspace_id: WorkspaceId | str) -> WorkspaceContext:
        """Return the context for ``workspace_id``, from cache if fresh."""
        mtime = self._manifest_mtime(workspace_id)
        with self._lock:
            entry = self._cache.get(workspace_id)
            if (
                entry is not None
                and entry.mtime == mtime
                and time.monotonic() - entry.loaded_at <= self.ttl_seconds
            ):
                return entry.context

        context = self._read(workspace_id)
        with self._lock:
            self._cache[workspace_id] = _CacheEntry(context, mtime, time.monotonic())
        return context

    def invalidate(self, workspace_id: WorkspaceId | str | None = None) -> None:
        """Drop one cached workspace, or all of them."""
        with self._lock:
            if workspace_id is None:
                self._cache.clear()
            else:
                self._cache.pop(workspace_id, None)

    def _manifest_mtime(self, workspace_id: str) -> float:
        try:
            return (self.workspace_path(workspace_id) / MANIFEST_PATH).stat().st_mtime
        except OSError:
            return 0.0

    def _read(self, workspace_id: str) -> WorkspaceContext:
        path = self.workspace_path(workspace_id)
        if not path.is_dir():
            logger.warning(f"Workspace {workspace_id} does not exist at {path}, using defaults")

        manifest = read_json(path / MANIFEST_PATH, default={})
        if not isinstance(manifest, dict):
            logger.warning(f"Malformed context manifest for {workspace_id}")
            manifest = {}

        items = tuple(
            ContextItem.from_dict(item) for item in manifest.get("context_items", []) if isinstance(item, dict)
        )
        name = manifest.get("name") or workspace_id
        description = manifest.get("description") or DEFAULT_DESCRIPTION

        try:
            target_summary = (path / TARGET_SUMMARY_PATH).read_text(encoding="utf-8")
        except OSError:
            target_summary = NO_TARGET_SUMMARY

        has_git = (path / GIT_HEAD_PATH).exists()
        project_type = detect_project_type(description, items, has_git)
        permissions = self._load_permissions(path, project_type)

        logger.debug(f"Loaded workspace {workspace_id}: {len(items)} context items, type={project_type}")
        return WorkspaceContext(
            workspace_id=workspace_id,
            path=path,
            name=name,
            description=description,
            context_items=items,
            target_summary=target_summary,
            has_git=has_git,
            project_type=project_type,
            permissions=permissions,
        )

    def _load_permissions(self, path: Path, project_type: ProjectType) -> PermissionBundle:
        defaults = PermissionBundle.for_project_type(project_type)
        permissions_file = path / PERMISSIONS_PATH
        if not permissions_file.exists():
            return defaults
        try:
            with open(permissions_file) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not read {permissions_file}, using defaults: {e}")
            return defaults
        if not isinstance(data, dict):
            return defaults
        return PermissionBundle.from_dict(data, base=defaults)
