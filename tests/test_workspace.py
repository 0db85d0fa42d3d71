"""Tests for agentdeck.workspace."""

import json
import os
from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml

from agentdeck.errors import InvalidIdentifier
from agentdeck.workspace import (
    NO_TARGET_SUMMARY,
    ContextItem,
    PermissionBundle,
    WorkspaceContextLoader,
    detect_project_type,
)


class TestWorkspaceContextLoader:
    def test_loads_manifest_and_summary(self, workspace_root: Path):
        context = WorkspaceContextLoader(workspace_root).load("ws1")

        assert context.name == "Demo"
        assert context.description == "A demo workspace for the API service"
        assert context.context_item_count == 2
        assert context.context_types == ["document", "jira"]
        assert context.target_summary == "A small Python API.\n"
        assert not context.has_git
        assert context.project_type == "general"
        assert context.permissions.role == "developer"

    def test_missing_workspace_uses_defaults(self, tmp_path: Path):
        context = WorkspaceContextLoader(tmp_path).load("ghost")

        assert context.name == "ghost"
        assert context.context_items == ()
        assert context.target_summary == NO_TARGET_SUMMARY

    @pytest.mark.parametrize("workspace_id", ["..", "../ws1", "ws1/target", ""])
    def test_unsafe_workspace_id_rejected(self, workspace_root: Path, workspace_id: str):
        loader = WorkspaceContextLoader(workspace_root / "ws1")

        with pytest.raises(InvalidIdentifier):
            loader.load(workspace_id)

    def test_git_presence(self, workspace_root: Path):
        git_dir = workspace_root / "ws1" / "target" / ".git"
        git_dir.mkdir()
        (git_dir / "HEAD").write_text("ref: refs/heads/main\n")

        context = WorkspaceContextLoader(workspace_root).load("ws1")

        assert context.has_git
        assert context.project_type == "development"

    def test_permissions_file_overlays_defaults(self, workspace_root: Path):
        path = workspace_root / "ws1" / ".agentdeck" / "permissions.yaml"
        path.parent.mkdir()
        path.write_text(yaml.safe_dump({"role": "maintainer", "can_install_packages": True, "write": ["target/src/**"]}))

        permissions = WorkspaceContextLoader(workspace_root).load("ws1").permissions

        assert permissions.role == "maintainer"
        assert permissions.can_install_packages
        assert permissions.write == ("target/src/**",)
        assert permissions.read == PermissionBundle().read

    def test_malformed_permissions_ignored(self, workspace_root: Path):
        path = workspace_root / "ws1" / ".agentdeck" / "permissions.yaml"
        path.parent.mkdir()
        path.write_text("role: [unclosed\n")

        assert WorkspaceContextLoader(workspace_root).load("ws1").permissions == PermissionBundle()

    def test_cached_until_manifest_changes(self, workspace_root: Path):
        loader = WorkspaceContextLoader(workspace_root, ttl_seconds=60)
        first = loader.load("ws1")
        assert loader.load("ws1") is first

        manifest = workspace_root / "ws1" / "context" / "context-manifest.json"
        manifest.write_text(json.dumps({"name": "Renamed"}))
        stat = manifest.stat()
        os.utime(manifest, (stat.st_atime, stat.st_mtime + 5))

        assert loader.load("ws1").name == "Renamed"

    def test_ttl_expiry(self, workspace_root: Path, monkeypatch):
        clock = [1000.0]
        monkeypatch.setattr("agentdeck.workspace.time", SimpleNamespace(monotonic=lambda: clock[0]))
        loader = WorkspaceContextLoader(workspace_root, ttl_seconds=30)
        first = loader.load("ws1")

        clock[0] += 10
        assert loader.load("ws1") is first

        clock[0] += 31
        assert loader.load("ws1") is not first

    def test_invalidate_all(self, workspace_root: Path):
        loader = WorkspaceContextLoader(workspace_root)
        first = loader.load("ws1")

        loader.invalidate()

        assert loader.load("ws1") is not first


class TestProjectType:
    def test_review_from_items(self):
        items = (ContextItem(title="PR 12 review", type="document"),)
        assert detect_project_type("anything", items, has_git=True) == "review"

    def test_code_review_item_type(self):
        assert detect_project_type("", (ContextItem(title="x", type="code_review"),), has_git=False) == "review"

    def test_analysis_from_description(self):
        assert detect_project_type("Investigate the memory leak", (), has_git=True) == "analysis"

    def test_general(self):
        assert detect_project_type("Notes", (), has_git=False) == "general"


class TestPermissionBundle:
    def test_review_defaults_are_read_only_on_target(self):
        bundle = PermissionBundle.for_project_type("review")

        assert bundle.role == "reviewer"
        assert bundle.write == ("feedback/**",)
        assert "commit" not in bundle.git_allowed

    def test_describe_mentions_role_and_forbidden(self):
        text = PermissionBundle().describe()

        assert "- Role: developer" in text
        assert "sudo" in text

    def test_dict_round_trip(self):
        bundle = PermissionBundle.for_project_type("analysis")

        assert PermissionBundle.from_dict(bundle.to_dict()) == bundle
