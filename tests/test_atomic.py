"""Tests for agentdeck.atomic and the Result type it returns."""

import json
import os
import stat
import threading
from pathlib import Path

import pytest
import yaml

from agentdeck.atomic import atomic_write_json, atomic_write_text, atomic_write_yaml, read_json
from agentdeck.errors import AgentDeckError, BackendTimeout, Err, Ok, format_error


class TestAtomicWriteText:
    """Tests for atomic_write_text()."""

    def test_creates_file_and_parents(self, tmp_path: Path):
        """Parent directories are created on demand."""
        path = tmp_path / "agents" / "a1" / "conversation.json"

        result = atomic_write_text(path, "[]")

        assert result.is_ok()
        assert result.unwrap() == path
        assert path.read_text() == "[]"

    def test_replaces_existing_content(self, tmp_path: Path):
        path = tmp_path / "log.json"
        path.write_text("old")

        atomic_write_text(path, "new")

        assert path.read_text() == "new"

    def test_owner_only_permissions(self, tmp_path: Path):
        """Files default to 0o600."""
        path = tmp_path / "secret.json"

        atomic_write_text(path, "{}")

        mode = path.stat().st_mode
        assert mode & stat.S_IRWXU == stat.S_IRUSR | stat.S_IWUSR
        assert mode & stat.S_IRWXG == 0
        assert mode & stat.S_IRWXO == 0

    def test_leaves_no_temp_files(self, tmp_path: Path):
        atomic_write_text(tmp_path / "a.json", "1")
        atomic_write_text(tmp_path / "a.json", "2")

        assert list(tmp_path.glob(".*tmp")) == []

    @pytest.mark.skipif(os.name == "nt" or os.geteuid() == 0, reason="needs POSIX permissions as non-root")
    def test_permission_denied_is_err(self, tmp_path: Path):
        """Writing into a read-only directory returns Err, not an exception."""
        readonly = tmp_path / "readonly"
        readonly.mkdir(mode=0o555)
        try:
            result = atomic_write_text(readonly / "x.json", "{}")

            assert result.is_err()
            assert result.unwrap_err().code in ("WRITE_PERMISSION_DENIED", "WRITE_FAILED")
        finally:
            readonly.chmod(0o755)

    def test_concurrent_writers_never_tear(self, tmp_path: Path):
        """Every concurrent write succeeds and the survivor is one whole value."""
        path = tmp_path / "index.json"
        outcomes: list[bool] = []

        def write(i: int):
            outcomes.append(atomic_write_text(path, f"content-{i}").is_ok())

        threads = [threading.Thread(target=write, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(outcomes)
        assert int(path.read_text().split("-")[1]) in range(10)
        assert list(tmp_path.glob(".*tmp")) == []


class TestAtomicWriteJson:
    """Tests for atomic_write_json()."""

    def test_writes_utf8_json(self, tmp_path: Path):
        path = tmp_path / "msg.json"

        result = atomic_write_json(path, {"content": "Hello 世界"})

        assert result.is_ok()
        raw = path.read_text(encoding="utf-8")
        assert "世界" in raw
        assert json.loads(raw) == {"content": "Hello 世界"}

    def test_unserializable_data_is_err(self, tmp_path: Path):
        path = tmp_path / "bad.json"

        result = atomic_write_json(path, {"fn": lambda: None})

        assert result.is_err()
        assert result.unwrap_err().code == "JSON_SERIALIZATION_FAILED"
        assert not path.exists()


class TestAtomicWriteYaml:
    def test_round_trips_through_safe_load(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        data = {"claude_timeout": 600.0, "backend_priority": ["gemini", "claude"]}

        assert atomic_write_yaml(path, data).is_ok()
        assert yaml.safe_load(path.read_text()) == data

    def test_unsafe_objects_are_err(self, tmp_path: Path):
        class Opaque:
            pass

        result = atomic_write_yaml(tmp_path / "x.yaml", {"obj": Opaque()})

        assert result.is_err()
        assert result.unwrap_err().code == "YAML_SERIALIZATION_FAILED"


class TestReadJson:
    def test_missing_file_returns_default(self, tmp_path: Path):
        assert read_json(tmp_path / "nope.json", default=[]) == []

    def test_corrupt_file_returns_default(self, tmp_path: Path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        assert read_json(path, default={"fallback": True}) == {"fallback": True}

    def test_reads_document(self, tmp_path: Path):
        path = tmp_path / "ok.json"
        path.write_text('[{"id": "m1"}]')

        assert read_json(path) == [{"id": "m1"}]


class TestResult:
    def test_ok_and_err(self):
        ok = Ok(3)
        err = Err(AgentDeckError(code="X", message="boom"))

        assert ok.is_ok() and not ok.is_err()
        assert err.is_err() and not err.is_ok()
        assert ok.unwrap() == 3
        assert err.unwrap_err().code == "X"
        with pytest.raises(ValueError):
            err.unwrap()
        with pytest.raises(ValueError):
            ok.unwrap_err()

    def test_format_error_includes_code_and_context(self):
        error = BackendTimeout("claude did not finish within 5s", timeout=5)

        text = format_error(error)

        assert text.startswith("[TIMEOUT] claude did not finish within 5s")
        assert "timeout=5" in text

    def test_format_error_plain_exception(self):
        assert format_error(RuntimeError("x")) == "RuntimeError: x"
