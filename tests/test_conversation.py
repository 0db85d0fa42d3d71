"""Tests for agentdeck.conversation."""

import json
from pathlib import Path

import pytest

from agentdeck.conversation import (
    CommandExecution,
    ConversationMessage,
    ConversationStore,
    latest_session_id,
    new_message_id,
)
from agentdeck.errors import InvalidIdentifier


class TestConversationMessage:
    def test_create_assigns_id_and_timestamp(self):
        message = ConversationMessage.create("user", "hi")

        assert message.id.startswith("msg_")
        assert message.timestamp
        assert message.metadata == {}

    def test_metadata_omitted_when_empty(self):
        assert "metadata" not in ConversationMessage.create("user", "hi").to_dict()

    def test_session_id_from_metadata(self):
        message = ConversationMessage.create("assistant", "ok", {"session_id": "s1", "backend": "claude"})

        assert message.session_id == "s1"
        assert ConversationMessage.from_dict(message.to_dict()) == message

    def test_latest_session_id(self):
        history = [
            ConversationMessage.create("assistant", "a", {"session_id": "old"}),
            ConversationMessage.create("user", "b"),
            ConversationMessage.create("assistant", "c", {"session_id": "new"}),
            ConversationMessage.create("assistant", "d", {"backend": "gemini"}),
        ]

        assert latest_session_id(history) == "new"
        assert latest_session_id([]) is None

    def test_non_string_session_id_is_skipped(self):
        history = [
            ConversationMessage.create("assistant", "a", {"session_id": "real"}),
            ConversationMessage.create("assistant", "b", {"session_id": 123}),
        ]

        assert history[1].session_id is None
        assert latest_session_id(history) == "real"

    def test_ids_are_unique(self):
        assert len({new_message_id() for _ in range(50)}) == 50


class TestConversationStore:
    def test_empty_history(self, tmp_path: Path):
        assert ConversationStore(tmp_path).load_history("ws", "a") == []

    def test_append_and_load(self, tmp_path: Path):
        store = ConversationStore(tmp_path)
        user = ConversationMessage.create("user", "hello")
        reply = ConversationMessage.create("assistant", "hi there", {"backend": "claude"})

        store.append_messages("ws", "a", user, reply)

        assert store.load_history("ws", "a") == [user, reply]
        raw = json.loads((tmp_path / "ws" / "agents" / "a" / "conversation.json").read_text())
        assert [m["role"] for m in raw] == ["user", "assistant"]

    def test_cap_trims_oldest(self, tmp_path: Path):
        store = ConversationStore(tmp_path, cap=5)
        for i in range(8):
            store.append_messages("ws", "a", ConversationMessage.create("user", f"m{i}"))

        history = store.load_history("ws", "a")

        assert [m.content for m in history] == ["m3", "m4", "m5", "m6", "m7"]

    def test_agents_are_isolated(self, tmp_path: Path):
        store = ConversationStore(tmp_path)
        store.append_messages("ws", "a", ConversationMessage.create("user", "for a"))

        assert store.load_history("ws", "b") == []
        assert store.load_history("other", "a") == []

    def test_corrupt_log_reads_empty(self, tmp_path: Path):
        path = tmp_path / "ws" / "agents" / "a" / "conversation.json"
        path.parent.mkdir(parents=True)
        path.write_text('{"not": "a list"}')

        assert ConversationStore(tmp_path).load_history("ws", "a") == []

    def test_commands(self, tmp_path: Path):
        store = ConversationStore(tmp_path)
        ok = CommandExecution(id="c1", command_id="git", input_params={"command": "git status"}, output="clean")
        bad = CommandExecution(id="c2", command_id="npm", success=False, error_message="missing script")

        store.append_commands("ws", "a", ok)
        store.append_commands("ws", "a", bad)
        store.append_commands("ws", "a")

        assert store.load_commands("ws", "a") == [ok, bad]

    def test_command_cap_trims_oldest(self, tmp_path: Path):
        store = ConversationStore(tmp_path, command_cap=3)
        for i in range(5):
            store.append_commands("ws", "a", CommandExecution(id=f"c{i}", command_id="git"))

        assert [c.id for c in store.load_commands("ws", "a")] == ["c2", "c3", "c4"]

    @pytest.mark.parametrize(
        "workspace_id, agent_id",
        [("../ws", "a"), ("ws", "../../etc"), ("ws", "a/b"), (".", "a"), ("ws", ".."), ("ws", "")],
    )
    def test_unsafe_ids_rejected(self, tmp_path: Path, workspace_id: str, agent_id: str):
        store = ConversationStore(tmp_path / "root")

        with pytest.raises(InvalidIdentifier):
            store.load_history(workspace_id, agent_id)
        with pytest.raises(InvalidIdentifier):
            store.append_messages(workspace_id, agent_id, ConversationMessage.create("user", "x"))

        assert list(tmp_path.iterdir()) == []

    def test_replace_history(self, tmp_path: Path):
        store = ConversationStore(tmp_path)
        store.append_messages("ws", "a", ConversationMessage.create("user", "old"))
        replacement = [ConversationMessage.create("user", "new")]

        store.replace_history("ws", "a", replacement)

        assert store.load_history("ws", "a") == replacement

    def test_restore_marker(self, tmp_path: Path):
        store = ConversationStore(tmp_path)
        assert store.read_restore_marker("ws", "a") is None

        path = store.write_restore_marker("ws", "a", {"restored_from": "cp1"})

        assert path.name == "checkpoint-restore.json"
        assert store.read_restore_marker("ws", "a") == {"restored_from": "cp1"}
