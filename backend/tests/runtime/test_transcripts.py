"""
Agent Fleet - Session Transcript Tests
======================================

Claude and Codex JSONL transcripts normalized into one message shape.
"""

import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List

import pytest

from fleet.core.runtime.transcripts import TranscriptStore, encode_project_path


CWD = "/home/dev/my_project"


def write_jsonl(path: Path, entries: List[Dict[str, Any]]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(entry) + "\n" for entry in entries))
    return path


def mtime_of(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


@pytest.fixture
def store(tmp_path: Path) -> TranscriptStore:
    return TranscriptStore(claude_home=tmp_path / "claude", codex_home=tmp_path / "codex")


@pytest.fixture
def claude_session(store: TranscriptStore):
    """Write a Claude transcript for session_id under the encoded project dir."""
    def write(session_id: str, entries: List[Dict[str, Any]]) -> Path:
        return write_jsonl(store.project_dir(CWD) / f"{session_id}.jsonl", entries)
    return write


def user(text: str, **extra: Any) -> Dict[str, Any]:
    return {"type": "user", "message": {"role": "user", "content": text}, **extra}


def assistant(*blocks: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "assistant", "message": {"role": "assistant", "content": list(blocks)}}


class TestProjectPaths:
    """Tests for Claude project directory names."""

    def test_encode(self):
        """Slashes and underscores become dashes; trailing slash is ignored."""
        assert encode_project_path("/home/dev/my_project/") == "-home-dev-my-project"


class TestClaudeTranscripts:
    """Tests for Claude transcript loading."""

    def test_mixed_content_yields_text_and_tool_use(self, store: TranscriptStore, claude_session):
        """An assistant entry with text and a tool call yields exactly two messages."""
        claude_session("s1", [
            {"type": "user", "uuid": "u0"},
            assistant(
                {"type": "text", "text": "Let me look."},
                {"type": "tool_use", "name": "Read", "id": "toolu_1", "input": {"file_path": "a.py"}},
            ),
        ])
        history = store.load_session(CWD, "s1")

        assert [m.type for m in history.messages] == ["assistant", "tool_use"]
        assert history.total_count == 2
        assert history.has_more is False
        tool_use = history.messages[1]
        assert tool_use.tool_name == "Read"
        assert tool_use.tool_input == {"file_path": "a.py"}
        assert tool_use.tool_use_id == "toolu_1"

    def test_tool_results_are_truncated(self, store: TranscriptStore, claude_session):
        """Long tool results are cut to a preview."""
        claude_session("s1", [{"type": "user", "message": {"content": [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": "x" * 600},
        ]}}])
        [message] = store.load_session(CWD, "s1").messages
        assert message.type == "tool_result"
        assert message.content == "x" * 500 + "..."

    def test_paging_from_the_end(self, store: TranscriptStore, claude_session):
        """Pages are counted backwards from the most recent message."""
        claude_session("s1", [user(f"message {i}") for i in range(5)])

        latest = store.load_session(CWD, "s1", limit=2, offset=0)
        assert [m.content for m in latest.messages] == ["message 3", "message 4"]
        assert latest.has_more is True

        oldest = store.load_session(CWD, "s1", limit=2, offset=4)
        assert [m.content for m in oldest.messages] == ["message 0"]
        assert oldest.has_more is False
        assert oldest.total_count == 5

    def test_invalid_lines_skipped(self, store: TranscriptStore):
        """Broken lines do not abort loading."""
        path = store.project_dir(CWD) / "s1.jsonl"
        path.parent.mkdir(parents=True)
        path.write_text('{"type": "user", "message": {"content": "hi"}}\nnot json\n[1]\n')
        assert [m.content for m in store.load_session(CWD, "s1").messages] == ["hi"]

    def test_missing_session(self, store: TranscriptStore):
        """A session without a transcript yields None."""
        assert store.load_session(CWD, "nope") is None
        assert store.get_session_activity_status(CWD, "nope") is None

    def test_search(self, store: TranscriptStore, claude_session):
        """Search is case-insensitive and matches tool names."""
        claude_session("s1", [
            user("Please fix the Parser"),
            assistant({"type": "tool_use", "name": "Grep", "id": "t1", "input": {"pattern": "x"}}),
        ])
        result = store.search_session(CWD, "s1", "parser")
        assert result["total_matches"] == 1
        assert store.search_session(CWD, "s1", "grep")["total_matches"] == 1

    def test_list_and_latest_sessions(self, store: TranscriptStore, claude_session):
        """Sessions are listed newest first."""
        older = claude_session("old", [user("a")])
        claude_session("new", [user("b"), assistant({"type": "text", "text": "c"})])
        os.utime(older, (1_000_000_000, 1_000_000_000))

        sessions = store.list_sessions(CWD)
        assert [s.session_id for s in sessions] == ["new", "old"]
        assert sessions[0].message_count == 2
        assert store.find_latest_session(CWD) == "new"

    def test_tool_history(self, store: TranscriptStore, claude_session):
        """File tools are reported as file changes, newest first."""
        claude_session("s1", [
            assistant({"type": "tool_use", "name": "Read", "id": "t1", "input": {"file_path": "a.py"}}),
            assistant({"type": "tool_use", "name": "Write", "id": "t2", "input": {"file_path": "b.py"}}),
            assistant({"type": "tool_use", "name": "Bash", "id": "t3", "input": {"command": "ls"}}),
        ])
        history = store.load_tool_history(CWD, "s1", agent_id="a1")
        assert [t.tool_name for t in history.tool_executions] == ["Bash", "Write", "Read"]
        assert [(c.action, c.file_path) for c in history.file_changes] == [("created", "b.py"), ("read", "a.py")]
        assert history.file_changes[0].agent_id == "a1"


class TestCodexTranscripts:
    """Tests for Codex rollout transcripts."""

    def test_exec_command_pairs_with_output(self, store: TranscriptStore, tmp_path: Path):
        """exec_command calls become Bash tool_use followed by its tool_result."""
        write_jsonl(tmp_path / "codex" / "sessions" / "2026" / "02" / "07" / "rollout-thread-1.jsonl", [
            {"type": "response_item", "payload": {
                "type": "function_call", "name": "exec_command", "call_id": "call_1",
                "arguments": json.dumps({"cmd": "echo hello"})}},
            {"type": "response_item", "payload": {
                "type": "function_call_output", "call_id": "call_1", "output": "hello\n"}},
        ])
        history = store.load_session(CWD, "thread-1")

        assert len(history.messages) == 2
        tool_use, tool_result = history.messages
        assert tool_use.type == "tool_use"
        assert tool_use.tool_name == "Bash"
        assert tool_use.tool_input["cmd"] == "echo hello"
        assert tool_result.type == "tool_result"
        assert tool_result.tool_name == "Bash"
        assert tool_result.content == "hello\n"

    def test_user_messages_deduplicated(self, store: TranscriptStore, tmp_path: Path):
        """The response_item copy of a user event is dropped; images get a placeholder."""
        write_jsonl(tmp_path / "codex" / "sessions" / "2026" / "02" / "07" / "rollout-thread-2.jsonl", [
            {"type": "event_msg", "payload": {"type": "user_message", "message": [
                {"type": "input_text", "text": "look at this"}, {"type": "input_image"}]}},
            {"type": "response_item", "payload": {"type": "message", "role": "user", "content": [
                {"type": "input_text", "text": "look at this\n\n[Image attached]"}]}},
            {"type": "response_item", "payload": {"type": "message", "role": "assistant", "content": [
                {"type": "output_text", "text": "A chart."}]}},
        ])
        messages = store.load_session(CWD, "thread-2").messages
        assert [(m.type, m.content) for m in messages] == [
            ("user", "look at this\n\n[Image attached]"),
            ("assistant", "A chart."),
        ]


class TestSessionActivity:
    """Tests for transcript-based activity classification."""

    def test_recent_user_message_is_active(self, store: TranscriptStore, claude_session):
        """A fresh transcript ending on a user message is waiting for the CLI."""
        path = claude_session("s1", [user("do it")])
        status = store.get_session_activity_status(CWD, "s1", active_threshold_seconds=60,
                                                   now=mtime_of(path) + timedelta(seconds=5))
        assert status.is_active is True
        assert status.has_pending_work is True
        assert status.last_message_type == "user"

    def test_stale_tool_use_is_pending_but_inactive(self, store: TranscriptStore, claude_session):
        """Old transcripts still report unfinished work."""
        path = claude_session("s1", [
            assistant({"type": "tool_use", "name": "Bash", "id": "t1", "input": {}}),
        ])
        status = store.get_session_activity_status(CWD, "s1", active_threshold_seconds=60,
                                                   now=mtime_of(path) + timedelta(hours=1))
        assert status.is_active is False
        assert status.has_pending_work is True
        assert status.last_message_type == "tool_use"

    def test_finished_turn_is_idle(self, store: TranscriptStore, claude_session):
        """A transcript ending on assistant text owes nothing."""
        path = claude_session("s1", [user("hi"), assistant({"type": "text", "text": "hello"})])
        status = store.get_session_activity_status(CWD, "s1", now=mtime_of(path))
        assert status.is_active is False
        assert status.has_pending_work is False
        assert status.last_message_type == "assistant"
