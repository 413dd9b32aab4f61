"""
Agent Runtime - Session Transcripts
===================================

Read-only access to the append-only JSONL transcripts the agent CLIs
write for every session.

Locations:
- Claude: ``CLAUDE_HOME/projects/<encoded cwd>/<session_id>.jsonl``
- Codex:  ``CODEX_HOME/sessions/YYYY/MM/DD/*<session_id>.jsonl``

Both formats are normalized into SessionMessage records
(user / assistant / tool_use / tool_result). Missing files and invalid
lines never raise: loaders return None or empty results.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterator, Tuple

import structlog

from fleet.core.config import settings
from fleet.core.runtime.agents import utcnow

logger = structlog.get_logger()


TOOL_RESULT_PREVIEW_CHARS = 500
ACTIVITY_SCAN_LINES = 10
IMAGE_PLACEHOLDER = "[Image attached]"

# Last message types after which the CLI still owes a response
WAITING_MESSAGE_TYPES = {"user", "tool_use", "tool_result"}

FILE_ACTIONS = {"Write": "created", "Edit": "modified", "Read": "read"}


# ==========================================================================
# Data Structures
# ==========================================================================

@dataclass
class SessionMessage:
    """One normalized transcript message."""
    type: str  # user, assistant, tool_use, tool_result
    content: str
    timestamp: Optional[str] = None
    uuid: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    tool_use_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "content": self.content,
            "timestamp": self.timestamp,
            "uuid": self.uuid,
        }
        if self.tool_name is not None:
            data["tool_name"] = self.tool_name
        if self.tool_input is not None:
            data["tool_input"] = self.tool_input
        if self.tool_use_id is not None:
            data["tool_use_id"] = self.tool_use_id
        return data


@dataclass
class ConversationHistory:
    """A page of messages counted from the end of the transcript."""
    session_id: str
    cwd: str
    messages: List[SessionMessage] = field(default_factory=list)
    total_count: int = 0
    has_more: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "cwd": self.cwd,
            "messages": [m.to_dict() for m in self.messages],
            "total_count": self.total_count,
            "has_more": self.has_more,
        }


@dataclass
class SessionInfo:
    session_id: str
    project_path: str
    last_modified: datetime
    message_count: int


@dataclass
class SessionActivityStatus:
    """What the transcript says about an agent's recent activity."""
    is_active: bool  # recently modified and waiting for a response
    has_pending_work: bool  # waiting for a response, regardless of age
    last_modified: datetime
    last_message_type: Optional[str]
    last_message_timestamp: Optional[datetime]
    seconds_since_last_activity: float


@dataclass
class ToolExecution:
    tool_name: str
    tool_input: Optional[Dict[str, Any]]
    timestamp: Optional[datetime]
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None


@dataclass
class FileChange:
    action: str  # created, modified, read
    file_path: str
    timestamp: Optional[datetime]
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None


@dataclass
class ToolHistory:
    tool_executions: List[ToolExecution] = field(default_factory=list)
    file_changes: List[FileChange] = field(default_factory=list)


# ==========================================================================
# Helpers
# ==========================================================================

def encode_project_path(cwd: str) -> str:
    """
    Claude's project directory name for a working directory.

    /home/user/my_project/ -> -home-user-my-project
    """
    return cwd.rstrip("/").replace("/", "-").replace("_", "-")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _truncate(text: str, limit: int = TOOL_RESULT_PREVIEW_CHARS) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def _as_text(content: Any) -> str:
    return content if isinstance(content, str) else json.dumps(content)


def _iter_entries(path: Path) -> Iterator[Dict[str, Any]]:
    """Decoded JSON objects of a transcript; invalid lines are skipped."""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except ValueError:
                continue
            if isinstance(entry, dict):
                yield entry


# ==========================================================================
# Entry normalization
# ==========================================================================

def normalize_claude_entry(entry: Dict[str, Any]) -> List[SessionMessage]:
    message = entry.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not content:
        return []
    timestamp, uuid = entry.get("timestamp"), entry.get("uuid")
    kind = entry.get("type")
    messages = []

    if kind == "user":
        if not isinstance(content, list):
            return [SessionMessage("user", _as_text(content), timestamp, uuid)]
        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                messages.append(SessionMessage(
                    "tool_result",
                    _truncate(_as_text(block.get("content"))),
                    timestamp,
                    uuid,
                    tool_name=block.get("tool_use_id"),
                    tool_use_id=block.get("tool_use_id"),
                ))

    elif kind == "assistant":
        if isinstance(content, str):
            return [SessionMessage("assistant", content, timestamp, uuid)]
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                messages.append(SessionMessage("assistant", block["text"], timestamp, uuid))
            elif block.get("type") == "tool_use" and block.get("name"):
                tool_input = block.get("input") or {}
                messages.append(SessionMessage(
                    "tool_use",
                    json.dumps(tool_input, indent=2),
                    timestamp,
                    uuid,
                    tool_name=block["name"],
                    tool_input=tool_input,
                    tool_use_id=block.get("id"),
                ))
            # thinking blocks are not part of the displayed history

    return messages


class _CodexNormalizer:
    """Stateful pass over a Codex transcript (tool names are keyed by call id)."""

    def __init__(self):
        self.tool_names: Dict[str, str] = {}
        self.last_user_text: Optional[str] = None
        self.last_assistant_text: Optional[str] = None

    def normalize(self, entry: Dict[str, Any]) -> List[SessionMessage]:
        payload = entry.get("payload")
        if not isinstance(payload, dict):
            return []
        timestamp = entry.get("timestamp")
        kind, payload_type = entry.get("type"), payload.get("type")

        if kind == "event_msg" and payload_type == "user_message":
            text = self._user_message_text(payload.get("message"))
            if not text:
                return []
            self.last_user_text = text
            return [SessionMessage("user", text, timestamp)]

        if kind != "response_item":
            return []

        if payload_type == "function_call":
            return [self._function_call(payload, timestamp)]

        if payload_type == "function_call_output":
            call_id = payload.get("call_id")
            return [SessionMessage(
                "tool_result",
                _as_text(payload.get("output") or ""),
                timestamp,
                tool_name=self.tool_names.get(call_id, call_id),
                tool_use_id=call_id,
            )]

        if payload_type == "message":
            return self._message(payload, timestamp)
        return []

    def _function_call(self, payload: Dict[str, Any], timestamp: Optional[str]) -> SessionMessage:
        name = payload.get("name") or "unknown"
        try:
            arguments = json.loads(payload.get("arguments") or "{}")
        except ValueError:
            arguments = {"raw": payload.get("arguments")}
        if not isinstance(arguments, dict):
            arguments = {"value": arguments}

        if name in ("exec_command", "shell"):
            command = arguments.get("cmd") or arguments.get("command")
            if isinstance(command, list):
                command = " ".join(str(part) for part in command)
            tool_name = "Bash"
            tool_input = {**arguments, "cmd": command, "command": command}
        else:
            tool_name, tool_input = name, arguments

        call_id = payload.get("call_id")
        if call_id:
            self.tool_names[call_id] = tool_name
        return SessionMessage(
            "tool_use",
            json.dumps(tool_input, indent=2),
            timestamp,
            tool_name=tool_name,
            tool_input=tool_input,
            tool_use_id=call_id,
        )

    def _message(self, payload: Dict[str, Any], timestamp: Optional[str]) -> List[SessionMessage]:
        role = payload.get("role")
        parts = payload.get("content") if isinstance(payload.get("content"), list) else []
        texts = [
            p.get("text") for p in parts
            if isinstance(p, dict) and p.get("type") in ("input_text", "output_text", "text") and p.get("text")
        ]
        text = "\n".join(texts).strip()

        if role == "user":
            # The same input is also logged as an event_msg; image-only copies carry nothing new
            if not text or text == self.last_user_text:
                return []
            self.last_user_text = text
            return [SessionMessage("user", text, timestamp)]
        if role == "assistant":
            if not text or text == self.last_assistant_text:
                return []
            self.last_assistant_text = text
            return [SessionMessage("assistant", text, timestamp)]
        return []

    @staticmethod
    def _user_message_text(message: Any) -> str:
        parts: Any = message
        if isinstance(message, str):
            stripped = message.strip()
            if not stripped.startswith("["):
                return stripped
            try:
                parts = json.loads(stripped)
            except ValueError:
                return stripped
        if not isinstance(parts, list):
            return ""

        texts = []
        for part in parts:
            if not isinstance(part, dict):
                continue
            if part.get("type") in ("input_text", "text") and part.get("text"):
                texts.append(part["text"].strip())
            elif part.get("type") in ("input_image", "image"):
                texts.append(IMAGE_PLACEHOLDER)
        return "\n\n".join(t for t in texts if t)


# ==========================================================================
# Transcript Store
# ==========================================================================

class TranscriptStore:
    """Locates and reads session transcripts for both backends."""

    def __init__(self, claude_home: Optional[Path] = None, codex_home: Optional[Path] = None):
        self.claude_home = Path(claude_home) if claude_home else settings.CLAUDE_HOME
        self.codex_home = Path(codex_home) if codex_home else settings.CODEX_HOME

    # ------------------------------------------------------------------
    # Locations
    # ------------------------------------------------------------------

    def project_dir(self, cwd: str) -> Path:
        return self.claude_home / "projects" / encode_project_path(cwd)

    def find_session_file(self, cwd: str, session_id: str) -> Optional[Path]:
        if not session_id:
            return None
        claude_file = self.project_dir(cwd) / f"{session_id}.jsonl"
        if claude_file.exists():
            return claude_file
        sessions_dir = self.codex_home / "sessions"
        if sessions_dir.is_dir():
            matches = sorted(sessions_dir.rglob(f"*{session_id}.jsonl"))
            if matches:
                return matches[-1]
        return None

    def _is_codex_file(self, path: Path) -> bool:
        try:
            path.relative_to(self.codex_home)
            return True
        except ValueError:
            return False

    def read_messages(self, path: Path) -> List[SessionMessage]:
        messages: List[SessionMessage] = []
        try:
            if self._is_codex_file(path):
                normalizer = _CodexNormalizer()
                for entry in _iter_entries(path):
                    messages.extend(normalizer.normalize(entry))
            else:
                for entry in _iter_entries(path):
                    messages.extend(normalize_claude_entry(entry))
        except OSError as e:
            logger.warning("Failed to read transcript", path=str(path), error=str(e))
        return messages

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def load_session(self, cwd: str, session_id: str, limit: int = 50, offset: int = 0) -> Optional[ConversationHistory]:
        """
        Load a page of messages counted from the end.

        offset=0, limit=50 returns the 50 most recent messages;
        offset=50 the 50 before those.
        """
        path = self.find_session_file(cwd, session_id)
        if path is None:
            logger.debug("Session file not found", cwd=cwd, session_id=session_id)
            return None

        messages = self.read_messages(path)
        total = len(messages)
        end = total - offset
        start = max(0, end - limit)
        page = messages[start:end] if end > 0 else []
        return ConversationHistory(
            session_id=session_id,
            cwd=cwd,
            messages=page,
            total_count=total,
            has_more=start > 0,
        )

    def search_session(self, cwd: str, session_id: str, query: str, limit: int = 50) -> Optional[Dict[str, Any]]:
        """Case-insensitive search; returns the most recent ``limit`` matches."""
        path = self.find_session_file(cwd, session_id)
        if path is None:
            return None

        needle = query.lower()
        matches = []
        for message in self.read_messages(path):
            haystack = message.content.lower()
            if message.type == "tool_use":
                haystack = f"{(message.tool_name or '').lower()} {haystack}"
            if needle in haystack:
                matches.append(SessionMessage(
                    message.type,
                    _truncate(message.content),
                    message.timestamp,
                    message.uuid,
                    tool_name=message.tool_name,
                    tool_use_id=message.tool_use_id,
                ))
        return {"matches": matches[-limit:], "total_matches": len(matches)}

    def list_sessions(self, cwd: str) -> List[SessionInfo]:
        """Claude sessions of a project, newest first."""
        project_dir = self.project_dir(cwd)
        if not project_dir.is_dir():
            return []

        sessions = []
        for path in project_dir.glob("*.jsonl"):
            try:
                mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
                count = sum(1 for e in _iter_entries(path) if e.get("type") in ("user", "assistant"))
            except OSError:
                continue
            sessions.append(SessionInfo(path.stem, cwd, mtime, count))

        sessions.sort(key=lambda s: s.last_modified, reverse=True)
        return sessions

    def find_latest_session(self, cwd: str) -> Optional[str]:
        sessions = self.list_sessions(cwd)
        return sessions[0].session_id if sessions else None

    def load_tool_history(
        self,
        cwd: str,
        session_id: str,
        agent_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        limit: int = 100,
    ) -> ToolHistory:
        """Tool executions and file changes, newest first."""
        history = ToolHistory()
        path = self.find_session_file(cwd, session_id)
        if path is None:
            return history

        for message in self.read_messages(path):
            if message.type != "tool_use" or not message.tool_name:
                continue
            timestamp = parse_timestamp(message.timestamp)
            history.tool_executions.append(ToolExecution(
                message.tool_name, message.tool_input, timestamp, agent_id, agent_name,
            ))
            tool_input = message.tool_input or {}
            file_path = tool_input.get("file_path") or tool_input.get("path")
            action = FILE_ACTIONS.get(message.tool_name)
            if action and isinstance(file_path, str):
                history.file_changes.append(FileChange(action, file_path, timestamp, agent_id, agent_name))

        history.tool_executions = history.tool_executions[-limit:][::-1]
        history.file_changes = history.file_changes[-limit:][::-1]
        return history

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    def get_session_activity_status(
        self,
        cwd: str,
        session_id: str,
        active_threshold_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Optional[SessionActivityStatus]:
        """
        Classify the session from its modification time and last message.

        The CLI owes a response when the last message is a user message,
        a tool invocation, or a tool result. ``is_active`` additionally
        requires the file to have been written inside the threshold.
        """
        threshold = (
            active_threshold_seconds if active_threshold_seconds is not None
            else settings.ACTIVITY_WINDOW_SECONDS
        )
        path = self.find_session_file(cwd, session_id)
        if path is None:
            return None

        try:
            last_modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            return None
        seconds_since = ((now or utcnow()) - last_modified).total_seconds()

        if self._is_codex_file(path):
            last_type, last_timestamp = self._last_codex_message(path)
        else:
            last_type, last_timestamp = self._last_claude_message(path)

        waiting = last_type in WAITING_MESSAGE_TYPES
        return SessionActivityStatus(
            is_active=waiting and seconds_since < threshold,
            has_pending_work=waiting,
            last_modified=last_modified,
            last_message_type=last_type,
            last_message_timestamp=last_timestamp,
            seconds_since_last_activity=seconds_since,
        )

    @staticmethod
    def _last_claude_message(path: Path) -> Tuple[Optional[str], Optional[datetime]]:
        try:
            lines = [l for l in path.read_text(encoding="utf-8", errors="replace").splitlines() if l.strip()]
        except OSError as e:
            logger.error("Failed to read transcript for activity check", path=str(path), error=str(e))
            return None, None

        for line in reversed(lines[-ACTIVITY_SCAN_LINES:]):
            try:
                entry = json.loads(line)
            except ValueError:
                continue
            if not isinstance(entry, dict):
                continue
            timestamp = parse_timestamp(entry.get("timestamp"))
            message = entry.get("message") if isinstance(entry.get("message"), dict) else {}
            content = message.get("content")
            blocks = [b for b in content if isinstance(b, dict)] if isinstance(content, list) else []
            if entry.get("type") == "user":
                has_result = any(b.get("type") == "tool_result" for b in blocks)
                return ("tool_result" if has_result else "user"), timestamp
            if entry.get("type") == "assistant":
                has_tool_use = any(b.get("type") == "tool_use" for b in blocks)
                return ("tool_use" if has_tool_use else "assistant"), timestamp
        return None, None

    def _last_codex_message(self, path: Path) -> Tuple[Optional[str], Optional[datetime]]:
        messages = self.read_messages(path)
        if not messages:
            return None, None
        last = messages[-1]
        return last.type, parse_timestamp(last.timestamp)
