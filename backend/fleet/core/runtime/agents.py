"""
Agent Runtime - Agent Model
===========================

In-memory agent records, status enum, error taxonomy and exceptions.

An Agent is created on an agent-creation request, mutated only by the
dispatcher and the reconciler (through the orchestrator context), and
destroyed on explicit deletion. Persistence of the registry belongs to
the embedding application.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from uuid import uuid4


# ==========================================================================
# Enums
# ==========================================================================

class AgentStatus(str, Enum):
    """Agent lifecycle status."""
    IDLE = "idle"
    WORKING = "working"
    ERROR = "error"
    ORPHANED = "orphaned"


class AgentBackend(str, Enum):
    """Closed set of supported external agent CLIs."""
    CLAUDE = "claude"
    CODEX = "codex"


class PermissionMode(str, Enum):
    """How tool permissions are granted to the external agent."""
    BYPASS = "bypass"
    INTERACTIVE = "interactive"


class ErrorKind(str, Enum):
    """Error taxonomy for agent-scoped failures."""
    SPAWN_FAILURE = "spawn_failure"
    STDIN_WRITE_FAILURE = "stdin_write_failure"
    PROCESS_EXIT_NONZERO = "process_exit_nonzero"
    MALFORMED_EVENT_LINE = "malformed_event_line"
    SESSION_FILE_NOT_FOUND = "session_file_not_found"
    RECONCILIATION_AMBIGUITY = "reconciliation_ambiguity"
    DELEGATION_PARSE_FAILURE = "delegation_parse_failure"
    RUNTIME_ERROR = "runtime_error"


# Task texts starting with this prefix are generated by the orchestrator itself
SYSTEM_MESSAGE_PREFIX = "[System:"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================================================
# Exceptions
# ==========================================================================

class FleetError(Exception):
    """Base error for the agent runtime."""


class AgentNotFoundError(FleetError):
    """No agent with the given id is registered."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent {agent_id} not found")
        self.agent_id = agent_id


class SpawnFailure(FleetError):
    """The external agent process could not be launched."""


class ExecutableNotFoundError(SpawnFailure):
    """The external agent executable could not be located."""


class AgentBusyError(FleetError):
    """A process is already bound to the agent and the caller asked not to supersede it."""


class DelegationParseError(FleetError):
    """A fenced directive block did not contain valid structured data."""


# ==========================================================================
# Agent Records
# ==========================================================================

@dataclass
class LastError:
    """Most recent error recorded for an agent process."""
    kind: ErrorKind
    message: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class CodexOptions:
    """Codex-specific invocation options."""
    full_auto: bool = True
    approval_mode: Optional[str] = None
    sandbox: Optional[str] = None
    search: bool = False
    profile: Optional[str] = None


@dataclass
class Agent:
    """A managed logical agent bound to at most one external process."""
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    name: str = ""
    backend: AgentBackend = AgentBackend.CLAUDE
    cwd: str = "."
    status: AgentStatus = AgentStatus.IDLE

    # Session (assigned by the external tool)
    session_id: Optional[str] = None

    # Invocation options
    model: Optional[str] = None
    permission_mode: PermissionMode = PermissionMode.BYPASS
    use_chrome: bool = False
    system_prompt: Optional[str] = None
    codex: CodexOptions = field(default_factory=CodexOptions)

    # Coordinator agents have their completed turns scanned for directives
    is_coordinator: bool = False
    agent_class: Optional[str] = None
    subordinate_ids: List[str] = field(default_factory=list)

    # Work tracking
    current_task: Optional[str] = None
    current_tool: Optional[str] = None
    last_assigned_task: Optional[str] = None
    last_assigned_task_time: Optional[datetime] = None
    task_count: int = 0
    last_activity: Optional[datetime] = None

    # Usage accounting
    tokens_used: int = 0
    context_used: int = 0
    context_limit: int = 200_000

    # Diagnostics
    restart_count: int = 0
    last_error: Optional[LastError] = None

    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "backend": self.backend.value,
            "cwd": self.cwd,
            "status": self.status.value,
            "session_id": self.session_id,
            "model": self.model,
            "permission_mode": self.permission_mode.value,
            "is_coordinator": self.is_coordinator,
            "agent_class": self.agent_class,
            "subordinate_ids": list(self.subordinate_ids),
            "current_task": self.current_task,
            "current_tool": self.current_tool,
            "last_assigned_task": self.last_assigned_task,
            "last_assigned_task_time": (
                self.last_assigned_task_time.isoformat() if self.last_assigned_task_time else None
            ),
            "task_count": self.task_count,
            "tokens_used": self.tokens_used,
            "context_used": self.context_used,
            "context_limit": self.context_limit,
            "restart_count": self.restart_count,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "created_at": self.created_at.isoformat(),
        }
