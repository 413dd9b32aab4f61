"""
Agent Runtime
=============

Process orchestration and protocol normalization for external agent CLIs.

Components:
- Backends: protocol adapters (Claude streaming JSON, Codex exec JSON)
- ProcessRunner: one supervised process per agent
- TranscriptStore: session transcript loading and activity status
- ActivityReconciler: status recomputation from process, transcript and OS signals
- CommandDispatcher: command entrypoint and agent state machine
- DelegationRouter: coordinator directive blocks
- AgentRuntime: wiring, periodic timers, auto-resume
"""

from fleet.core.runtime.agents import (
    Agent,
    AgentBackend,
    AgentBusyError,
    AgentNotFoundError,
    AgentStatus,
    DelegationParseError,
    ErrorKind,
    ExecutableNotFoundError,
    FleetError,
    LastError,
    SpawnFailure,
)
from fleet.core.runtime.context import OrchestratorContext, OrchestratorEvent, OrchestratorEventKind
from fleet.core.runtime.events import NormalizedEvent, NormalizedEventType, TokenUsage
from fleet.core.runtime.runner import ProcessRunner, RunnerCallbacks
from fleet.core.runtime.transcripts import TranscriptStore
from fleet.core.runtime.reconciler import ActivityReconciler
from fleet.core.runtime.dispatcher import CommandDispatcher, DispatchMode
from fleet.core.runtime.delegation import DelegationRouter
from fleet.core.runtime.service import AgentRuntime, get_runtime

__all__ = [
    "ActivityReconciler",
    "Agent",
    "AgentBackend",
    "AgentBusyError",
    "AgentNotFoundError",
    "AgentRuntime",
    "AgentStatus",
    "CommandDispatcher",
    "DelegationParseError",
    "DelegationRouter",
    "DispatchMode",
    "ErrorKind",
    "ExecutableNotFoundError",
    "FleetError",
    "LastError",
    "NormalizedEvent",
    "NormalizedEventType",
    "OrchestratorContext",
    "OrchestratorEvent",
    "OrchestratorEventKind",
    "ProcessRunner",
    "RunnerCallbacks",
    "SpawnFailure",
    "TokenUsage",
    "TranscriptStore",
    "get_runtime",
]
