"""
Agent Runtime - Orchestrator Context
====================================

Explicit context object shared by every runtime component. It owns the
agent table and the subscribe/emit surface, so components never reach
for module-level registries.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Iterable
from uuid import uuid4

import structlog

from fleet.core.runtime.agents import Agent, AgentStatus, AgentNotFoundError, utcnow

logger = structlog.get_logger()


# ==========================================================================
# Orchestrator Events
# ==========================================================================

class OrchestratorEventKind(str, Enum):
    """Events published to context subscribers."""
    AGENT_CREATED = "agent_created"
    AGENT_UPDATED = "agent_updated"
    AGENT_DELETED = "agent_deleted"
    AGENT_EVENT = "agent_event"            # a NormalizedEvent from the agent's process
    AGENT_OUTPUT = "agent_output"          # human-readable output line
    AGENT_ERROR = "agent_error"
    AGENT_COMPLETE = "agent_complete"      # the agent's process exited
    COMMAND_STARTED = "command_started"
    SESSION_ID = "session_id"
    DELEGATION_DECISION = "delegation_decision"
    AGENT_TASK_STARTED = "agent_task_started"
    AGENT_TASK_COMPLETED = "agent_task_completed"
    WORK_PLAN_CREATED = "work_plan_created"
    ANALYSIS_REQUEST_CREATED = "analysis_request_created"
    COORDINATOR_SPAWNED_AGENT = "coordinator_spawned_agent"


@dataclass
class OrchestratorEvent:
    """Envelope delivered to subscribers."""
    kind: OrchestratorEventKind
    agent_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "agent_id": self.agent_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


Listener = Callable[[OrchestratorEvent], Any]


# ==========================================================================
# Context
# ==========================================================================

class OrchestratorContext:
    """
    Agent table plus publish/subscribe surface.

    Listeners may be plain callables or coroutine functions; coroutine
    results are scheduled on the running loop. A failing listener is
    logged and never breaks delivery to the others.
    """

    def __init__(self, agents: Optional[Iterable[Agent]] = None):
        self.agents: Dict[str, Agent] = {}
        self._listeners: List[Listener] = []
        self._pending: set = set()
        for agent in agents or []:
            self.agents[agent.id] = agent

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(
        self,
        kind: OrchestratorEventKind,
        agent_id: Optional[str] = None,
        /,
        **payload: Any,
    ) -> OrchestratorEvent:
        event = OrchestratorEvent(kind=kind, agent_id=agent_id, payload=payload)
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._pending.discard)
            except Exception as e:
                logger.error("Listener failed", kind=kind.value, agent_id=agent_id, error=str(e))
        return event

    # ------------------------------------------------------------------
    # Agent table
    # ------------------------------------------------------------------

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self.agents.get(agent_id)

    def require_agent(self, agent_id: str) -> Agent:
        agent = self.agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def list_agents(self, status: Optional[AgentStatus] = None) -> List[Agent]:
        agents = list(self.agents.values())
        if status is not None:
            agents = [a for a in agents if a.status == status]
        return agents

    def add_agent(self, agent: Agent) -> Agent:
        self.agents[agent.id] = agent
        logger.info("Agent registered", agent_id=agent.id, name=agent.name, backend=agent.backend.value)
        self.emit(OrchestratorEventKind.AGENT_CREATED, agent.id, agent=agent.to_dict())
        return agent

    def remove_agent(self, agent_id: str) -> bool:
        agent = self.agents.pop(agent_id, None)
        if agent is None:
            return False
        logger.info("Agent removed", agent_id=agent_id)
        self.emit(OrchestratorEventKind.AGENT_DELETED, agent_id)
        return True

    def update_agent(self, agent_id: str, **changes: Any) -> bool:
        """
        Apply attribute changes to an agent.

        Emits a single AGENT_UPDATED event listing the fields that actually
        changed; returns False (and emits nothing) when every value was
        already current, which keeps periodic callers idempotent.
        """
        agent = self.agents.get(agent_id)
        if agent is None:
            return False

        changed: Dict[str, Any] = {}
        for key, value in changes.items():
            if not hasattr(agent, key):
                raise AttributeError(f"Agent has no field {key!r}")
            if getattr(agent, key) != value:
                setattr(agent, key, value)
                changed[key] = value.value if isinstance(value, Enum) else value

        if not changed:
            return False

        self.emit(OrchestratorEventKind.AGENT_UPDATED, agent_id, changes=changed, agent=agent.to_dict())
        return True

    def set_status(self, agent_id: str, status: AgentStatus, **changes: Any) -> bool:
        agent = self.agents.get(agent_id)
        if agent is None:
            return False
        previous = agent.status
        updated = self.update_agent(agent_id, status=status, **changes)
        if updated and previous != status:
            logger.info(
                "Agent status changed",
                agent_id=agent_id,
                from_status=previous.value,
                to_status=status.value,
            )
        return updated
