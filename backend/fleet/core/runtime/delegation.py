"""
Agent Runtime - Delegation Blocks
=================================

Coordinator agents steer their subordinates with fenced JSON blocks
embedded in otherwise free-form output:

    ```analysis-request   ask a subordinate to investigate and report back
    ```work-plan          multi-phase plan (parallel/sequential phases, task dependencies)
    ```delegation         assign one task to one subordinate
    ```spawn              create a new subordinate agent

Every completed coordinator turn is scanned in that order, so a plan is
laid out before tasks are dispatched. Each block holds a JSON object or
array; a block that fails to parse is logged and skipped without
affecting the other blocks in the same text.
"""

import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Awaitable
from uuid import uuid4

import structlog

from fleet.core.config import settings
from fleet.core.runtime.agents import Agent, DelegationParseError, utcnow
from fleet.core.runtime.context import OrchestratorContext, OrchestratorEventKind

logger = structlog.get_logger()


class BlockKind(str, Enum):
    """Fenced directive markers."""
    ANALYSIS_REQUEST = "analysis-request"
    WORK_PLAN = "work-plan"
    DELEGATION = "delegation"
    SPAWN = "spawn"


# Fixed processing order per completed coordinator turn
PROCESSING_ORDER = (
    BlockKind.ANALYSIS_REQUEST,
    BlockKind.WORK_PLAN,
    BlockKind.DELEGATION,
    BlockKind.SPAWN,
)

VALID_AGENT_CLASSES = ("scout", "builder", "debugger", "architect", "warrior", "support")

_BLOCK_PATTERNS = {
    kind: re.compile(rf"```{re.escape(kind.value)}[ \t]*\n(.*?)\n[ \t]*```", re.DOTALL)
    for kind in BlockKind
}


# ==========================================================================
# Parsing
# ==========================================================================

def parse_block_payload(raw: str, kind: BlockKind) -> List[Dict[str, Any]]:
    """Decode one block body into a list of objects; raises DelegationParseError."""
    try:
        data = json.loads(raw.strip())
    except ValueError as e:
        raise DelegationParseError(f"Invalid JSON in {kind.value} block: {e}") from e

    items = data if isinstance(data, list) else [data]
    if not all(isinstance(item, dict) for item in items):
        raise DelegationParseError(f"{kind.value} block must hold an object or an array of objects")
    return items


def extract_blocks(text: str, kind: BlockKind) -> List[Dict[str, Any]]:
    """All directives of one kind in ``text``; malformed blocks are skipped."""
    directives: List[Dict[str, Any]] = []
    for match in _BLOCK_PATTERNS[kind].finditer(text or ""):
        try:
            directives.extend(parse_block_payload(match.group(1), kind))
        except DelegationParseError as e:
            logger.warning("Skipping malformed directive block", kind=kind.value, error=str(e))
    return directives


# ==========================================================================
# Directive Records
# ==========================================================================

@dataclass
class DelegationDecision:
    """A coordinator's choice of subordinate for one task."""
    coordinator_id: str
    task_command: str
    selected_agent_id: Optional[str]
    selected_agent_name: Optional[str] = None
    reasoning: str = ""
    confidence: str = "medium"
    alternative_agents: List[Any] = field(default_factory=list)
    status: str = "sent"
    id: str = field(default_factory=lambda: f"del-{uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "coordinator_id": self.coordinator_id,
            "task_command": self.task_command,
            "selected_agent_id": self.selected_agent_id,
            "selected_agent_name": self.selected_agent_name,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "alternative_agents": self.alternative_agents,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class WorkPlan:
    """A multi-phase plan laid out by a coordinator."""
    coordinator_id: str
    name: str
    description: str = ""
    phases: List[Dict[str, Any]] = field(default_factory=list)
    status: str = "draft"
    id: str = field(default_factory=lambda: f"plan-{uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=utcnow)

    @property
    def total_tasks(self) -> int:
        return sum(len(phase.get("tasks") or []) for phase in self.phases)

    @property
    def parallelizable_tasks(self) -> List[str]:
        """Tasks in parallel phases that are not blocked by another task."""
        task_ids = []
        for phase in self.phases:
            if phase.get("execution") != "parallel":
                continue
            for task in phase.get("tasks") or []:
                if task.get("id") and not task.get("blockedBy"):
                    task_ids.append(task["id"])
        return task_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "coordinator_id": self.coordinator_id,
            "name": self.name,
            "description": self.description,
            "phases": self.phases,
            "status": self.status,
            "total_tasks": self.total_tasks,
            "parallelizable_tasks": self.parallelizable_tasks,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class AnalysisRequest:
    """A question a coordinator sent to a subordinate."""
    coordinator_id: str
    target_agent_id: str
    query: str
    focus: List[str] = field(default_factory=list)
    status: str = "pending"
    id: str = field(default_factory=lambda: f"ar-{uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "coordinator_id": self.coordinator_id,
            "target_agent_id": self.target_agent_id,
            "query": self.query,
            "focus": list(self.focus),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ActiveDelegation:
    """Attribution of a subordinate's current task back to its coordinator."""
    coordinator_id: str
    task_description: str


def build_analysis_command(coordinator_name: str, query: str, focus: List[str]) -> str:
    focus_context = f"\n\nFocus areas: {', '.join(focus)}" if focus else ""
    return (
        f"[ANALYSIS REQUEST from {coordinator_name}]\n\n{query}{focus_context}"
        "\n\nPlease provide a detailed analysis and report back your findings."
    )


SendCommand = Callable[[str, str], Awaitable[Any]]
SpawnAgent = Callable[..., Awaitable[Agent]]


# ==========================================================================
# Router
# ==========================================================================

class DelegationRouter:
    """
    Turns coordinator directives into dispatched commands and new agents.

    ``send_command(agent_id, text)`` and ``spawn_agent(name=, agent_class=,
    cwd=, coordinator_id=)`` are injected so this module does not depend
    on the dispatcher.
    """

    def __init__(
        self,
        context: OrchestratorContext,
        send_command: SendCommand,
        spawn_agent: Optional[SpawnAgent] = None,
        dedup_window: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.context = context
        self.send_command = send_command
        self.spawn_agent = spawn_agent
        self.dedup_window = (
            dedup_window if dedup_window is not None else settings.DELEGATION_DEDUP_WINDOW_SECONDS
        )
        self.clock = clock

        self._processed: Dict[str, float] = {}
        self._active: Dict[str, ActiveDelegation] = {}
        self._last_commands: Dict[str, str] = {}
        self.delegation_history: Dict[str, List[DelegationDecision]] = {}
        self.work_plans: Dict[str, WorkPlan] = {}
        self.analysis_requests: Dict[str, AnalysisRequest] = {}

    # ------------------------------------------------------------------
    # Attribution
    # ------------------------------------------------------------------

    def get_coordinator_for(self, target_id: str) -> Optional[ActiveDelegation]:
        return self._active.get(target_id)

    def clear_delegation(self, target_id: str) -> None:
        self._active.pop(target_id, None)

    def record_coordinator_command(self, coordinator_id: str, command: str) -> None:
        """Remember the user command a coordinator is handling; delegations without a task fall back to it."""
        self._last_commands[coordinator_id] = command

    # ------------------------------------------------------------------
    # Turn hook
    # ------------------------------------------------------------------

    async def handle_turn(self, agent: Agent, text: str, success: bool = True) -> None:
        """Dispatcher turn hook: scan coordinator output, report subordinate completions."""
        if agent.is_coordinator:
            await self.process_coordinator_output(agent, text)

        delegation = self._active.get(agent.id)
        if delegation is not None:
            self.context.emit(
                OrchestratorEventKind.AGENT_TASK_COMPLETED,
                delegation.coordinator_id,
                subordinate_id=agent.id,
                subordinate_name=agent.name,
                task_description=delegation.task_description,
                success=success,
                result_preview=text[:500],
            )
            self.clear_delegation(agent.id)

    async def process_coordinator_output(self, coordinator: Agent, text: str) -> Dict[str, int]:
        """Process every directive block in ``text``; returns counts per kind."""
        counts = {}
        for kind in PROCESSING_ORDER:
            directives = extract_blocks(text, kind)
            if not directives:
                continue
            logger.info(
                "Coordinator directives found",
                coordinator_id=coordinator.id,
                kind=kind.value,
                count=len(directives),
            )
            if kind == BlockKind.ANALYSIS_REQUEST:
                counts[kind.value] = await self._handle_analysis_requests(coordinator, directives)
            elif kind == BlockKind.WORK_PLAN:
                counts[kind.value] = self._handle_work_plans(coordinator, directives)
            elif kind == BlockKind.DELEGATION:
                counts[kind.value] = await self._handle_delegations(coordinator, directives)
            else:
                counts[kind.value] = await self._handle_spawns(coordinator, directives)
        return counts

    # ------------------------------------------------------------------
    # Directive handlers
    # ------------------------------------------------------------------

    async def _handle_analysis_requests(self, coordinator: Agent, directives: List[Dict[str, Any]]) -> int:
        started = 0
        for draft in directives:
            target_id = draft.get("targetAgent")
            query = draft.get("query")
            if not target_id or not query:
                logger.warning("Analysis request missing targetAgent or query", coordinator_id=coordinator.id)
                continue

            request = AnalysisRequest(
                coordinator_id=coordinator.id,
                target_agent_id=target_id,
                query=query,
                focus=[str(f) for f in draft.get("focus") or []],
            )
            self.analysis_requests[request.id] = request
            self.context.emit(
                OrchestratorEventKind.ANALYSIS_REQUEST_CREATED, coordinator.id, request=request.to_dict(),
            )

            command = build_analysis_command(coordinator.name or coordinator.id, query, request.focus)
            if await self._dispatch(coordinator, target_id, command):
                request.status = "running"
                started += 1
            else:
                request.status = "failed"
        return started

    def _handle_work_plans(self, coordinator: Agent, directives: List[Dict[str, Any]]) -> int:
        created = 0
        for draft in directives:
            phases = draft.get("phases")
            if not draft.get("name") or not isinstance(phases, list):
                logger.warning("Work plan missing name or phases", coordinator_id=coordinator.id)
                continue
            plan = WorkPlan(
                coordinator_id=coordinator.id,
                name=draft["name"],
                description=draft.get("description") or "",
                phases=[phase for phase in phases if isinstance(phase, dict)],
            )
            self.work_plans[plan.id] = plan
            self.context.emit(OrchestratorEventKind.WORK_PLAN_CREATED, coordinator.id, work_plan=plan.to_dict())
            logger.info(
                "Work plan created",
                coordinator_id=coordinator.id,
                plan=plan.name,
                tasks=plan.total_tasks,
                parallelizable=len(plan.parallelizable_tasks),
            )
            created += 1
        return created

    async def _handle_delegations(self, coordinator: Agent, directives: List[Dict[str, Any]]) -> int:
        now = self.clock()
        for key, seen_at in list(self._processed.items()):
            if now - seen_at > self.dedup_window:
                del self._processed[key]

        fallback_command = self._last_commands.get(coordinator.id) or coordinator.last_assigned_task or ""
        dispatched = 0
        for draft in directives:
            task_command = draft.get("taskCommand") or fallback_command
            target_id = draft.get("selectedAgentId")
            dedup_key = f"{coordinator.id}:{target_id}:{task_command}"
            if dedup_key in self._processed:
                logger.info("Skipping duplicate delegation", coordinator_id=coordinator.id, target_id=target_id)
                continue
            self._processed[dedup_key] = now

            decision = DelegationDecision(
                coordinator_id=coordinator.id,
                task_command=task_command,
                selected_agent_id=target_id,
                selected_agent_name=draft.get("selectedAgentName"),
                reasoning=draft.get("reasoning") or "",
                confidence=draft.get("confidence") or "medium",
                alternative_agents=draft.get("alternativeAgents") or [],
            )
            self.delegation_history.setdefault(coordinator.id, []).append(decision)
            self.context.emit(OrchestratorEventKind.DELEGATION_DECISION, coordinator.id, decision=decision.to_dict())

            if not target_id or not task_command:
                continue
            self.context.emit(
                OrchestratorEventKind.AGENT_OUTPUT,
                target_id,
                text=f"Task delegated from {coordinator.name or coordinator.id}:\n\n{task_command}",
                is_streaming=False,
                is_delegation=True,
            )
            if await self._dispatch(coordinator, target_id, task_command):
                dispatched += 1
            else:
                decision.status = "failed"
        return dispatched

    async def _handle_spawns(self, coordinator: Agent, directives: List[Dict[str, Any]]) -> int:
        if self.spawn_agent is None:
            logger.warning("Spawn directives ignored, no spawner configured", coordinator_id=coordinator.id)
            return 0

        spawned = 0
        for draft in directives:
            name = draft.get("name")
            agent_class = draft.get("class")
            if not name or not agent_class:
                logger.warning("Spawn request missing name or class", coordinator_id=coordinator.id)
                continue
            if agent_class not in VALID_AGENT_CLASSES:
                logger.warning(
                    "Invalid agent class in spawn request",
                    coordinator_id=coordinator.id,
                    agent_class=agent_class,
                    valid=list(VALID_AGENT_CLASSES),
                )
                continue

            try:
                agent = await self.spawn_agent(
                    name=name,
                    agent_class=agent_class,
                    cwd=draft.get("cwd") or coordinator.cwd,
                    coordinator_id=coordinator.id,
                )
            except Exception as e:
                logger.error("Spawn request failed", coordinator_id=coordinator.id, name=name, error=str(e))
                continue

            subordinates = list(coordinator.subordinate_ids)
            if agent.id not in subordinates:
                subordinates.append(agent.id)
                self.context.update_agent(coordinator.id, subordinate_ids=subordinates)
            self.context.emit(
                OrchestratorEventKind.COORDINATOR_SPAWNED_AGENT,
                coordinator.id,
                agent=agent.to_dict(),
                subordinate_ids=subordinates,
            )
            logger.info("Coordinator spawned agent", coordinator_id=coordinator.id, agent_id=agent.id)
            spawned += 1
        return spawned

    async def _dispatch(self, coordinator: Agent, target_id: str, command: str) -> bool:
        """Send ``command`` to ``target_id`` and attribute it to the coordinator."""
        if self.context.get_agent(target_id) is None:
            logger.warning("Directive targets unknown agent", coordinator_id=coordinator.id, target_id=target_id)
            return False

        self._active[target_id] = ActiveDelegation(coordinator_id=coordinator.id, task_description=command)
        self.context.emit(
            OrchestratorEventKind.AGENT_TASK_STARTED,
            coordinator.id,
            subordinate_id=target_id,
            task_description=command,
        )
        try:
            await self.send_command(target_id, command)
        except Exception as e:
            logger.error("Failed to dispatch directive", coordinator_id=coordinator.id, target_id=target_id,
                         error=str(e))
            self.clear_delegation(target_id)
            return False
        logger.info("Directive dispatched", coordinator_id=coordinator.id, target_id=target_id, chars=len(command))
        return True
