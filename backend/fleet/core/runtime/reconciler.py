"""
Agent Runtime - Activity Reconciler
===================================

Recomputes an agent's true status when the runner's process table
cannot be trusted (typically right after an orchestrator restart).

Signals, in strict precedence:
1. Runner-tracked process: authoritative, reconciliation is a no-op.
2. Transcript: recently written and ending in a message the CLI still
   owes a response to means "recently active with pending work".
3. OS scan: a live agent CLI in the agent's cwd that the runner does not
   track is an orphan.

Transition policy (first matching rule wins, unchanged otherwise):
- working + no live process + not recently active  -> idle
- idle + recently active with pending work         -> working
- idle/error + orphaned live process               -> orphaned
- orphaned + no orphaned process left              -> idle

Transitions go through OrchestratorContext.set_status, which only emits
when a value actually changes, so repeated runs under unchanged
conditions are silent.
"""

import asyncio
from typing import Optional, Dict, Iterable, Callable

import structlog

from fleet.core.config import settings
from fleet.core.runtime.agents import Agent, AgentBackend, AgentStatus
from fleet.core.runtime.context import OrchestratorContext
from fleet.core.runtime.process_scan import ProcessScanner
from fleet.core.runtime.runner import ProcessRunner
from fleet.core.runtime.transcripts import TranscriptStore

logger = structlog.get_logger()


BACKEND_EXECUTABLES = {
    AgentBackend.CLAUDE: ("claude",),
    AgentBackend.CODEX: ("codex",),
}

RECOVERED_TASK_TEXT = "Processing..."


class ActivityReconciler:
    """Applies the transition policy to one or all agents."""

    def __init__(
        self,
        context: OrchestratorContext,
        runner: ProcessRunner,
        transcripts: Optional[TranscriptStore] = None,
        scanner: Optional[ProcessScanner] = None,
        activity_window: Optional[float] = None,
        executables: Optional[Callable[[Agent], Iterable[str]]] = None,
    ):
        self.context = context
        self.runner = runner
        self.transcripts = transcripts or TranscriptStore()
        self.scanner = scanner or ProcessScanner()
        self.activity_window = (
            activity_window if activity_window is not None else settings.ACTIVITY_WINDOW_SECONDS
        )
        self.executables = executables or (lambda agent: BACKEND_EXECUTABLES[agent.backend])

    # ==========================================================================
    # Signals
    # ==========================================================================

    def is_recently_active(self, agent: Agent) -> bool:
        if not agent.session_id or not agent.cwd:
            return False
        try:
            activity = self.transcripts.get_session_activity_status(
                agent.cwd, agent.session_id, self.activity_window,
            )
        except Exception as e:
            logger.warning("Transcript activity check failed", agent_id=agent.id, error=str(e))
            return False
        return bool(activity and activity.is_active)

    async def has_orphaned_process(self, agent: Agent) -> bool:
        if not agent.cwd:
            return False
        try:
            found = await self.scanner.find_processes_in_cwd(
                agent.cwd,
                self.executables(agent),
                exclude_pids=self.runner.tracked_pids(),
            )
        except Exception as e:
            logger.error("Orphan process scan failed", agent_id=agent.id, error=str(e))
            return False
        return bool(found)

    # ==========================================================================
    # Reconciliation
    # ==========================================================================

    async def reconcile_agent(self, agent: Agent) -> Optional[AgentStatus]:
        """Apply the transition policy; returns the new status, or None if unchanged."""
        if self.runner.is_running(agent.id):
            return None

        status = agent.status
        recently_active = self.is_recently_active(agent)

        if status == AgentStatus.WORKING:
            if recently_active or await self.has_orphaned_process(agent):
                return None
            return self._transition(agent, AgentStatus.IDLE, current_task=None, current_tool=None)

        if status == AgentStatus.IDLE:
            if recently_active:
                return self._transition(agent, AgentStatus.WORKING, current_task=RECOVERED_TASK_TEXT)
            if await self.has_orphaned_process(agent):
                return self._transition(agent, AgentStatus.ORPHANED)
            return None

        if status == AgentStatus.ERROR:
            if await self.has_orphaned_process(agent):
                return self._transition(agent, AgentStatus.ORPHANED)
            return None

        if status == AgentStatus.ORPHANED:
            if not await self.has_orphaned_process(agent):
                return self._transition(agent, AgentStatus.IDLE, current_task=None, current_tool=None)
            return None

        return None

    def _transition(self, agent: Agent, status: AgentStatus, **changes) -> Optional[AgentStatus]:
        previous = agent.status
        if not self.context.set_status(agent.id, status, **changes):
            return None
        logger.info(
            "Reconciled agent status",
            agent_id=agent.id,
            from_status=previous.value,
            to_status=status.value,
        )
        return status

    async def reconcile_all(self, startup: bool = False) -> Dict[str, AgentStatus]:
        """Reconcile every agent; returns the agents whose status changed."""
        changed: Dict[str, AgentStatus] = {}
        agents = self.context.list_agents()
        results = await asyncio.gather(
            *(self.reconcile_agent(agent) for agent in agents),
            return_exceptions=True,
        )
        for agent, result in zip(agents, results):
            if isinstance(result, Exception):
                logger.error("Reconciliation failed", agent_id=agent.id, error=str(result))
            elif result is not None:
                changed[agent.id] = result

        if startup:
            logger.info(
                "Startup reconciliation complete",
                agents=len(agents),
                changed={agent_id: status.value for agent_id, status in changed.items()},
            )
        return changed

    async def poll_orphans(self) -> Dict[str, AgentStatus]:
        """Faster pass over the agents an orphan could appear or disappear for."""
        changed: Dict[str, AgentStatus] = {}
        watched = (AgentStatus.IDLE, AgentStatus.ERROR, AgentStatus.ORPHANED)
        for agent in self.context.list_agents():
            if agent.status not in watched:
                continue
            try:
                result = await self.reconcile_agent(agent)
            except Exception as e:
                logger.error("Orphan poll failed", agent_id=agent.id, error=str(e))
                continue
            if result is not None:
                changed[agent.id] = result
        return changed
