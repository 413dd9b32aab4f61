"""
Agent Runtime - Service
=======================

Wires the runtime components together around one OrchestratorContext:

    ProcessRunner  ->  CommandDispatcher  ->  DelegationRouter
         |                   |
         +---- ActivityReconciler (STATUS_SYNC / ORPHAN_POLL timers)

Startup order: reconcile every agent (startup mode), auto-resume agents
that were interrupted mid-task, then start the periodic timers.
Shutdown leaves agent processes running unless asked to kill them.
"""

import asyncio
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable

import structlog

from fleet.core.config import settings
from fleet.core.runtime.agents import Agent, AgentBackend
from fleet.core.runtime.context import OrchestratorContext
from fleet.core.runtime.delegation import DelegationRouter
from fleet.core.runtime.dispatcher import CommandDispatcher
from fleet.core.runtime.process_scan import ProcessScanner
from fleet.core.runtime.reconciler import ActivityReconciler
from fleet.core.runtime.runner import ProcessRunner
from fleet.core.runtime.transcripts import TranscriptStore

logger = structlog.get_logger()


class AgentRuntime:
    """Owns every runtime component and the periodic reconciliation loops."""

    def __init__(
        self,
        context: Optional[OrchestratorContext] = None,
        runner: Optional[ProcessRunner] = None,
        transcripts: Optional[TranscriptStore] = None,
        scanner: Optional[ProcessScanner] = None,
        status_sync_interval: Optional[float] = None,
        orphan_poll_interval: Optional[float] = None,
        auto_resume_enabled: bool = True,
    ):
        self.context = context or OrchestratorContext()
        self.runner = runner or ProcessRunner()
        self.transcripts = transcripts or TranscriptStore()
        self.scanner = scanner or ProcessScanner()
        self.status_sync_interval = (
            status_sync_interval if status_sync_interval is not None else settings.STATUS_SYNC_INTERVAL_SECONDS
        )
        self.orphan_poll_interval = (
            orphan_poll_interval if orphan_poll_interval is not None else settings.ORPHAN_POLL_INTERVAL_SECONDS
        )
        self.auto_resume_enabled = auto_resume_enabled

        self.reconciler = ActivityReconciler(self.context, self.runner, self.transcripts, self.scanner)
        self.dispatcher = CommandDispatcher(self.context, self.runner, self.transcripts, self.scanner)
        self.router = DelegationRouter(
            self.context,
            send_command=self.dispatcher.send_command,
            spawn_agent=self.spawn_subordinate,
        )
        self.dispatcher.add_turn_handler(self.router.handle_turn)

        self._running = False
        self._tasks: List[asyncio.Task] = []

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True

        await self.reconciler.reconcile_all(startup=True)
        if self.auto_resume_enabled:
            resumed = await self.dispatcher.auto_resume()
            if resumed:
                logger.info("Auto-resumed agents", agent_ids=resumed)

        self._tasks = [
            asyncio.create_task(self._status_sync_loop()),
            asyncio.create_task(self._orphan_poll_loop()),
        ]
        logger.info(
            "Agent runtime started",
            agents=len(self.context.agents),
            status_sync_interval=self.status_sync_interval,
            orphan_poll_interval=self.orphan_poll_interval,
        )

    async def shutdown(self, kill_processes: bool = False) -> None:
        """Stop the timers and release processes (left running unless ``kill_processes``)."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        await self.dispatcher.close()
        await self.runner.stop_all(kill_processes=kill_processes)
        logger.info("Agent runtime stopped", killed_processes=kill_processes)

    @property
    def is_running(self) -> bool:
        return self._running

    async def _status_sync_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.status_sync_interval)
            try:
                await self.reconciler.reconcile_all()
            except Exception as e:
                logger.error("Status sync error", error=str(e))

    async def _orphan_poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.orphan_poll_interval)
            try:
                await self.reconciler.poll_orphans()
            except Exception as e:
                logger.error("Orphan poll error", error=str(e))

    # ==========================================================================
    # Agents
    # ==========================================================================

    def load_agents(self, agents: Iterable[Agent]) -> None:
        """Register agents restored by the embedding application before start()."""
        for agent in agents:
            self.context.agents[agent.id] = agent

    def create_agent(
        self,
        name: str,
        cwd: str,
        backend: AgentBackend = AgentBackend.CLAUDE,
        **options: Any,
    ) -> Agent:
        agent = Agent(
            name=name,
            cwd=str(Path(cwd).expanduser()),
            backend=backend,
            context_limit=settings.DEFAULT_CONTEXT_LIMIT,
            **options,
        )
        return self.context.add_agent(agent)

    async def delete_agent(self, agent_id: str) -> None:
        self.context.require_agent(agent_id)
        if self.runner.get_process(agent_id) is not None:
            await self.runner.stop(agent_id)
        self.dispatcher.forget_agent(agent_id)
        self.router.clear_delegation(agent_id)
        for coordinator in self.context.list_agents():
            if agent_id in coordinator.subordinate_ids:
                self.context.update_agent(
                    coordinator.id,
                    subordinate_ids=[s for s in coordinator.subordinate_ids if s != agent_id],
                )
        self.context.remove_agent(agent_id)

    async def spawn_subordinate(
        self,
        name: str,
        agent_class: str,
        cwd: str,
        coordinator_id: Optional[str] = None,
    ) -> Agent:
        """Create an agent requested by a coordinator's spawn directive."""
        backend = AgentBackend.CLAUDE
        if coordinator_id:
            coordinator = self.context.get_agent(coordinator_id)
            if coordinator is not None:
                backend = coordinator.backend
        return self.create_agent(name=name, cwd=cwd, backend=backend, agent_class=agent_class)

    def agent_info(self, agent_id: str) -> Dict[str, Any]:
        """Agent record plus live process diagnostics."""
        agent = self.context.require_agent(agent_id)
        info = agent.to_dict()
        active = self.runner.get_process(agent_id)
        info["process"] = active.to_dict() if active and self.runner.is_running(agent_id) else None
        info["memory_mb"] = self.runner.get_memory_usage_mb(agent_id) if info["process"] else None
        delegation = self.router.get_coordinator_for(agent_id)
        info["coordinator_id"] = delegation.coordinator_id if delegation else None
        info["subagents"] = self.dispatcher.subagents_for(agent_id)
        return info


_runtime: Optional[AgentRuntime] = None


def get_runtime() -> AgentRuntime:
    """Process-wide runtime instance."""
    global _runtime
    if _runtime is None:
        _runtime = AgentRuntime()
    return _runtime


def set_runtime(runtime: Optional[AgentRuntime]) -> None:
    global _runtime
    _runtime = runtime
