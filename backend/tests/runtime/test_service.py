"""
Agent Fleet - Runtime Service Tests
===================================
"""

from pathlib import Path

import pytest

from fleet.core.runtime.agents import AgentBackend, AgentNotFoundError, AgentStatus
from fleet.core.runtime.service import AgentRuntime


class TestAgents:
    """Tests for agent management."""

    async def test_create_agent(self, runtime: AgentRuntime, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        """New agents get an expanded cwd and the default context limit."""
        monkeypatch.setenv("HOME", str(tmp_path))
        agent = runtime.create_agent("w", "~/project", AgentBackend.CODEX, model="o4")

        assert agent.cwd == str(tmp_path / "project")
        assert agent.backend == AgentBackend.CODEX
        assert agent.model == "o4"
        assert agent.context_limit == 200_000
        assert runtime.context.get_agent(agent.id) is agent

    async def test_delete_agent_detaches_from_coordinator(self, runtime: AgentRuntime, workdir: Path):
        """Deleting a subordinate removes it from its coordinator."""
        lead = runtime.create_agent("lead", str(workdir), is_coordinator=True)
        worker = await runtime.spawn_subordinate("w", "builder", str(workdir), coordinator_id=lead.id)
        runtime.context.update_agent(lead.id, subordinate_ids=[worker.id])

        await runtime.delete_agent(worker.id)
        assert runtime.context.get_agent(worker.id) is None
        assert lead.subordinate_ids == []

        with pytest.raises(AgentNotFoundError):
            await runtime.delete_agent(worker.id)

    async def test_spawn_subordinate_inherits_backend(self, runtime: AgentRuntime, workdir: Path):
        """Spawned agents use their coordinator's backend."""
        lead = runtime.create_agent("lead", str(workdir), AgentBackend.CODEX, is_coordinator=True)
        worker = await runtime.spawn_subordinate("scout", "scout", str(workdir), coordinator_id=lead.id)
        assert worker.backend == AgentBackend.CODEX
        assert worker.agent_class == "scout"

        orphan = await runtime.spawn_subordinate("x", "builder", str(workdir))
        assert orphan.backend == AgentBackend.CLAUDE

    async def test_agent_info(self, runtime: AgentRuntime, workdir: Path, wait_until):
        """Process diagnostics appear only while a process runs."""
        agent = runtime.create_agent("w", str(workdir))
        info = runtime.agent_info(agent.id)
        assert info["process"] is None
        assert info["memory_mb"] is None
        assert info["coordinator_id"] is None
        assert info["subagents"] == []

        await runtime.dispatcher.send_command(agent.id, "hello")
        await wait_until(lambda: agent.status == AgentStatus.IDLE)
        info = runtime.agent_info(agent.id)
        assert info["process"]["session_id"] == "claude-session-1"
        assert info["session_id"] == "claude-session-1"

    async def test_delete_agent_drops_dispatch_state(self, runtime: AgentRuntime, workdir: Path, wait_until):
        """Deleting an agent stops its process and forgets its dispatch lock."""
        agent = runtime.create_agent("w", str(workdir))
        await runtime.dispatcher.send_command(agent.id, "hello")
        await wait_until(lambda: agent.status == AgentStatus.IDLE)
        assert agent.id in runtime.dispatcher._locks

        await runtime.delete_agent(agent.id)
        assert agent.id not in runtime.dispatcher._locks
        assert not runtime.runner.is_running(agent.id)


class TestLifecycle:
    """Tests for start and shutdown."""

    async def test_start_reconciles_then_shutdown(self, runtime: AgentRuntime, workdir: Path):
        """Startup clears stale working states; shutdown stops the timers."""
        agent = runtime.create_agent("w", str(workdir))
        runtime.context.set_status(agent.id, AgentStatus.WORKING, current_task="old task")

        await runtime.start()
        assert runtime.is_running
        assert agent.status == AgentStatus.IDLE
        assert agent.current_task is None

        await runtime.start()
        assert len(runtime._tasks) == 2

        await runtime.shutdown()
        assert not runtime.is_running
        assert runtime._tasks == []
