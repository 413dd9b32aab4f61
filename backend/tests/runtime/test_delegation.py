"""
Agent Fleet - Delegation Block Tests
====================================

Parsing of coordinator directive blocks and routing of the resulting
commands, without a dispatcher behind them.
"""

import json
from typing import Any, List, Optional, Tuple

import pytest

from fleet.core.runtime.agents import Agent, DelegationParseError
from fleet.core.runtime.context import OrchestratorContext, OrchestratorEvent, OrchestratorEventKind
from fleet.core.runtime.delegation import (
    BlockKind,
    DelegationRouter,
    PROCESSING_ORDER,
    WorkPlan,
    build_analysis_command,
    extract_blocks,
    parse_block_payload,
)


def block(kind: str, payload: Any) -> str:
    return f"```{kind}\n{json.dumps(payload)}\n```"


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class CommandLog:
    """Stands in for the dispatcher's send_command."""

    def __init__(self, fail_for: Optional[str] = None):
        self.sent: List[Tuple[str, str]] = []
        self.fail_for = fail_for

    async def __call__(self, agent_id: str, command: str) -> None:
        if agent_id == self.fail_for:
            raise RuntimeError("agent busy")
        self.sent.append((agent_id, command))


@pytest.fixture
def commands() -> CommandLog:
    return CommandLog()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def router(context: OrchestratorContext, commands: CommandLog, clock: FakeClock) -> DelegationRouter:
    async def spawn_agent(name: str, agent_class: str, cwd: str, coordinator_id: Optional[str] = None) -> Agent:
        return context.add_agent(Agent(name=name, agent_class=agent_class, cwd=cwd))

    return DelegationRouter(context, commands, spawn_agent=spawn_agent, dedup_window=60.0, clock=clock)


@pytest.fixture
def coordinator(make_agent) -> Agent:
    return make_agent(name="lead", is_coordinator=True)


def kinds(events: List[OrchestratorEvent], kind: OrchestratorEventKind) -> List[OrchestratorEvent]:
    return [e for e in events if e.kind == kind]


# ==========================================================================
# Parsing
# ==========================================================================

class TestParsing:
    """Tests for block extraction."""

    def test_object_and_array_payloads(self):
        """A block may hold one object or an array of them."""
        text = "\n".join([
            "Plan below.",
            block("delegation", {"selectedAgentId": "a"}),
            "and",
            block("delegation", [{"selectedAgentId": "b"}, {"selectedAgentId": "c"}]),
        ])
        assert [d["selectedAgentId"] for d in extract_blocks(text, BlockKind.DELEGATION)] == ["a", "b", "c"]

    def test_malformed_block_skipped(self):
        """A broken block does not hide its well-formed neighbours."""
        text = "```delegation\n{not json}\n```\n" + block("delegation", {"selectedAgentId": "ok"})
        assert extract_blocks(text, BlockKind.DELEGATION) == [{"selectedAgentId": "ok"}]

    def test_other_kinds_ignored(self):
        """Only fences of the requested kind match."""
        text = block("spawn", {"name": "x"}) + "\n```json\n{}\n```"
        assert extract_blocks(text, BlockKind.DELEGATION) == []
        assert extract_blocks("", BlockKind.SPAWN) == []

    @pytest.mark.parametrize("raw", ["[1, 2]", "\"text\"", "{oops"])
    def test_invalid_payload_raises(self, raw: str):
        """Non-object payloads are parse errors."""
        with pytest.raises(DelegationParseError):
            parse_block_payload(raw, BlockKind.WORK_PLAN)

    def test_processing_order(self):
        """Plans are laid out before tasks are dispatched and agents spawned."""
        assert [kind.value for kind in PROCESSING_ORDER] == [
            "analysis-request", "work-plan", "delegation", "spawn",
        ]

    def test_analysis_command(self):
        """Analysis commands name the coordinator and the focus areas."""
        command = build_analysis_command("lead", "Why is CI slow?", ["tests", "cache"])
        assert command.startswith("[ANALYSIS REQUEST from lead]")
        assert "Focus areas: tests, cache" in command
        assert "Focus areas" not in build_analysis_command("lead", "q", [])


class TestWorkPlan:
    """Tests for work plan bookkeeping."""

    def test_parallelizable_tasks(self):
        """Only unblocked tasks in parallel phases can start at once."""
        plan = WorkPlan(
            coordinator_id="c",
            name="ship",
            phases=[
                {"execution": "parallel", "tasks": [
                    {"id": "t1"},
                    {"id": "t2", "blockedBy": ["t1"]},
                    {"id": "t3", "blockedBy": []},
                ]},
                {"execution": "sequential", "tasks": [{"id": "t4"}]},
            ],
        )
        assert plan.total_tasks == 4
        assert plan.parallelizable_tasks == ["t1", "t3"]
        assert plan.to_dict()["parallelizable_tasks"] == ["t1", "t3"]


# ==========================================================================
# Routing
# ==========================================================================

class TestRouting:
    """Tests for turning directives into commands."""

    async def test_all_kinds_in_order(self, router: DelegationRouter, commands: CommandLog, coordinator: Agent,
                                      make_agent, events: List[OrchestratorEvent]):
        """Every kind is handled, analysis before delegation."""
        worker = make_agent(name="worker")
        text = "\n".join([
            block("spawn", {"name": "helper", "class": "builder"}),
            block("delegation", {"selectedAgentId": worker.id, "taskCommand": "fix the build"}),
            block("work-plan", {"name": "ship", "phases": [{"execution": "parallel", "tasks": [{"id": "t1"}]}]}),
            block("analysis-request", {"targetAgent": worker.id, "query": "What broke?"}),
        ])

        counts = await router.process_coordinator_output(coordinator, text)

        assert counts == {"analysis-request": 1, "work-plan": 1, "delegation": 1, "spawn": 1}
        assert [target for target, _ in commands.sent] == [worker.id, worker.id]
        assert commands.sent[0][1].startswith("[ANALYSIS REQUEST from lead]")
        assert commands.sent[1][1] == "fix the build"
        [plan] = router.work_plans.values()
        assert plan.name == "ship"
        [request] = router.analysis_requests.values()
        assert request.status == "running"
        assert len(kinds(events, OrchestratorEventKind.WORK_PLAN_CREATED)) == 1

    async def test_duplicate_delegation_within_window(self, router: DelegationRouter, commands: CommandLog,
                                                      coordinator: Agent, make_agent, clock: FakeClock):
        """The same delegation is dispatched once per dedup window."""
        worker = make_agent()
        text = block("delegation", {"selectedAgentId": worker.id, "taskCommand": "run tests"})

        assert await router.process_coordinator_output(coordinator, text) == {"delegation": 1}
        clock.now += 30
        assert await router.process_coordinator_output(coordinator, text) == {"delegation": 0}
        clock.now += 61
        assert await router.process_coordinator_output(coordinator, text) == {"delegation": 1}
        assert len(commands.sent) == 2

    async def test_missing_task_falls_back_to_coordinator_command(self, router: DelegationRouter,
                                                                  commands: CommandLog, coordinator: Agent,
                                                                  make_agent):
        """A delegation without taskCommand forwards the coordinator's own command."""
        worker = make_agent()
        router.record_coordinator_command(coordinator.id, "refactor the parser")

        await router.process_coordinator_output(coordinator, block("delegation", {"selectedAgentId": worker.id}))
        assert commands.sent == [(worker.id, "refactor the parser")]
        [decision] = router.delegation_history[coordinator.id]
        assert decision.task_command == "refactor the parser"

    async def test_unknown_target(self, router: DelegationRouter, commands: CommandLog, coordinator: Agent):
        """Delegations to unknown agents are recorded as failed, not sent."""
        text = block("delegation", {"selectedAgentId": "ghost", "taskCommand": "x"})
        assert await router.process_coordinator_output(coordinator, text) == {"delegation": 0}
        assert commands.sent == []
        assert router.delegation_history[coordinator.id][0].status == "failed"
        assert router.get_coordinator_for("ghost") is None

    async def test_send_failure_clears_attribution(self, context: OrchestratorContext, coordinator: Agent,
                                                   make_agent, clock: FakeClock):
        """A failed send leaves no active delegation behind."""
        worker = make_agent()
        router = DelegationRouter(context, CommandLog(fail_for=worker.id), dedup_window=60.0, clock=clock)
        text = block("delegation", {"selectedAgentId": worker.id, "taskCommand": "x"})

        assert await router.process_coordinator_output(coordinator, text) == {"delegation": 0}
        assert router.get_coordinator_for(worker.id) is None

    async def test_incomplete_directives_skipped(self, router: DelegationRouter, commands: CommandLog,
                                                 coordinator: Agent):
        """Analysis requests and plans missing required fields are ignored."""
        text = "\n".join([
            block("analysis-request", {"query": "no target"}),
            block("work-plan", {"name": "no phases"}),
        ])
        assert await router.process_coordinator_output(coordinator, text) == {
            "analysis-request": 0,
            "work-plan": 0,
        }
        assert router.work_plans == {}
        assert commands.sent == []


class TestSpawn:
    """Tests for spawn directives."""

    async def test_spawn_adds_subordinate(self, router: DelegationRouter, context: OrchestratorContext,
                                          coordinator: Agent, events: List[OrchestratorEvent]):
        """Spawned agents join the coordinator's subordinates."""
        text = block("spawn", [{"name": "scout-1", "class": "scout"}, {"name": "bad", "class": "wizard"}])

        assert await router.process_coordinator_output(coordinator, text) == {"spawn": 1}
        [spawned] = [a for a in context.list_agents() if a.name == "scout-1"]
        assert spawned.agent_class == "scout"
        assert spawned.cwd == coordinator.cwd
        assert coordinator.subordinate_ids == [spawned.id]
        assert not [a for a in context.list_agents() if a.name == "bad"]
        [event] = kinds(events, OrchestratorEventKind.COORDINATOR_SPAWNED_AGENT)
        assert event.payload["subordinate_ids"] == [spawned.id]

    async def test_spawn_without_spawner(self, context: OrchestratorContext, commands: CommandLog,
                                         coordinator: Agent):
        """Spawn directives are ignored when no spawner is configured."""
        router = DelegationRouter(context, commands)
        text = block("spawn", {"name": "x", "class": "builder"})
        assert await router.process_coordinator_output(coordinator, text) == {"spawn": 0}


class TestTurnHook:
    """Tests for the dispatcher turn hook."""

    async def test_subordinate_completion_reported(self, router: DelegationRouter, coordinator: Agent,
                                                   make_agent, events: List[OrchestratorEvent]):
        """A delegated task's completion is reported to its coordinator once."""
        worker = make_agent()
        await router.handle_turn(
            coordinator, block("delegation", {"selectedAgentId": worker.id, "taskCommand": "write docs"}),
        )
        assert router.get_coordinator_for(worker.id).coordinator_id == coordinator.id

        await router.handle_turn(worker, "docs written", success=True)
        await router.handle_turn(worker, "again", success=True)

        [completed] = kinds(events, OrchestratorEventKind.AGENT_TASK_COMPLETED)
        assert completed.agent_id == coordinator.id
        assert completed.payload["subordinate_id"] == worker.id
        assert completed.payload["task_description"] == "write docs"
        assert completed.payload["result_preview"] == "docs written"
        assert router.get_coordinator_for(worker.id) is None

    async def test_non_coordinator_output_not_scanned(self, router: DelegationRouter, commands: CommandLog,
                                                      make_agent):
        """Directive blocks from ordinary agents are plain text."""
        worker = make_agent()
        other = make_agent(name="other")
        await router.handle_turn(worker, block("delegation", {"selectedAgentId": other.id, "taskCommand": "x"}))
        assert commands.sent == []
