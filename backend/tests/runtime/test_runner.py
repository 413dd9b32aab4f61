"""
Agent Fleet - Process Runner Tests
==================================

Runs the fake Claude and Codex CLIs from conftest as real subprocesses.
"""

import json
import signal
import sys
import textwrap
import time
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any, List, Tuple

import pytest
import pytest_asyncio

from fleet.core.runtime.agents import AgentBackend, AgentBusyError, ErrorKind, ExecutableNotFoundError
from fleet.core.runtime.backends import RunConfig
from fleet.core.runtime.backends.claude import ClaudeAdapter
from fleet.core.runtime.events import NormalizedEvent, NormalizedEventType, TokenUsage
from fleet.core.runtime.runner import DeathRecord, ProcessRunner, RunnerCallbacks


class Recorder:
    """Collects everything the runner reports."""

    def __init__(self):
        self.events: List[Tuple[str, NormalizedEvent]] = []
        self.outputs: List[Tuple[str, str, bool]] = []
        self.session_ids: List[Tuple[str, str]] = []
        self.completions: List[Tuple[str, bool]] = []
        self.errors: List[Tuple[str, str, ErrorKind]] = []

    def callbacks(self) -> RunnerCallbacks:
        return RunnerCallbacks(
            on_event=lambda agent_id, event: self.events.append((agent_id, event)),
            on_output=lambda agent_id, text, streaming: self.outputs.append((agent_id, text, streaming)),
            on_session_id=lambda agent_id, session_id: self.session_ids.append((agent_id, session_id)),
            on_complete=lambda agent_id, success: self.completions.append((agent_id, success)),
            on_error=lambda agent_id, message, kind: self.errors.append((agent_id, message, kind)),
        )

    def types(self, agent_id: str) -> List[NormalizedEventType]:
        return [event.type for a, event in self.events if a == agent_id]

    def texts(self, agent_id: str) -> List[str]:
        return [text for a, text, _ in self.outputs if a == agent_id]


@pytest.fixture
def recorder(runner: ProcessRunner) -> Recorder:
    recorder = Recorder()
    runner.set_callbacks(recorder.callbacks())
    return recorder


def claude_config(workdir: Path, **fields: Any) -> RunConfig:
    fields.setdefault("agent_id", "a1")
    fields.setdefault("prompt", "hello")
    return RunConfig(cwd=str(workdir), **fields)


def codex_config(workdir: Path, **fields: Any) -> RunConfig:
    fields.setdefault("agent_id", "c1")
    fields.setdefault("prompt", "build it")
    return RunConfig(cwd=str(workdir), backend=AgentBackend.CODEX, **fields)


# ==========================================================================
# Claude (long-lived, stdin)
# ==========================================================================

class TestClaudeProcess:
    """Tests for a stdin-driven process."""

    async def test_turn_and_injection(self, runner: ProcessRunner, recorder: Recorder, workdir: Path, wait_until):
        """The initial prompt and an injected follow-up each complete a turn."""
        await runner.run(claude_config(workdir))
        await wait_until(lambda: NormalizedEventType.STEP_COMPLETE in recorder.types("a1"))

        assert recorder.session_ids == [("a1", "claude-session-1")]
        assert runner.get_session_id("a1") == "claude-session-1"
        assert runner.is_running("a1")
        assert "echo: hello" in recorder.texts("a1")

        assert await runner.send_message("a1", "again") is True
        await wait_until(lambda: recorder.types("a1").count(NormalizedEventType.STEP_COMPLETE) == 2)
        assert "echo: again" in recorder.texts("a1")
        assert "Tokens: 10 in, 5 out" in recorder.texts("a1")
        assert recorder.completions == []

    async def test_stop_reports_no_completion(self, runner: ProcessRunner, recorder: Recorder, workdir: Path,
                                              wait_until):
        """An intentional stop untracks the process without an exit report."""
        active = await runner.run(claude_config(workdir))
        await wait_until(lambda: NormalizedEventType.INIT in recorder.types("a1"))

        assert await runner.stop("a1") is True
        assert active.process.returncode is not None
        assert not runner.is_running("a1")
        assert runner.get_process("a1") is None
        assert recorder.completions == []

    async def test_supersede_replaces_process(self, runner: ProcessRunner, recorder: Recorder, workdir: Path,
                                              adapter_factory, wait_until):
        """A second run stops the first; only one process is ever tracked."""
        first = await runner.run(claude_config(workdir))
        await wait_until(lambda: NormalizedEventType.INIT in recorder.types("a1"))

        second = await runner.run(claude_config(workdir, session_id="claude-session-1", prompt="next"))
        assert first.process.returncode is not None
        assert runner.get_process("a1") is second
        assert runner.tracked_pids() == [second.pid]
        assert len(adapter_factory.launched) == 2
        assert "--resume" in adapter_factory.launched[1][1]

        await wait_until(lambda: "echo: next" in recorder.texts("a1"))
        assert recorder.completions == []

    async def test_busy_without_supersede(self, runner: ProcessRunner, recorder: Recorder, workdir: Path):
        """Refusing to supersede raises AgentBusyError."""
        await runner.run(claude_config(workdir))
        with pytest.raises(AgentBusyError):
            await runner.run(claude_config(workdir), supersede=False)

    async def test_send_message_without_process(self, runner: ProcessRunner):
        """Messages to an agent without a process are refused."""
        assert await runner.send_message("nobody", "hi") is False

    async def test_activity_callback_fires_once(self, runner: ProcessRunner, recorder: Recorder, workdir: Path,
                                                wait_until):
        """One-shot activity callbacks fire on the next event."""
        await runner.run(claude_config(workdir))
        await wait_until(lambda: NormalizedEventType.STEP_COMPLETE in recorder.types("a1"))

        fired = []
        runner.on_next_activity("a1", lambda: fired.append(True))
        await runner.send_message("a1", "ping")
        await wait_until(lambda: recorder.types("a1").count(NormalizedEventType.STEP_COMPLETE) == 2)
        assert fired == [True]
        assert runner.has_recent_activity("a1", within=30.0)


# ==========================================================================
# Codex (one process per turn)
# ==========================================================================

class TestCodexProcess:
    """Tests for a prompt-per-process backend."""

    async def test_turn_completes_on_exit(self, runner: ProcessRunner, recorder: Recorder, workdir: Path,
                                          wait_until):
        """The process exits after one turn and reports success."""
        await runner.run(codex_config(workdir))
        await wait_until(lambda: recorder.completions == [("c1", True)])

        assert recorder.types("c1") == [
            NormalizedEventType.INIT,
            NormalizedEventType.TEXT,
            NormalizedEventType.STEP_COMPLETE,
        ]
        assert recorder.session_ids == [("c1", "codex-thread-1")]
        assert not runner.is_running("c1")
        assert runner.get_process("c1") is None
        assert await runner.send_message("c1", "more") is False

    async def test_failed_turn(self, runner: ProcessRunner, recorder: Recorder, workdir: Path, wait_until):
        """A failed turn reports the error, then an unsuccessful exit."""
        await runner.run(codex_config(workdir, prompt="fail"))
        await wait_until(lambda: recorder.completions == [("c1", False)])

        assert ("c1", "model overloaded", ErrorKind.RUNTIME_ERROR) in recorder.errors
        last_error = runner.get_last_error("c1")
        assert last_error.kind == ErrorKind.PROCESS_EXIT_NONZERO
        assert last_error.message == "Process exited with code 2"
        [death] = runner.get_death_history()
        assert death.exit_code == 2
        assert death.agent_id == "c1"

    async def test_output_replay(self, runner: ProcessRunner, recorder: Recorder, workdir: Path, wait_until):
        """Raw output stays readable by offset after the process exits."""
        await runner.run(codex_config(workdir))
        await wait_until(lambda: len(recorder.completions) == 1)

        lines, offset = runner.read_output_since("c1", 0)
        assert [json.loads(line)["type"] for line in lines] == ["thread.started", "item.completed", "turn.completed"]
        assert offset == runner.output_path("c1").stat().st_size
        assert runner.read_output_since("c1", offset) == ([], offset)


# ==========================================================================
# Failures and diagnostics
# ==========================================================================

class MissingExecutableAdapter(ClaudeAdapter):
    def build_command(self, config: RunConfig) -> List[str]:
        return [str(Path(config.cwd) / "missing" / "claude"), *self.build_args(config)]


class TestFailures:
    """Tests for spawn failures and death analysis."""

    async def test_spawn_failure(self, tmp_path: Path, workdir: Path):
        """A missing executable raises and is recorded as a spawn failure."""
        recorder = Recorder()
        runner = ProcessRunner(
            callbacks=recorder.callbacks(),
            adapter_factory=lambda backend: MissingExecutableAdapter(data_dir=tmp_path / "fleet"),
            logs_dir=tmp_path / "logs",
        )
        with pytest.raises(ExecutableNotFoundError):
            await runner.run(claude_config(workdir))

        assert runner.get_last_error("a1").kind == ErrorKind.SPAWN_FAILURE
        assert recorder.errors[0][2] == ErrorKind.SPAWN_FAILURE
        assert runner.get_process("a1") is None

    def test_death_analysis(self, tmp_path: Path):
        """Bursts of deaths and OOM kills are detected."""
        runner = ProcessRunner(logs_dir=tmp_path / "logs", min_runtime_for_restart=5.0)
        runner._record_death(DeathRecord("a1", 1, 1, None, 30.0, True))
        runner._record_death(DeathRecord("a2", 2, 137, None, 30.0, True))
        runner._record_death(DeathRecord("a3", 3, None, "SIGKILL", 1.0, True, timestamp=time.time()))

        analysis = runner.analyze_deaths()
        assert analysis["rapid_deaths"] is True
        assert sorted(analysis["oom_kills"]) == ["a2", "a3"]
        assert analysis["short_lived"] == ["a3"]
        assert runner.get_death_history()[0].agent_id == "a3"

    def test_render_output(self):
        """Tool calls and completions render as readable lines."""
        render = ProcessRunner._render_output
        assert render(NormalizedEvent(type=NormalizedEventType.TOOL_START, tool_name="Read",
                                      tool_input={"file_path": "x"})) == [
            ("Using tool: Read", False),
            ('Tool input: {"file_path": "x"}', False),
        ]
        assert render(NormalizedEvent(type=NormalizedEventType.STEP_COMPLETE, tokens=TokenUsage(3, 4),
                                      cost=0.5)) == [
            ("Tokens: 3 in, 4 out", False),
            ("Cost: $0.5000", False),
        ]
        assert render(NormalizedEvent(type=NormalizedEventType.BLOCK_END)) == []


# ==========================================================================
# Cooperative stop
# ==========================================================================

# Ignores SIGINT and SIGTERM; only SIGKILL ends it
STUBBORN_SCRIPT = textwrap.dedent("""
    import json
    import signal
    import time

    signal.signal(signal.SIGINT, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    init = {"type": "system", "subtype": "init", "session_id": "stubborn-1", "model": "fake-model", "tools": []}
    print(json.dumps(init), flush=True)
    while True:
        time.sleep(0.1)
""")


class StubbornAdapter(ClaudeAdapter):
    def build_command(self, config: RunConfig) -> List[str]:
        return [sys.executable, "-c", STUBBORN_SCRIPT]


@pytest_asyncio.fixture
async def stubborn(tmp_path: Path) -> AsyncGenerator[Tuple[ProcessRunner, Recorder], None]:
    recorder = Recorder()
    runner = ProcessRunner(
        callbacks=recorder.callbacks(),
        adapter_factory=lambda backend: StubbornAdapter(data_dir=tmp_path / "fleet"),
        logs_dir=tmp_path / "logs",
        stop_timeout=0.6,
        auto_restart=False,
        poll_interval=0.02,
    )
    yield runner, recorder
    await runner.stop_all(kill_processes=True)


class TestCooperativeStop:
    """Tests for processes that ignore stop signals."""

    async def test_stop_times_out_without_kill(self, stubborn, workdir: Path, wait_until):
        """A plain stop gives up after the timeout and leaves the child running."""
        runner, recorder = stubborn
        active = await runner.run(claude_config(workdir))
        await wait_until(lambda: NormalizedEventType.INIT in recorder.types("a1"))

        try:
            assert await runner.stop("a1") is False
            assert active.process.returncode is None
            assert recorder.completions == []
        finally:
            active.process.kill()
            await active.process.wait()

    async def test_supersede_kills_stubborn_process(self, stubborn, workdir: Path, wait_until):
        """Replacing a process that ignores stop signals never leaves two running."""
        runner, recorder = stubborn
        first = await runner.run(claude_config(workdir))
        await wait_until(lambda: NormalizedEventType.INIT in recorder.types("a1"))

        second = await runner.run(claude_config(workdir, prompt="next"))
        assert first.process.returncode == -signal.SIGKILL
        assert runner.get_process("a1") is second
        assert runner.tracked_pids() == [second.pid]

    async def test_supersede_refused_when_old_process_survives(self, stubborn, workdir: Path, wait_until,
                                                                monkeypatch: pytest.MonkeyPatch):
        """If the old process cannot be ended, no new one is started and the old stays bound."""
        runner, recorder = stubborn
        first = await runner.run(claude_config(workdir))
        await wait_until(lambda: NormalizedEventType.INIT in recorder.types("a1"))

        send = runner._signal_group
        monkeypatch.setattr(runner, "_signal_group",
                            lambda active, sig: None if sig == signal.SIGKILL else send(active, sig))
        try:
            with pytest.raises(AgentBusyError):
                await runner.run(claude_config(workdir, prompt="next"))
            assert runner.get_process("a1") is first
            assert runner.tracked_pids() == [first.pid]
        finally:
            monkeypatch.undo()
            first.process.kill()
            await first.process.wait()
