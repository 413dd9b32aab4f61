"""
Agent Fleet - Test Fixtures
===========================

Shared pytest fixtures for all tests.

The real agent CLIs are never launched: the adapters below run the
current Python interpreter on small scripts that speak the same
line-delimited JSON as ``claude`` and ``codex exec --json``.
"""

import asyncio
import sys
import textwrap
from collections.abc import AsyncGenerator
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from fleet.core.config import settings
from fleet.core.runtime.agents import Agent, AgentBackend
from fleet.core.runtime.backends import RunConfig
from fleet.core.runtime.backends.claude import ClaudeAdapter
from fleet.core.runtime.backends.codex import CodexAdapter
from fleet.core.runtime.context import OrchestratorContext, OrchestratorEvent
from fleet.core.runtime.dispatcher import CommandDispatcher
from fleet.core.runtime.process_scan import ProcessInfo
from fleet.core.runtime.runner import ProcessRunner
from fleet.core.runtime.service import AgentRuntime, set_runtime
from fleet.core.runtime.transcripts import TranscriptStore


# ==========================================================================
# Fake Agent CLIs
# ==========================================================================

# Claude stream-json: init on start, one turn per stdin message, runs until stdin closes
FAKE_CLAUDE_SCRIPT = textwrap.dedent("""
    import json
    import sys

    def emit(obj):
        print(json.dumps(obj), flush=True)

    session_id = sys.argv[1]
    emit({"type": "system", "subtype": "init", "session_id": session_id, "model": "fake-model", "tools": []})
    for line in sys.stdin:
        text = json.loads(line)["message"]["content"]
        if text == "crash":
            sys.exit(3)
        reply = "echo: " + text
        emit({"type": "assistant", "message": {"content": [{"type": "text", "text": reply}]}})
        emit({
            "type": "result",
            "result": reply,
            "usage": {"input_tokens": 10, "output_tokens": 5, "cache_read_input_tokens": 100},
            "total_cost_usd": 0.01,
            "duration_ms": 12,
        })
""")

# Codex exec --json: one turn for the prompt in argv, then exit
FAKE_CODEX_SCRIPT = textwrap.dedent("""
    import json
    import sys

    def emit(obj):
        print(json.dumps(obj), flush=True)

    prompt = sys.argv[1]
    emit({"type": "thread.started", "thread_id": sys.argv[2]})
    if prompt == "fail":
        emit({"type": "turn.failed", "error": {"message": "model overloaded"}})
        sys.exit(2)
    emit({"type": "item.completed", "item": {"id": "i1", "type": "agent_message", "text": "done: " + prompt}})
    emit({"type": "turn.completed", "usage": {"input_tokens": 100, "output_tokens": 20, "cached_input_tokens": 50}})
""")


class FakeClaudeAdapter(ClaudeAdapter):
    """Claude adapter that launches the fake stream-json script."""

    def __init__(self, factory: "FakeAdapterFactory", data_dir: Optional[Path] = None):
        super().__init__(data_dir=data_dir)
        self.factory = factory

    def build_command(self, config: RunConfig) -> List[str]:
        self.factory.launched.append((config, self.build_args(config)))
        return [sys.executable, "-c", FAKE_CLAUDE_SCRIPT, config.resume_session_id or "claude-session-1"]


class FakeCodexAdapter(CodexAdapter):
    """Codex adapter that launches the fake exec --json script."""

    def __init__(self, factory: "FakeAdapterFactory", data_dir: Optional[Path] = None):
        super().__init__(data_dir=data_dir)
        self.factory = factory

    def build_command(self, config: RunConfig) -> List[str]:
        self.factory.launched.append((config, self.build_args(config)))
        return [sys.executable, "-c", FAKE_CODEX_SCRIPT, config.prompt, config.resume_session_id or "codex-thread-1"]


class FakeAdapterFactory:
    """Adapter factory for ProcessRunner that records every launch."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.launched: List[Any] = []

    def __call__(self, backend: AgentBackend):
        if AgentBackend(backend) == AgentBackend.CLAUDE:
            return FakeClaudeAdapter(self, data_dir=self.data_dir)
        return FakeCodexAdapter(self, data_dir=self.data_dir)

    @property
    def configs(self) -> List[RunConfig]:
        return [config for config, _ in self.launched]


# ==========================================================================
# Fake Collaborators
# ==========================================================================

class FakeScanner:
    """ProcessScanner stand-in: orphans are registered per working directory."""

    def __init__(self):
        self.orphans: Dict[str, List[int]] = {}
        self.killed: List[int] = []
        self.calls = 0

    async def find_processes_in_cwd(self, cwd, executable_names=(), exclude_pids=()):
        self.calls += 1
        excluded = set(exclude_pids)
        return [
            ProcessInfo(pid=pid, command="claude", cwd=cwd)
            for pid in self.orphans.get(cwd, [])
            if pid not in excluded
        ]

    async def kill_processes_in_cwd(self, cwd, executable_names=(), exclude_pids=()):
        found = await self.find_processes_in_cwd(cwd, executable_names, exclude_pids)
        pids = [info.pid for info in found]
        self.killed.extend(pids)
        self.orphans.pop(cwd, None)
        return pids


class FakeTranscripts:
    """TranscriptStore stand-in with switchable activity and canned histories."""

    def __init__(self):
        self.active_sessions: set = set()
        self.histories: Dict[str, Any] = {}

    def get_session_activity_status(self, cwd, session_id, active_threshold_seconds=None):
        active = session_id in self.active_sessions
        return SimpleNamespace(is_active=active, has_pending_work=active)

    def load_session(self, cwd, session_id, limit=50, offset=0):
        return self.histories.get(session_id)


# ==========================================================================
# Settings Isolation
# ==========================================================================

@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point every data directory at a per-test temporary tree."""
    monkeypatch.setattr(settings, "FLEET_DATA_DIR", tmp_path / "fleet")
    monkeypatch.setattr(settings, "CLAUDE_HOME", tmp_path / "claude")
    monkeypatch.setattr(settings, "CODEX_HOME", tmp_path / "codex")
    return tmp_path


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """Working directory for agent processes."""
    path = tmp_path / "project"
    path.mkdir()
    return path


# ==========================================================================
# Runtime Fixtures
# ==========================================================================

@pytest.fixture
def context() -> OrchestratorContext:
    return OrchestratorContext()


@pytest.fixture
def events(context: OrchestratorContext) -> List[OrchestratorEvent]:
    """Every event the context emits during the test."""
    received: List[OrchestratorEvent] = []
    context.subscribe(received.append)
    return received


@pytest.fixture
def adapter_factory(tmp_path: Path) -> FakeAdapterFactory:
    return FakeAdapterFactory(tmp_path / "fleet")


@pytest_asyncio.fixture
async def runner(tmp_path: Path, adapter_factory: FakeAdapterFactory) -> AsyncGenerator[ProcessRunner, None]:
    runner = ProcessRunner(
        adapter_factory=adapter_factory,
        logs_dir=tmp_path / "logs",
        stop_timeout=2.0,
        auto_restart=False,
        poll_interval=0.02,
    )
    yield runner
    await runner.stop_all(kill_processes=True)


@pytest.fixture
def scanner() -> FakeScanner:
    return FakeScanner()


@pytest.fixture
def transcripts() -> FakeTranscripts:
    return FakeTranscripts()


@pytest_asyncio.fixture
async def dispatcher(
    context: OrchestratorContext,
    runner: ProcessRunner,
    transcripts: FakeTranscripts,
    scanner: FakeScanner,
) -> AsyncGenerator[CommandDispatcher, None]:
    dispatcher = CommandDispatcher(
        context,
        runner,
        transcripts=transcripts,
        scanner=scanner,
        stdin_activity_timeout=30.0,
        auto_resume_max_age=300.0,
        auto_resume_delay=0.0,
    )
    yield dispatcher
    await dispatcher.close()


@pytest.fixture
def make_agent(context: OrchestratorContext, workdir: Path) -> Callable[..., Agent]:
    """Register an agent in the context."""
    def factory(**fields: Any) -> Agent:
        fields.setdefault("name", "worker")
        fields.setdefault("cwd", str(workdir))
        return context.add_agent(Agent(**fields))
    return factory


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Poll a predicate until it holds or the timeout expires."""
    async def wait(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.02) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(interval)
    return wait


# ==========================================================================
# API Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def runtime(
    tmp_path: Path,
    runner: ProcessRunner,
    scanner: FakeScanner,
) -> AsyncGenerator[AgentRuntime, None]:
    """Runtime wired to the fake CLIs and a temporary transcript tree."""
    runtime = AgentRuntime(
        runner=runner,
        transcripts=TranscriptStore(claude_home=tmp_path / "claude", codex_home=tmp_path / "codex"),
        scanner=scanner,
        auto_resume_enabled=False,
    )
    set_runtime(runtime)
    yield runtime
    await runtime.dispatcher.close()
    set_runtime(None)


@pytest_asyncio.fixture
async def client(runtime: AgentRuntime) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, sharing the test runtime."""
    from fleet.api.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
