"""
Agent Runtime - Process Runner
==============================

Owns the external CLI process of each agent (at most one per agent id).

Processes are spawned in their own session so an orchestrator restart
does not take them down. Their stdout/stderr go straight to append-only
log files under ``FLEET_DATA_DIR/logs``; a pump task tails those files by
byte offset, parses every complete stdout line through the agent's
adapter and forwards the result through RunnerCallbacks. The files stay
behind after exit so a reconnecting caller can replay output with
``read_output_since``.

Features:
- Inject follow-up messages on stdin (backends that accept it)
- Cooperative stop (SIGINT, then SIGTERM) bounded by a timeout
- Death history and pattern analysis
- Optional capped auto-restart of crashed processes
"""

import asyncio
import inspect
import json
import os
import re
import signal
import subprocess
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any, Callable, Tuple

import structlog

from fleet.core.config import settings
from fleet.core.runtime.agents import (
    AgentBackend,
    AgentBusyError,
    ErrorKind,
    ExecutableNotFoundError,
    LastError,
    SpawnFailure,
    utcnow,
)
from fleet.core.runtime.backends import AgentAdapter, RunConfig, create_adapter, decode_line
from fleet.core.runtime.events import NormalizedEvent, NormalizedEventType

logger = structlog.get_logger()


# Exits caused by these signals are intentional stops, not crashes
INTENTIONAL_SIGNALS = {signal.SIGINT, signal.SIGTERM}

# Deaths inside this window count towards a rapid-death pattern
RAPID_DEATH_WINDOW_SECONDS = 60.0
RAPID_DEATH_THRESHOLD = 3
OOM_EXIT_CODE = 137

_VM_RSS = re.compile(r"VmRSS:\s+(\d+)\s+kB")


# ==========================================================================
# Data Structures
# ==========================================================================

@dataclass
class RunnerCallbacks:
    """
    Hooks the runner reports through. Each may be a plain function or a
    coroutine function.

    - on_event(agent_id, event)
    - on_output(agent_id, text, is_streaming)
    - on_session_id(agent_id, session_id)
    - on_complete(agent_id, success)
    - on_error(agent_id, message, kind)
    """
    on_event: Optional[Callable[..., Any]] = None
    on_output: Optional[Callable[..., Any]] = None
    on_session_id: Optional[Callable[..., Any]] = None
    on_complete: Optional[Callable[..., Any]] = None
    on_error: Optional[Callable[..., Any]] = None


@dataclass
class ActiveProcess:
    """The process currently bound to one agent."""
    agent_id: str
    process: asyncio.subprocess.Process
    adapter: AgentAdapter
    request: RunConfig
    stdout_path: Path
    stderr_path: Path
    stdout_offset: int = 0
    stderr_offset: int = 0
    session_id: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    started_monotonic: float = field(default_factory=time.monotonic)
    last_activity_monotonic: Optional[float] = None
    restart_count: int = 0
    last_restart_monotonic: Optional[float] = None
    last_error: Optional[LastError] = None
    stderr_tail: str = ""
    stopping: bool = False
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    pump_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def runtime_seconds(self) -> float:
        return time.monotonic() - self.started_monotonic

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "pid": self.pid,
            "session_id": self.session_id,
            "started_at": self.started_at.isoformat(),
            "runtime_seconds": round(self.runtime_seconds, 1),
            "stdout_path": str(self.stdout_path),
            "stdout_offset": self.stdout_offset,
            "stderr_offset": self.stderr_offset,
            "restart_count": self.restart_count,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }


@dataclass
class DeathRecord:
    """Diagnostics for one unexpected process exit."""
    agent_id: str
    pid: Optional[int]
    exit_code: Optional[int]
    signal_name: Optional[str]
    runtime_seconds: float
    was_tracked: bool
    stderr_tail: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_oom_kill(self) -> bool:
        return self.exit_code == OOM_EXIT_CODE or self.signal_name == "SIGKILL"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "signal": self.signal_name,
            "runtime_seconds": round(self.runtime_seconds, 1),
            "was_tracked": self.was_tracked,
            "stderr_tail": self.stderr_tail,
            "timestamp": self.timestamp,
        }


# ==========================================================================
# Process Runner
# ==========================================================================

class ProcessRunner:
    """
    Spawns and supervises external agent processes.

    Invariant: ``_processes`` never holds two entries for one agent id.
    A superseded or stopped process is removed from tracking before it is
    signalled, and output from an untracked process is not forwarded.
    """

    def __init__(
        self,
        callbacks: Optional[RunnerCallbacks] = None,
        adapter_factory: Callable[[AgentBackend], AgentAdapter] = create_adapter,
        logs_dir: Optional[Path] = None,
        stop_timeout: Optional[float] = None,
        max_restart_attempts: Optional[int] = None,
        restart_cooldown: Optional[float] = None,
        min_runtime_for_restart: Optional[float] = None,
        auto_restart: Optional[bool] = None,
        restart_delay: float = 1.0,
        poll_interval: float = 0.05,
    ):
        self.callbacks = callbacks or RunnerCallbacks()
        self.adapter_factory = adapter_factory
        self.logs_dir = Path(logs_dir) if logs_dir else settings.logs_dir
        self.stop_timeout = stop_timeout if stop_timeout is not None else settings.STOP_TIMEOUT_SECONDS
        self.max_restart_attempts = (
            max_restart_attempts if max_restart_attempts is not None else settings.MAX_RESTART_ATTEMPTS
        )
        self.restart_cooldown = (
            restart_cooldown if restart_cooldown is not None else settings.RESTART_COOLDOWN_SECONDS
        )
        self.min_runtime_for_restart = (
            min_runtime_for_restart if min_runtime_for_restart is not None
            else settings.MIN_RUNTIME_FOR_RESTART_SECONDS
        )
        self.auto_restart = auto_restart if auto_restart is not None else settings.AUTO_RESTART_ENABLED
        self.restart_delay = restart_delay
        self.poll_interval = poll_interval

        self._processes: Dict[str, ActiveProcess] = {}
        self._activity_callbacks: Dict[str, List[Callable[[], Any]]] = {}
        self._last_errors: Dict[str, LastError] = {}
        self._deaths: deque = deque(maxlen=settings.DEATH_HISTORY_LIMIT)
        self._background: set = set()

    def set_callbacks(self, callbacks: RunnerCallbacks) -> None:
        self.callbacks = callbacks

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def run(self, config: RunConfig, supersede: bool = True) -> ActiveProcess:
        """
        Spawn a process for ``config.agent_id``.

        An existing process for the agent is stopped first when
        ``supersede`` is True (killed if it ignores the stop signals);
        otherwise AgentBusyError is raised. AgentBusyError is also raised
        when the old process cannot be ended.
        Raises SpawnFailure when the executable cannot be launched.
        """
        agent_id = config.agent_id
        if agent_id in self._processes:
            if not supersede:
                raise AgentBusyError(f"Agent {agent_id} already has a running process")
            await self._supersede(agent_id)

        adapter = self.adapter_factory(config.backend)
        command = adapter.build_command(config)

        self.logs_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = self.output_path(agent_id, "stdout")
        stderr_path = self.output_path(agent_id, "stderr")
        stdout_offset = stdout_path.stat().st_size if stdout_path.exists() else 0
        stderr_offset = stderr_path.stat().st_size if stderr_path.exists() else 0

        env = {**os.environ, "LANG": "en_US.UTF-8", "LC_ALL": "en_US.UTF-8", **config.env}
        stdin = asyncio.subprocess.PIPE if adapter.requires_stdin_input() else asyncio.subprocess.DEVNULL

        spawn_kwargs: Dict[str, Any] = {}
        if adapter.is_windows():
            spawn_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            spawn_kwargs["start_new_session"] = True

        logger.info(
            "Spawning agent process",
            agent_id=agent_id,
            backend=config.backend.value,
            executable=command[0],
            resume=config.resume_session_id,
            cwd=config.cwd,
        )

        try:
            with open(stdout_path, "ab") as stdout_file, open(stderr_path, "ab") as stderr_file:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=config.cwd,
                    env=env,
                    stdin=stdin,
                    stdout=stdout_file,
                    stderr=stderr_file,
                    **spawn_kwargs,
                )
        except FileNotFoundError as e:
            error = ExecutableNotFoundError(f"Executable not found: {command[0]} ({e})")
            await self._report_spawn_failure(agent_id, error)
            raise error from e
        except OSError as e:
            error = SpawnFailure(f"Failed to launch {command[0]}: {e}")
            await self._report_spawn_failure(agent_id, error)
            raise error from e

        active = ActiveProcess(
            agent_id=agent_id,
            process=process,
            adapter=adapter,
            request=config,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            stdout_offset=stdout_offset,
            stderr_offset=stderr_offset,
            session_id=config.resume_session_id,
        )
        self._processes[agent_id] = active
        self._last_errors.pop(agent_id, None)
        active.pump_task = asyncio.create_task(self._pump(active))

        logger.info("Agent process spawned", agent_id=agent_id, pid=process.pid)

        initial = adapter.initial_stdin(config)
        if initial is not None and not await self._write_stdin(active, initial):
            await self._notify(
                self.callbacks.on_error, agent_id,
                "Failed to write initial prompt to stdin", ErrorKind.STDIN_WRITE_FAILURE,
            )
        return active

    async def send_message(self, agent_id: str, text: str) -> bool:
        """
        Write a follow-up message into the live process.

        Returns False (never raises) when the agent has no process, its
        backend does not read stdin, or the pipe is no longer writable.
        """
        active = self._processes.get(agent_id)
        if active is None or not active.adapter.requires_stdin_input():
            return False
        return await self._write_stdin(active, active.adapter.format_stdin_input(text))

    async def _write_stdin(self, active: ActiveProcess, payload: str) -> bool:
        stdin = active.process.stdin
        if stdin is None or stdin.is_closing() or active.process.returncode is not None:
            return False
        try:
            stdin.write((payload + "\n").encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            self._record_error(active, ErrorKind.STDIN_WRITE_FAILURE, f"stdin write failed: {e}")
            logger.warning("Stdin write failed", agent_id=active.agent_id, error=str(e))
            return False
        return True

    async def stop(self, agent_id: str, timeout: Optional[float] = None, force: bool = False) -> bool:
        """
        Ask the agent's process to exit.

        Sends SIGINT to the process group, escalating to SIGTERM halfway
        through the timeout. SIGKILL is only sent when ``force`` is set,
        so a process that ignores both may keep running. Returns True if
        the process exited (or none was tracked).
        """
        active = self._processes.pop(agent_id, None)
        self._activity_callbacks.pop(agent_id, None)
        if active is None:
            return True

        active.stopping = True
        timeout = self.stop_timeout if timeout is None else timeout
        logger.info("Stopping agent process", agent_id=agent_id, pid=active.pid)

        for sig in (signal.SIGINT, signal.SIGTERM):
            self._signal_group(active, sig)
            if await self._wait_exited(active, timeout / 2):
                return True

        if force:
            self._signal_group(active, signal.SIGKILL)
            if await self._wait_exited(active, timeout / 2):
                return True
            # Keep it bound so no second process is started for the agent
            self._processes.setdefault(agent_id, active)
            logger.error("Agent process survived SIGKILL", agent_id=agent_id, pid=active.pid)
            return False

        logger.warning(
            "Agent process still running after stop timeout",
            agent_id=agent_id,
            pid=active.pid,
            timeout=timeout,
        )
        return False

    async def _supersede(self, agent_id: str) -> None:
        """End the agent's current process before another is started for it."""
        logger.info("Superseding agent process", agent_id=agent_id)
        if not await self.stop(agent_id, force=True):
            raise AgentBusyError(f"Agent {agent_id} process did not exit; not starting another")

    def interrupt(self, agent_id: str) -> bool:
        """Send SIGINT to the main process only; it stays tracked."""
        active = self._processes.get(agent_id)
        if active is None or active.process.returncode is not None:
            return False
        try:
            active.process.send_signal(signal.SIGINT)
            return True
        except ProcessLookupError:
            return False

    async def stop_all(self, kill_processes: bool = False) -> None:
        """
        Release every tracked process on shutdown.

        By default the children are left running and only detached from
        this runner; ``kill_processes`` stops them (forcibly if needed).
        """
        self.auto_restart = False
        for task in list(self._background):
            task.cancel()

        for agent_id in list(self._processes):
            if kill_processes:
                await self.stop(agent_id, force=True)
                continue
            active = self._processes.pop(agent_id)
            active.stopping = True
            if active.pump_task:
                active.pump_task.cancel()
            logger.info("Detached agent process", agent_id=agent_id, pid=active.pid)
        self._activity_callbacks.clear()

    # ==========================================================================
    # Queries
    # ==========================================================================

    def is_running(self, agent_id: str) -> bool:
        active = self._processes.get(agent_id)
        if active is None:
            return False
        if active.process.returncode is None:
            return True
        # Exited; the pump normally untracks it once output is drained
        if active.pump_task is None or active.pump_task.done():
            self._processes.pop(agent_id, None)
        return False

    def get_process(self, agent_id: str) -> Optional[ActiveProcess]:
        return self._processes.get(agent_id)

    def get_session_id(self, agent_id: str) -> Optional[str]:
        active = self._processes.get(agent_id)
        return active.session_id if active else None

    def get_last_error(self, agent_id: str) -> Optional[LastError]:
        return self._last_errors.get(agent_id)

    def running_agent_ids(self) -> List[str]:
        return [agent_id for agent_id in list(self._processes) if self.is_running(agent_id)]

    def tracked_pids(self) -> List[int]:
        return [active.pid for active in self._processes.values()]

    def has_recent_activity(self, agent_id: str, within: float) -> bool:
        active = self._processes.get(agent_id)
        if active is None:
            return False
        last = active.last_activity_monotonic or active.started_monotonic
        return time.monotonic() - last < within

    def on_next_activity(self, agent_id: str, callback: Callable[[], Any]) -> None:
        """Register a one-shot callback fired by the agent's next event."""
        self._activity_callbacks.setdefault(agent_id, []).append(callback)

    def clear_activity_callbacks(self, agent_id: str) -> None:
        self._activity_callbacks.pop(agent_id, None)

    def get_memory_usage_mb(self, agent_id: str) -> Optional[int]:
        """Resident set size of the agent's process, when it can be read."""
        active = self._processes.get(agent_id)
        if active is None:
            return None
        status_file = Path(f"/proc/{active.pid}/status")
        try:
            match = _VM_RSS.search(status_file.read_text())
            if match:
                return round(int(match.group(1)) / 1024)
        except OSError:
            pass
        try:
            result = subprocess.run(
                ["ps", "-o", "rss=", "-p", str(active.pid)],
                capture_output=True, text=True, timeout=1,
            )
            return round(int(result.stdout.strip()) / 1024)
        except (OSError, ValueError, subprocess.SubprocessError):
            return None

    # ==========================================================================
    # Output replay
    # ==========================================================================

    def output_path(self, agent_id: str, stream: str = "stdout") -> Path:
        return self.logs_dir / f"{agent_id}.{stream}.log"

    def read_output_since(self, agent_id: str, offset: int = 0, stream: str = "stdout") -> Tuple[List[str], int]:
        """
        Complete lines appended to the agent's output log after ``offset``.

        Returns the lines and the offset to pass next time. Works whether
        or not the process is still running.
        """
        path = self.output_path(agent_id, stream)
        if not path.exists():
            return [], offset
        with open(path, "rb") as f:
            f.seek(offset)
            data = f.read()
        end = data.rfind(b"\n")
        if end < 0:
            return [], offset
        chunk = data[:end + 1]
        lines = [line.decode("utf-8", errors="replace") for line in chunk.splitlines() if line.strip()]
        return lines, offset + len(chunk)

    # ==========================================================================
    # Diagnostics
    # ==========================================================================

    def get_death_history(self) -> List[DeathRecord]:
        return list(self._deaths)

    def analyze_deaths(self, window: float = RAPID_DEATH_WINDOW_SECONDS) -> Dict[str, Any]:
        """Summarize recent deaths: rapid-death bursts, OOM kills, short-lived runs."""
        now = time.time()
        recent = [d for d in self._deaths if now - d.timestamp < window]
        signals = {d.signal_name for d in recent if d.signal_name}
        exit_codes = {d.exit_code for d in recent if d.exit_code is not None}
        return {
            "total_deaths": len(self._deaths),
            "recent_deaths": len(recent),
            "rapid_deaths": len(recent) >= RAPID_DEATH_THRESHOLD,
            "oom_kills": [d.agent_id for d in recent if d.is_oom_kill],
            "short_lived": [d.agent_id for d in recent if d.runtime_seconds < self.min_runtime_for_restart],
            "common_signal": signals.pop() if len(signals) == 1 else None,
            "common_exit_code": exit_codes.pop() if len(exit_codes) == 1 else None,
        }

    def _record_death(self, record: DeathRecord) -> None:
        self._deaths.appendleft(record)
        logger.error(
            "Agent process died",
            agent_id=record.agent_id,
            pid=record.pid,
            exit_code=record.exit_code,
            signal=record.signal_name,
            runtime_seconds=round(record.runtime_seconds, 1),
            was_tracked=record.was_tracked,
            stderr_tail=(record.stderr_tail or "")[:500] or None,
        )
        analysis = self.analyze_deaths()
        if analysis["rapid_deaths"]:
            logger.error("Rapid process deaths detected", **analysis)

    def _record_error(self, active: Optional[ActiveProcess], kind: ErrorKind, message: str,
                      agent_id: Optional[str] = None) -> LastError:
        error = LastError(kind=kind, message=message)
        if active is not None:
            active.last_error = error
            agent_id = active.agent_id
        if agent_id:
            self._last_errors[agent_id] = error
        return error

    async def _report_spawn_failure(self, agent_id: str, error: SpawnFailure) -> None:
        logger.error("Agent process spawn failed", agent_id=agent_id, error=str(error))
        self._record_error(None, ErrorKind.SPAWN_FAILURE, str(error), agent_id=agent_id)
        await self._notify(self.callbacks.on_error, agent_id, str(error), ErrorKind.SPAWN_FAILURE)

    # ==========================================================================
    # Output pump
    # ==========================================================================

    async def _pump(self, active: ActiveProcess) -> None:
        """Tail the output logs until the process exits, then report the exit."""
        exit_waiter = asyncio.ensure_future(active.process.wait())
        stdout_buffer = b""
        stderr_buffer = b""
        try:
            while True:
                exited = exit_waiter.done()
                stdout_buffer = await self._drain(active, "stdout", stdout_buffer)
                stderr_buffer = await self._drain(active, "stderr", stderr_buffer)
                if exited:
                    break
                await asyncio.wait({exit_waiter}, timeout=self.poll_interval)

            # A final line without a trailing newline
            if stdout_buffer.strip():
                await self._process_line(active, stdout_buffer.decode("utf-8", errors="replace"))
            if stderr_buffer.strip():
                await self._process_stderr(active, stderr_buffer.decode("utf-8", errors="replace"))
        except asyncio.CancelledError:
            exit_waiter.cancel()
            raise
        except Exception as e:
            logger.error("Output pump failed", agent_id=active.agent_id, error=str(e))
            await exit_waiter

        try:
            await self._handle_exit(active, exit_waiter.result())
        finally:
            active.exited.set()

    async def _drain(self, active: ActiveProcess, stream: str, buffer: bytes) -> bytes:
        path = active.stdout_path if stream == "stdout" else active.stderr_path
        offset = active.stdout_offset if stream == "stdout" else active.stderr_offset
        try:
            with open(path, "rb") as f:
                f.seek(offset)
                data = f.read()
        except OSError:
            return buffer
        if not data:
            return buffer

        if stream == "stdout":
            active.stdout_offset += len(data)
        else:
            active.stderr_offset += len(data)

        buffer += data
        *lines, buffer = buffer.split(b"\n")
        if stream == "stdout":
            for line in lines:
                if line.strip():
                    await self._process_line(active, line.decode("utf-8", errors="replace"))
        elif lines:
            await self._process_stderr(active, b"\n".join(lines).decode("utf-8", errors="replace"))
        return buffer

    def _is_tracked(self, active: ActiveProcess) -> bool:
        return self._processes.get(active.agent_id) is active

    async def _process_line(self, active: ActiveProcess, line: str) -> None:
        if not self._is_tracked(active):
            return
        agent_id = active.agent_id
        raw = decode_line(line)
        if raw is None:
            logger.debug("Non-JSON output line", agent_id=agent_id, preview=line[:120])
            await self._notify(self.callbacks.on_output, agent_id, f"[raw] {line}", False)
            return

        session_id = active.adapter.extract_session_id(raw)
        if session_id:
            active.session_id = session_id
            # Auto-restarts resume the first session this request produced
            if not active.request.session_id:
                active.request.session_id = session_id
            await self._notify(self.callbacks.on_session_id, agent_id, session_id)

        for event in active.adapter.parse_event(raw):
            await self._handle_event(active, event)

    async def _handle_event(self, active: ActiveProcess, event: NormalizedEvent) -> None:
        agent_id = active.agent_id
        active.last_activity_monotonic = time.monotonic()

        for callback in self._activity_callbacks.pop(agent_id, []):
            await self._notify(callback)

        await self._notify(self.callbacks.on_event, agent_id, event)

        for text, streaming in self._render_output(event):
            await self._notify(self.callbacks.on_output, agent_id, text, streaming)

        if event.type == NormalizedEventType.ERROR:
            message = event.error_message or "Unknown error"
            self._record_error(active, ErrorKind.RUNTIME_ERROR, message)
            await self._notify(self.callbacks.on_error, agent_id, message, ErrorKind.RUNTIME_ERROR)

    @staticmethod
    def _render_output(event: NormalizedEvent) -> List[Tuple[str, bool]]:
        """Human-readable output lines for one event."""
        kind = event.type
        if kind == NormalizedEventType.INIT:
            return [(f"Session started: {event.session_id} ({event.model})", False)]
        if kind == NormalizedEventType.TEXT and event.text:
            return [(event.text, bool(event.is_streaming))]
        if kind == NormalizedEventType.THINKING and event.text:
            return [(f"[thinking] {event.text}", bool(event.is_streaming))]
        if kind == NormalizedEventType.TOOL_START:
            lines = [(f"Using tool: {event.tool_name}", False)]
            if event.tool_input:
                lines.append((f"Tool input: {json.dumps(event.tool_input)}", False))
            return lines
        if kind == NormalizedEventType.TOOL_RESULT and event.tool_name == "Bash" and event.tool_output:
            return [(f"Bash output:\n{event.tool_output}", False)]
        if kind == NormalizedEventType.STEP_COMPLETE:
            lines = []
            if event.result_text:
                lines.append((event.result_text, False))
            if event.tokens:
                lines.append((f"Tokens: {event.tokens.input} in, {event.tokens.output} out", False))
            if event.cost is not None:
                lines.append((f"Cost: ${event.cost:.4f}", False))
            return lines
        if kind == NormalizedEventType.CONTEXT_STATS and event.context_stats_raw:
            return [(event.context_stats_raw, False)]
        return []

    async def _process_stderr(self, active: ActiveProcess, text: str) -> None:
        active.stderr_tail = (active.stderr_tail + text)[-settings.STDERR_TAIL_BYTES:]
        logger.debug("Agent stderr", agent_id=active.agent_id, preview=text[:200])
        # Much of stderr is plain logging; only error-looking text is surfaced
        if "error" in text.lower() and self._is_tracked(active):
            await self._notify(self.callbacks.on_error, active.agent_id, text, ErrorKind.RUNTIME_ERROR)

    # ==========================================================================
    # Exit handling
    # ==========================================================================

    async def _handle_exit(self, active: ActiveProcess, returncode: int) -> None:
        agent_id = active.agent_id
        was_tracked = self._is_tracked(active)
        if was_tracked:
            del self._processes[agent_id]

        exit_code: Optional[int] = returncode
        signal_name: Optional[str] = None
        exit_signal: Optional[signal.Signals] = None
        if returncode < 0:
            exit_code = None
            try:
                exit_signal = signal.Signals(-returncode)
                signal_name = exit_signal.name
            except ValueError:
                signal_name = f"SIG{-returncode}"

        runtime = active.runtime_seconds
        if active.stopping or not was_tracked:
            logger.info(
                "Stopped agent process exited",
                agent_id=agent_id,
                pid=active.pid,
                exit_code=exit_code,
                signal=signal_name,
            )
            return

        if exit_signal not in INTENTIONAL_SIGNALS and returncode != 0:
            self._record_death(DeathRecord(
                agent_id=agent_id,
                pid=active.pid,
                exit_code=exit_code,
                signal_name=signal_name,
                runtime_seconds=runtime,
                was_tracked=was_tracked,
                stderr_tail=active.stderr_tail or None,
            ))
            self._record_error(
                active,
                ErrorKind.PROCESS_EXIT_NONZERO,
                f"Process exited with code {exit_code}" if exit_code is not None
                else f"Process killed by {signal_name}",
            )
        else:
            logger.info(
                "Agent process exited",
                agent_id=agent_id,
                pid=active.pid,
                exit_code=exit_code,
                signal=signal_name,
                runtime_seconds=round(runtime, 1),
            )

        await self._notify(self.callbacks.on_complete, agent_id, returncode == 0)

        if returncode != 0 and exit_signal not in INTENTIONAL_SIGNALS:
            await self._maybe_auto_restart(active)

    async def _maybe_auto_restart(self, active: ActiveProcess) -> None:
        agent_id = active.agent_id
        if not self.auto_restart:
            return

        if active.runtime_seconds < self.min_runtime_for_restart:
            message = (
                f"Process crashed immediately ({active.runtime_seconds:.1f}s) - not auto-restarting. "
                "Check the agent CLI installation."
            )
            logger.error("Auto-restart skipped", agent_id=agent_id, reason="crashed immediately")
            await self._notify(self.callbacks.on_error, agent_id, message, ErrorKind.PROCESS_EXIT_NONZERO)
            return

        restart_count = active.restart_count
        if (
            active.last_restart_monotonic is not None
            and time.monotonic() - active.last_restart_monotonic > self.restart_cooldown
        ):
            restart_count = 0

        if restart_count >= self.max_restart_attempts:
            message = (
                f"Process keeps crashing - auto-restart disabled after {self.max_restart_attempts} attempts. "
                "Manual intervention required."
            )
            logger.error("Auto-restart limit reached", agent_id=agent_id, attempts=restart_count)
            await self._notify(self.callbacks.on_error, agent_id, message, ErrorKind.PROCESS_EXIT_NONZERO)
            return

        logger.warning(
            "Scheduling auto-restart",
            agent_id=agent_id,
            attempt=restart_count + 1,
            max_attempts=self.max_restart_attempts,
        )
        task = asyncio.create_task(self._restart_later(active.request, restart_count + 1))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _restart_later(self, request: RunConfig, attempt: int) -> None:
        await asyncio.sleep(self.restart_delay)
        if request.agent_id in self._processes:
            return
        try:
            restarted = await self.run(request)
        except SpawnFailure as e:
            await self._notify(
                self.callbacks.on_error, request.agent_id, f"Auto-restart failed: {e}", ErrorKind.SPAWN_FAILURE,
            )
            return
        restarted.restart_count = attempt
        restarted.last_restart_monotonic = time.monotonic()
        logger.info("Agent process auto-restarted", agent_id=request.agent_id, attempt=attempt)
        await self._notify(
            self.callbacks.on_output, request.agent_id,
            "[System] Process was automatically restarted after crash", False,
        )

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _signal_group(self, active: ActiveProcess, sig: signal.Signals) -> None:
        if active.process.returncode is not None:
            return
        try:
            if active.adapter.is_windows():
                active.process.terminate()
            else:
                os.killpg(active.pid, sig)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning("Signal to process group failed", agent_id=active.agent_id, signal=sig.name, error=str(e))
            try:
                active.process.send_signal(sig)
            except ProcessLookupError:
                pass

    @staticmethod
    async def _wait_exited(active: ActiveProcess, timeout: float) -> bool:
        if active.process.returncode is not None and (active.pump_task is None or active.pump_task.done()):
            return True
        try:
            await asyncio.wait_for(active.exited.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return active.process.returncode is not None

    @staticmethod
    async def _notify(callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "Runner callback failed",
                callback=getattr(callback, "__name__", repr(callback)),
                error=str(e),
            )
