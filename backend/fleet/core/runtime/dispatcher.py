"""
Agent Runtime - Command Dispatcher
==================================

Single command-dispatch entrypoint and the agent state machine.

States: idle, working, error, orphaned.

- idle -> working      on command dispatch or an ``init`` event
- working -> idle      on ``step_complete`` (Claude), process exit or stop
- working -> error     on a fatal runtime error, or a non-zero exit that
                       was not preceded by ``step_complete``
- any -> working       when the reconciler reports pending activity
- orphaned -> idle     when the orphaned process disappears

The dispatcher is also the runner's callback sink: it turns runner
events into agent updates and republishes them on the orchestrator
context.
"""

import asyncio
import math
import re
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Deque, Iterable, Tuple

import structlog

from fleet.core.config import settings
from fleet.core.runtime.agents import (
    Agent,
    AgentBackend,
    AgentStatus,
    ErrorKind,
    LastError,
    SYSTEM_MESSAGE_PREFIX,
    utcnow,
)
from fleet.core.runtime.backends import RunConfig
from fleet.core.runtime.backends.stats import parse_context_output, parse_usage_output
from fleet.core.runtime.context import OrchestratorContext, OrchestratorEventKind
from fleet.core.runtime.events import NormalizedEvent, NormalizedEventType
from fleet.core.runtime.process_scan import ProcessScanner
from fleet.core.runtime.runner import ProcessRunner, RunnerCallbacks
from fleet.core.runtime.transcripts import SessionMessage, TranscriptStore

logger = structlog.get_logger()


SILENT_COMMANDS = {"/context", "/cost", "/compact"}
CURRENT_TASK_PREVIEW_CHARS = 100

# Codex does not report a usable context snapshot, so context use is
# estimated from the growth of recent turns
CODEX_PLAUSIBLE_USAGE_MULTIPLIER = 1.2

CODEX_RECOVERABLE_RESUME_ERRORS = (
    "state db missing rollout path for thread",
    "killing the current session",
)
CODEX_RECOVERY_HISTORY_LIMIT = 12
CODEX_RECOVERY_LINE_MAX_CHARS = 400
CODEX_RECOVERY_DELAY_SECONDS = 0.5

RESUME_MESSAGE_TEMPLATE = (
    "[System: The orchestrator was restarted while you were working. "
    "Please continue with your previous task. "
    'Your last assigned task was: "{task}"]'
)

TurnHandler = Callable[[Agent, str, bool], Any]


class DispatchMode(str, Enum):
    """How a command reached the agent."""
    INJECTED = "injected"      # written to the live process on stdin
    SPAWNED = "spawned"        # a new process was started


# ==========================================================================
# Helpers
# ==========================================================================

def is_system_message(text: Optional[str]) -> bool:
    return bool(text) and text.startswith(SYSTEM_MESSAGE_PREFIX)


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token count of a prompt (four characters per token)."""
    if not text or not text.strip():
        return 0
    return max(1, math.ceil(len(text.strip()) / 4))


def detect_recoverable_codex_error(message: str) -> Optional[str]:
    lowered = (message or "").lower()
    for marker in CODEX_RECOVERABLE_RESUME_ERRORS:
        if marker in lowered:
            return marker
    return None


def build_codex_recovery_prompt(session_id: str, messages: List[SessionMessage]) -> str:
    """System prompt carrying the recent transcript of a session that could not be resumed."""
    roles = {"assistant": "Assistant", "user": "User"}
    lines = []
    for message in messages[-CODEX_RECOVERY_HISTORY_LIMIT:]:
        role = roles.get(message.type)
        if role is None:
            prefix = "ToolUse" if message.type == "tool_use" else "ToolResult"
            role = f"{prefix}({message.tool_name or 'unknown'})"
        content = re.sub(r"\s+", " ", message.content or "").strip()
        if len(content) > CODEX_RECOVERY_LINE_MAX_CHARS:
            content = content[:CODEX_RECOVERY_LINE_MAX_CHARS] + "..."
        lines.append(f"{role}: {content}")

    return "\n\n".join([
        f"Previous Codex session ({session_id}) could not be resumed due to stale state.",
        "Use this recovered recent transcript to continue seamlessly:",
        "\n".join(lines),
        "Continue with the latest user request. If context is still ambiguous, ask a focused clarifying question.",
    ])


def build_resume_message(task: str) -> str:
    return RESUME_MESSAGE_TEMPLATE.format(task=task)


# ==========================================================================
# Dispatcher
# ==========================================================================

class CommandDispatcher:
    """
    Routes commands to agents and keeps agent state in step with their
    processes.

    Commands to one agent are serialized by a per-agent lock around the
    running check and the inject-vs-spawn decision, so two concurrent
    sends to a busy agent produce one process and two delivered messages.
    """

    def __init__(
        self,
        context: OrchestratorContext,
        runner: ProcessRunner,
        transcripts: Optional[TranscriptStore] = None,
        scanner: Optional[ProcessScanner] = None,
        stdin_activity_timeout: Optional[float] = None,
        auto_resume_max_age: Optional[float] = None,
        auto_resume_delay: Optional[float] = None,
        codex_rolling_turns: Optional[int] = None,
    ):
        self.context = context
        self.runner = runner
        self.transcripts = transcripts or TranscriptStore()
        self.scanner = scanner or ProcessScanner()
        self.stdin_activity_timeout = (
            stdin_activity_timeout if stdin_activity_timeout is not None
            else settings.STDIN_ACTIVITY_TIMEOUT_SECONDS
        )
        self.auto_resume_max_age = (
            auto_resume_max_age if auto_resume_max_age is not None else settings.AUTO_RESUME_MAX_AGE_SECONDS
        )
        self.auto_resume_delay = (
            auto_resume_delay if auto_resume_delay is not None else settings.AUTO_RESUME_DELAY_SECONDS
        )
        self.codex_rolling_turns = (
            codex_rolling_turns if codex_rolling_turns is not None else settings.CODEX_ROLLING_TURNS
        )

        self._locks: Dict[str, asyncio.Lock] = {}
        self._step_complete: set = set()
        self._turn_text: Dict[str, List[str]] = {}
        self._codex_growth: Dict[str, Deque[int]] = {}
        self._codex_recovery: Dict[str, str] = {}
        self._recovering: set = set()
        self._watchdogs: Dict[str, asyncio.Task] = {}
        self._background: set = set()
        self._turn_handlers: List[TurnHandler] = []

        # Claude Task tool invocations running as subagents, by tool_use_id
        self.active_subagents: Dict[str, Dict[str, Any]] = {}
        self.usage_stats: Dict[str, Dict[str, Any]] = {}

        runner.set_callbacks(RunnerCallbacks(
            on_event=self.handle_event,
            on_output=self.handle_output,
            on_session_id=self.handle_session_id,
            on_complete=self.handle_complete,
            on_error=self.handle_error,
        ))

    def add_turn_handler(self, handler: TurnHandler) -> None:
        """Register a hook called with (agent, turn_text, success) after each completed turn."""
        self._turn_handlers.append(handler)

    def _lock(self, agent_id: str) -> asyncio.Lock:
        lock = self._locks.get(agent_id)
        if lock is None:
            lock = self._locks[agent_id] = asyncio.Lock()
        return lock

    def forget_agent(self, agent_id: str) -> None:
        """Drop per-agent bookkeeping for a deleted agent."""
        self._cancel_watchdog(agent_id)
        self._locks.pop(agent_id, None)
        self._step_complete.discard(agent_id)
        self._turn_text.pop(agent_id, None)
        self._codex_growth.pop(agent_id, None)
        self._codex_recovery.pop(agent_id, None)
        self.usage_stats.pop(agent_id, None)
        for tool_use_id, subagent in list(self.active_subagents.items()):
            if subagent["parent_agent_id"] == agent_id:
                del self.active_subagents[tool_use_id]

    # ==========================================================================
    # Commands
    # ==========================================================================

    async def send_command(
        self,
        agent_id: str,
        command: str,
        system_prompt: Optional[str] = None,
        force_new_session: bool = False,
    ) -> DispatchMode:
        """
        Deliver a command to an agent.

        A running process whose backend reads stdin gets the text injected
        directly; otherwise a new process is started, resuming the agent's
        session unless ``force_new_session`` is set. Raises
        AgentNotFoundError for unknown agents and SpawnFailure when the
        CLI cannot be launched.
        """
        agent = self.context.require_agent(agent_id)
        async with self._lock(agent_id):
            if self.runner.is_running(agent_id) and not force_new_session:
                active = self.runner.get_process(agent_id)
                if active is not None and active.adapter.requires_stdin_input():
                    if await self.runner.send_message(agent_id, command):
                        self._step_complete.discard(agent_id)
                        self._record_dispatch(agent, command)
                        self.context.set_status(agent_id, AgentStatus.WORKING,
                                                current_task=command[:CURRENT_TASK_PREVIEW_CHARS])
                        self.context.emit(OrchestratorEventKind.COMMAND_STARTED, agent_id, command=command,
                                          mode=DispatchMode.INJECTED.value)
                        self._start_stdin_watchdog(agent_id, command, system_prompt)
                        logger.info("Command injected on stdin", agent_id=agent_id, chars=len(command))
                        return DispatchMode.INJECTED
                    logger.warning("Stdin injection failed, spawning a new process", agent_id=agent_id)
                else:
                    # The spawn below supersedes the running process
                    logger.info("Backend does not read stdin, restarting with resume", agent_id=agent_id)

            await self._spawn(agent, command, system_prompt, force_new_session)
            return DispatchMode.SPAWNED

    async def execute_command(
        self,
        agent_id: str,
        command: str,
        system_prompt: Optional[str] = None,
        force_new_session: bool = False,
    ) -> DispatchMode:
        """Always start a new process for ``command`` (superseding any running one)."""
        agent = self.context.require_agent(agent_id)
        async with self._lock(agent_id):
            await self._spawn(agent, command, system_prompt, force_new_session)
        return DispatchMode.SPAWNED

    async def send_silent_command(self, agent_id: str, command: str) -> bool:
        """
        Send a maintenance command (/context, /cost, /compact).

        Leaves status, last-assigned task and the task counter alone.
        Backends without stdin input cannot take these; returns False.
        """
        agent = self.context.require_agent(agent_id)
        adapter = self.runner.adapter_factory(agent.backend)
        if not adapter.requires_stdin_input():
            logger.info("Backend cannot take silent commands", agent_id=agent_id, command=command)
            return False

        async with self._lock(agent_id):
            if self.runner.is_running(agent_id) and await self.runner.send_message(agent_id, command):
                logger.debug("Silent command injected", agent_id=agent_id, command=command)
                return True
            await self.runner.run(self._build_config(agent, command))
            logger.debug("Silent command spawned", agent_id=agent_id, command=command)
        return True

    async def stop_agent(self, agent_id: str) -> None:
        """Stop the agent's process, clean up untracked CLIs in its cwd and mark it idle."""
        agent = self.context.require_agent(agent_id)
        self._cancel_watchdog(agent_id)
        async with self._lock(agent_id):
            await self.runner.stop(agent_id)

        if agent.cwd:
            killed = await self.scanner.kill_processes_in_cwd(
                agent.cwd,
                (agent.backend.value,),
                exclude_pids=self.runner.tracked_pids(),
            )
            if killed:
                logger.info("Killed untracked agent processes", agent_id=agent_id, pids=killed)

        self._step_complete.discard(agent_id)
        self._turn_text.pop(agent_id, None)
        self.context.set_status(agent_id, AgentStatus.IDLE, current_task=None, current_tool=None)

    def interrupt_agent(self, agent_id: str) -> bool:
        self.context.require_agent(agent_id)
        return self.runner.interrupt(agent_id)

    async def _spawn(
        self,
        agent: Agent,
        command: str,
        system_prompt: Optional[str],
        force_new_session: bool,
    ) -> None:
        if force_new_session and agent.session_id:
            self.context.update_agent(agent.id, session_id=None)
        self._record_dispatch(agent, command)
        self.context.set_status(
            agent.id,
            AgentStatus.WORKING,
            current_task=command[:CURRENT_TASK_PREVIEW_CHARS],
        )
        self.context.emit(OrchestratorEventKind.COMMAND_STARTED, agent.id, command=command,
                          mode=DispatchMode.SPAWNED.value)
        self._step_complete.discard(agent.id)
        self._turn_text.pop(agent.id, None)
        await self.runner.run(self._build_config(agent, command, system_prompt, force_new_session))

    def _build_config(
        self,
        agent: Agent,
        command: str,
        system_prompt: Optional[str] = None,
        force_new_session: bool = False,
    ) -> RunConfig:
        return RunConfig(
            agent_id=agent.id,
            prompt=command,
            cwd=agent.cwd,
            backend=agent.backend,
            session_id=agent.session_id,
            model=agent.model,
            permission_mode=agent.permission_mode,
            use_chrome=agent.use_chrome,
            system_prompt=system_prompt or agent.system_prompt,
            codex=agent.codex,
            force_new_session=force_new_session,
        )

    def _record_dispatch(self, agent: Agent, command: str) -> None:
        self.context.update_agent(
            agent.id,
            last_assigned_task=command,
            last_assigned_task_time=utcnow(),
            task_count=agent.task_count + 1,
        )

    # ==========================================================================
    # Stdin watchdog
    # ==========================================================================

    def _start_stdin_watchdog(self, agent_id: str, command: str, system_prompt: Optional[str]) -> None:
        """Respawn with the same command if the process ignores an injected message."""
        self._cancel_watchdog(agent_id)
        task = asyncio.create_task(self._stdin_watchdog(agent_id, command, system_prompt))
        self._watchdogs[agent_id] = task
        self.runner.on_next_activity(agent_id, lambda: self._cancel_watchdog(agent_id, task))

    def _cancel_watchdog(self, agent_id: str, task: Optional[asyncio.Task] = None) -> None:
        current = self._watchdogs.get(agent_id)
        if current is None or (task is not None and current is not task):
            return
        self._watchdogs.pop(agent_id, None)
        current.cancel()

    async def _stdin_watchdog(self, agent_id: str, command: str, system_prompt: Optional[str]) -> None:
        await asyncio.sleep(self.stdin_activity_timeout)
        if self.runner.has_recent_activity(agent_id, self.stdin_activity_timeout):
            return
        # Detach before respawning so the new process is not mistaken for this watchdog
        self._watchdogs.pop(agent_id, None)
        logger.warning("No activity after stdin message, respawning", agent_id=agent_id)
        try:
            await self.execute_command(agent_id, command, system_prompt)
        except Exception as e:
            logger.error("Stdin watchdog respawn failed", agent_id=agent_id, error=str(e))

    # ==========================================================================
    # Runner callbacks
    # ==========================================================================

    def handle_event(self, agent_id: str, event: NormalizedEvent) -> None:
        agent = self.context.get_agent(agent_id)
        if agent is None:
            return

        kind = event.type
        if kind == NormalizedEventType.INIT:
            self.context.set_status(agent_id, AgentStatus.WORKING)

        elif kind == NormalizedEventType.TOOL_START:
            self.context.set_status(agent_id, AgentStatus.WORKING, current_tool=event.tool_name)
            self._track_subagent_start(agent_id, event)

        elif kind == NormalizedEventType.TOOL_RESULT:
            self._track_subagent_result(agent_id, event)
            self.context.update_agent(agent_id, current_tool=None)

        elif kind == NormalizedEventType.TEXT and not event.is_streaming and event.text:
            self._turn_text.setdefault(agent_id, []).append(event.text)

        elif kind == NormalizedEventType.STEP_COMPLETE:
            self._handle_step_complete(agent, event)

        elif kind == NormalizedEventType.CONTEXT_STATS and event.context_stats_raw:
            stats = parse_context_output(event.context_stats_raw)
            if stats:
                self.context.update_agent(
                    agent_id,
                    context_used=stats["total_tokens"],
                    context_limit=stats["context_window"],
                )

        elif kind == NormalizedEventType.USAGE_STATS and event.usage_stats_raw:
            usage = parse_usage_output(event.usage_stats_raw)
            if usage:
                self.usage_stats[agent_id] = usage
            else:
                logger.debug("Unparseable usage report", agent_id=agent_id)

        self.context.emit(OrchestratorEventKind.AGENT_EVENT, agent_id, event=event.to_dict())

    def handle_output(self, agent_id: str, text: str, is_streaming: bool = False) -> None:
        self.context.emit(OrchestratorEventKind.AGENT_OUTPUT, agent_id, text=text, is_streaming=is_streaming)

    def handle_session_id(self, agent_id: str, session_id: str) -> None:
        agent = self.context.get_agent(agent_id)
        if agent is None:
            return
        if not agent.session_id:
            self.context.update_agent(agent_id, session_id=session_id)
            self.context.emit(OrchestratorEventKind.SESSION_ID, agent_id, session_id=session_id)
        elif agent.session_id != session_id:
            logger.info(
                "Session id mismatch, keeping existing",
                agent_id=agent_id,
                expected=agent.session_id,
                received=session_id,
            )

    async def handle_complete(self, agent_id: str, success: bool) -> None:
        received_step_complete = agent_id in self._step_complete
        self._step_complete.discard(agent_id)
        self._cancel_watchdog(agent_id)

        agent = self.context.get_agent(agent_id)
        if agent is None:
            return

        if agent_id in self._recovering:
            logger.info("Stale Codex process exited during recovery", agent_id=agent_id)
            return

        if success or received_step_complete:
            self.context.set_status(agent_id, AgentStatus.IDLE, current_task=None, current_tool=None)
        else:
            changes: Dict[str, Any] = {"current_task": None, "current_tool": None}
            last_error = self.runner.get_last_error(agent_id)
            if last_error is not None:
                changes["last_error"] = last_error
            self.context.set_status(agent_id, AgentStatus.ERROR, **changes)

        self.context.emit(OrchestratorEventKind.AGENT_COMPLETE, agent_id, success=success)

        pending = self._turn_text.pop(agent_id, None)
        if pending:
            await self._run_turn_handlers(agent, "\n".join(pending), success)

    async def handle_error(self, agent_id: str, message: str, kind: ErrorKind = ErrorKind.RUNTIME_ERROR) -> None:
        agent = self.context.get_agent(agent_id)
        if agent is None:
            return

        if self._try_codex_recovery(agent, message):
            return

        error = LastError(kind=kind, message=message)
        logger.error(
            "Agent error",
            agent_id=agent_id,
            kind=kind.value,
            message=message[:500],
            status_before=agent.status.value,
            last_task=agent.last_assigned_task,
            current_tool=agent.current_tool,
            session_id=agent.session_id,
        )

        # A failed injection falls back to a respawn; the agent is not in error
        if kind == ErrorKind.STDIN_WRITE_FAILURE:
            self.context.update_agent(agent_id, last_error=error)
        else:
            self.context.set_status(agent_id, AgentStatus.ERROR, current_task=None, current_tool=None,
                                    last_error=error)
        self.context.emit(OrchestratorEventKind.AGENT_ERROR, agent_id, message=message, error_kind=kind.value)

    # ==========================================================================
    # Turn accounting
    # ==========================================================================

    def _handle_step_complete(self, agent: Agent, event: NormalizedEvent) -> None:
        agent_id = agent.id
        self._step_complete.add(agent_id)
        is_codex = agent.backend == AgentBackend.CODEX
        last_task = (agent.last_assigned_task or "").strip()
        context_used, context_limit = self._context_usage(agent, event)

        tokens = event.tokens
        empty_usage = (
            tokens is not None
            and not (tokens.input or tokens.output or tokens.cache_read or tokens.cache_creation)
            and event.model_usage is None
        )
        if not is_codex and empty_usage and last_task not in SILENT_COMMANDS:
            logger.debug("Empty usage reported, keeping previous context", agent_id=agent_id)
            context_used, context_limit = agent.context_used, agent.context_limit

        context_used = max(0, min(context_used, context_limit))

        # context_used is a snapshot of the window; tokens_used is the running total
        tokens_used = agent.tokens_used + ((tokens.input + tokens.output) if tokens else 0)
        changes: Dict[str, Any] = {
            "tokens_used": tokens_used,
            "context_used": context_used,
            "context_limit": context_limit,
        }

        if is_codex:
            # Codex keeps working until its process exits
            self.context.update_agent(agent_id, **changes)
        else:
            self.context.set_status(agent_id, AgentStatus.IDLE, current_task=None, current_tool=None, **changes)

        text = event.result_text or "\n".join(self._turn_text.get(agent_id, []))
        self._turn_text.pop(agent_id, None)
        if text:
            self._spawn_background(self._run_turn_handlers(agent, text, True))

    def _context_usage(self, agent: Agent, event: NormalizedEvent) -> Tuple[int, int]:
        context_used = agent.context_used
        context_limit = agent.context_limit or settings.DEFAULT_CONTEXT_LIMIT
        is_codex = agent.backend == AgentBackend.CODEX

        usage = event.model_usage
        if usage:
            input_tokens = usage.get("inputTokens") or 0
            output_tokens = usage.get("outputTokens") or 0
            context_limit = usage.get("contextWindow") or settings.DEFAULT_CONTEXT_LIMIT
            if is_codex:
                context_used = self._codex_context(agent, input_tokens, output_tokens, context_limit)
            else:
                context_used = (
                    (usage.get("cacheReadInputTokens") or 0)
                    + (usage.get("cacheCreationInputTokens") or 0)
                    + input_tokens
                    + output_tokens
                )
        elif event.tokens:
            if is_codex:
                context_used = self._codex_context(agent, event.tokens.input, event.tokens.output, context_limit)
            else:
                context_used = event.tokens.context_snapshot
        return context_used, context_limit

    def _codex_context(self, agent: Agent, input_tokens: int, output_tokens: int, context_limit: int) -> int:
        growth = self._codex_growth.get(agent.id)
        if growth is None:
            growth = self._codex_growth[agent.id] = deque(maxlen=self.codex_rolling_turns)
        growth.append(max(0, estimate_tokens(agent.last_assigned_task) + output_tokens))
        rolling = sum(growth)

        plausible = 0 < input_tokens <= context_limit * CODEX_PLAUSIBLE_USAGE_MULTIPLIER
        if plausible:
            return max(rolling, input_tokens + output_tokens)
        return rolling

    async def _run_turn_handlers(self, agent: Agent, text: str, success: bool) -> None:
        for handler in list(self._turn_handlers):
            try:
                result = handler(agent, text, success)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("Turn handler failed", agent_id=agent.id, error=str(e))

    # ==========================================================================
    # Subagents
    # ==========================================================================

    def _track_subagent_start(self, agent_id: str, event: NormalizedEvent) -> None:
        if event.tool_name != "Task" or not event.tool_use_id:
            return
        tool_input = event.tool_input or {}
        self.active_subagents[event.tool_use_id] = {
            "parent_agent_id": agent_id,
            "name": tool_input.get("description") or "subagent",
            "subagent_type": tool_input.get("subagent_type") or "general-purpose",
            "model": tool_input.get("model"),
            "started_at": utcnow().isoformat(),
        }
        logger.info("Subagent started", agent_id=agent_id, tool_use_id=event.tool_use_id)

    def _track_subagent_result(self, agent_id: str, event: NormalizedEvent) -> None:
        if not event.tool_use_id:
            return
        subagent = self.active_subagents.pop(event.tool_use_id, None)
        if subagent is not None:
            event.extra["subagent_name"] = subagent["name"]
            logger.info("Subagent completed", agent_id=agent_id, tool_use_id=event.tool_use_id)

    def subagents_for(self, agent_id: str) -> List[Dict[str, Any]]:
        return [dict(s, tool_use_id=k) for k, s in self.active_subagents.items() if s["parent_agent_id"] == agent_id]

    # ==========================================================================
    # Codex stale-resume recovery
    # ==========================================================================

    def _try_codex_recovery(self, agent: Agent, message: str) -> bool:
        if agent.backend != AgentBackend.CODEX:
            return False
        marker = detect_recoverable_codex_error(message)
        task = (agent.last_assigned_task or "").strip()
        if marker is None or not agent.session_id or not task:
            return False

        # One retry per (error, session)
        signature = f"{marker}:{agent.session_id}"
        if self._codex_recovery.get(agent.id) == signature:
            return False
        self._codex_recovery[agent.id] = signature

        stale_session_id = agent.session_id
        logger.warning(
            "Recoverable Codex resume error, retrying with a fresh session",
            agent_id=agent.id,
            session_id=stale_session_id,
        )
        self._recovering.add(agent.id)
        self.context.set_status(agent.id, AgentStatus.IDLE, session_id=None, current_task=None, current_tool=None)
        self.handle_output(agent.id, "[System] Codex session state was stale. Retrying with a fresh session...")
        self._spawn_background(self._recover_codex_session(agent, task, stale_session_id))
        return True

    async def _recover_codex_session(self, agent: Agent, task: str, stale_session_id: str) -> None:
        await asyncio.sleep(CODEX_RECOVERY_DELAY_SECONDS)
        system_prompt = None
        try:
            history = self.transcripts.load_session(agent.cwd, stale_session_id, CODEX_RECOVERY_HISTORY_LIMIT, 0)
            if history and history.messages:
                system_prompt = build_codex_recovery_prompt(stale_session_id, history.messages)
                self.handle_output(
                    agent.id,
                    f"[System] Recovered {len(history.messages)} recent message(s) from the previous Codex session.",
                )
            else:
                logger.warning("No recoverable Codex messages", agent_id=agent.id, session_id=stale_session_id)
        except Exception as e:
            logger.warning("Failed to load stale Codex session", agent_id=agent.id, error=str(e))

        try:
            await self.execute_command(agent.id, task, system_prompt, force_new_session=True)
        except Exception as e:
            logger.error("Codex recovery retry failed", agent_id=agent.id, error=str(e))
            self.context.set_status(agent.id, AgentStatus.ERROR, current_task=None, current_tool=None)
            self.context.emit(OrchestratorEventKind.AGENT_ERROR, agent.id,
                              message=f"Codex auto-retry failed: {e}", error_kind=ErrorKind.SPAWN_FAILURE.value)
        finally:
            self._recovering.discard(agent.id)

    # ==========================================================================
    # Auto-resume
    # ==========================================================================

    def auto_resume_candidates(self, agents: Iterable[Agent], now: Optional[datetime] = None) -> List[Agent]:
        """
        Agents whose last user-assigned task is recent enough to resume.

        Tasks the orchestrator generated itself are never resumed, so a
        resume notice cannot trigger another resume.
        """
        now = now or utcnow()
        candidates = []
        for agent in agents:
            task = agent.last_assigned_task
            if not task or agent.last_assigned_task_time is None:
                continue
            if is_system_message(task):
                logger.debug("Skipping auto-resume of system task", agent_id=agent.id)
                continue
            age = (now - agent.last_assigned_task_time).total_seconds()
            if age < self.auto_resume_max_age:
                candidates.append(agent)
        return candidates

    async def auto_resume(self, now: Optional[datetime] = None) -> List[str]:
        """Send a resume notice to every eligible agent; returns their ids."""
        resumed = []
        for agent in self.auto_resume_candidates(self.context.list_agents(), now):
            if self.runner.is_running(agent.id):
                continue
            if resumed:
                await asyncio.sleep(self.auto_resume_delay)
            task = agent.last_assigned_task
            try:
                await self.send_command(agent.id, build_resume_message(task))
                resumed.append(agent.id)
                logger.info("Auto-resumed agent", agent_id=agent.id, task=task[:80])
            except Exception as e:
                logger.error("Auto-resume failed", agent_id=agent.id, error=str(e))
        return resumed

    # ==========================================================================
    # Shutdown
    # ==========================================================================

    def _spawn_background(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def close(self) -> None:
        for task in list(self._watchdogs.values()) + list(self._background):
            task.cancel()
        for task in list(self._background):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._watchdogs.clear()
