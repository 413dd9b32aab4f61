"""
Agent Backends - Codex (coarse-grained)
=======================================

Adapter for ``codex exec --json``.

The raw stream only reports whole items (reasoning, agent message, web
search, shell command execution) and one usage record per turn. Shell
commands are additionally run through the inference heuristics in
``codex_inference`` to surface the file operations they performed;
those events carry ``inferred=True``.
"""

import json
from pathlib import Path
from typing import Optional, List, Dict, Any

import structlog

from fleet.core.config import settings
from fleet.core.runtime.agents import AgentBackend
from fleet.core.runtime.backends.base import AgentAdapter, RunConfig, sanitize_text
from fleet.core.runtime.backends.codex_inference import infer_file_operations
from fleet.core.runtime.events import NormalizedEvent, NormalizedEventType, TokenUsage

logger = structlog.get_logger()


DEFAULT_PROMPT = "Continue the task."
TURN_ABORTED_MARKER = "<turn_aborted>"

# Model aliases that belong to other backends and must not reach codex
FOREIGN_MODEL_ALIASES = {"codex", "sonnet", "opus", "haiku"}


def build_codex_prompt(prompt: Optional[str], system_prompt: Optional[str] = None,
                       instructions: Optional[str] = None) -> str:
    """Codex has no system-prompt flag; injected text is folded into the prompt."""
    user_prompt = (prompt or "").strip() or DEFAULT_PROMPT
    sections = []
    if instructions and instructions.strip():
        sections.append(f"## Agent Instructions\n{instructions.strip()}")
    if system_prompt and system_prompt.strip():
        sections.append(f"## System Context\n{system_prompt.strip()}")
    if not sections:
        return user_prompt
    return "\n\n".join([
        "Follow all instructions below for this task.",
        *sections,
        "## User Request",
        user_prompt,
    ])


class CodexAdapter(AgentAdapter):
    """Codex CLI exec --json adapter."""

    backend = AgentBackend.CODEX
    executable_name = "codex"

    def __init__(self, data_dir: Optional[Path] = None, executable: Optional[str] = None):
        super().__init__(data_dir=data_dir, executable=executable)
        self._active_tools: Dict[str, str] = {}

    # ==========================================================================
    # Arguments
    # ==========================================================================

    def build_args(self, config: RunConfig) -> List[str]:
        prompt = sanitize_text(build_codex_prompt(config.prompt, config.system_prompt))
        if config.system_prompt:
            # Keep a copy of the composed prompt next to the other scratch prompts
            self.write_prompt_file(config.agent_id, prompt)

        options = config.codex
        args = ["exec", "--json"]

        if options.full_auto:
            # --full-auto sandboxes network access; bypass matches Claude's bypass mode
            args.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            if options.approval_mode:
                args += ["--ask-for-approval", options.approval_mode]
            if options.sandbox:
                args += ["--sandbox", options.sandbox]

        if options.search:
            args.append("--search")
        if options.profile:
            args += ["--profile", options.profile]

        if config.cwd:
            args += ["-C", config.cwd]

        if config.model and config.model not in FOREIGN_MODEL_ALIASES:
            args += ["--model", config.model]

        if config.resume_session_id:
            args += ["resume", config.resume_session_id, prompt]
        else:
            args.append(prompt)
        return args

    def requires_stdin_input(self) -> bool:
        return False

    # ==========================================================================
    # Parsing
    # ==========================================================================

    def extract_session_id(self, event: Dict[str, Any]) -> Optional[str]:
        if event.get("type") == "thread.started" and isinstance(event.get("thread_id"), str):
            return event["thread_id"]
        return None

    def _parse(self, event: Dict[str, Any]) -> List[NormalizedEvent]:
        kind = event.get("type")
        item = event.get("item") if isinstance(event.get("item"), dict) else None

        if kind == "thread.started" and isinstance(event.get("thread_id"), str):
            return [NormalizedEvent(type=NormalizedEventType.INIT, session_id=event["thread_id"])]
        if kind == "item.started" and item:
            return self._item_started(item)
        if kind == "item.completed" and item:
            return self._item_completed(item)
        if kind == "turn.completed":
            return self._turn_completed(event.get("usage"))
        if kind == "turn.failed":
            error = event.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            return [NormalizedEvent(type=NormalizedEventType.ERROR, error_message=message or "Turn failed")]
        if kind == "error" and event.get("message"):
            return [NormalizedEvent(type=NormalizedEventType.ERROR, error_message=str(event["message"]))]
        return []

    def _item_started(self, item: Dict[str, Any]) -> List[NormalizedEvent]:
        item_type = item.get("type")
        if item_type == "web_search":
            tool_name, tool_input = "web_search", self._web_search_input(item)
        elif item_type == "command_execution":
            tool_name = "Bash"
            tool_input = {"command": item.get("command"), "status": item.get("status")}
        else:
            return []

        if item.get("id"):
            self._active_tools[item["id"]] = tool_name
        return [NormalizedEvent(
            type=NormalizedEventType.TOOL_START,
            tool_name=tool_name,
            tool_input=tool_input,
            tool_use_id=item.get("id"),
        )]

    def _item_completed(self, item: Dict[str, Any]) -> List[NormalizedEvent]:
        item_type = item.get("type")
        text = item.get("text")

        if item_type == "reasoning" and text:
            return [NormalizedEvent(type=NormalizedEventType.THINKING, text=text, is_streaming=False)]

        if item_type == "agent_message" and text:
            if TURN_ABORTED_MARKER in text:
                return []
            return [NormalizedEvent(type=NormalizedEventType.TEXT, text=text, is_streaming=False)]

        if item_type == "web_search":
            tool_name = self._active_tools.pop(item.get("id"), "web_search")
            return [NormalizedEvent(
                type=NormalizedEventType.TOOL_RESULT,
                tool_name=tool_name,
                tool_output=json.dumps(self._web_search_input(item)),
                tool_use_id=item.get("id"),
            )]

        if item_type == "command_execution":
            tool_name = self._active_tools.pop(item.get("id"), "Bash")
            events = self._inferred_events(item.get("command"), item.get("aggregated_output"))
            events.append(NormalizedEvent(
                type=NormalizedEventType.TOOL_RESULT,
                tool_name=tool_name,
                tool_output=self._command_output(item),
                tool_use_id=item.get("id"),
            ))
            return events

        return []

    def _turn_completed(self, usage: Any) -> List[NormalizedEvent]:
        if not isinstance(usage, dict):
            return []
        return [NormalizedEvent(
            type=NormalizedEventType.STEP_COMPLETE,
            tokens=TokenUsage(
                input=usage.get("input_tokens") or 0,
                output=usage.get("output_tokens") or 0,
                cache_read=usage.get("cached_input_tokens"),
            ),
        )]

    def _inferred_events(self, command: Optional[str], output: Optional[str]) -> List[NormalizedEvent]:
        events = []
        for call in infer_file_operations(command, output):
            events.append(NormalizedEvent(
                type=NormalizedEventType.TOOL_START,
                tool_name=call.tool_name,
                tool_input=call.tool_input,
                inferred=True,
            ))
            if call.tool_output:
                events.append(NormalizedEvent(
                    type=NormalizedEventType.TOOL_RESULT,
                    tool_name=call.tool_name,
                    tool_output=call.tool_output,
                    inferred=True,
                ))
        return events

    @staticmethod
    def _web_search_input(item: Dict[str, Any]) -> Dict[str, Any]:
        action = item.get("action") if isinstance(item.get("action"), dict) else {}
        return {
            "query": item.get("query"),
            "actionType": action.get("type"),
            "actionQuery": action.get("query"),
            "actionQueries": action.get("queries"),
            "actionUrl": action.get("url"),
        }

    @staticmethod
    def _command_output(item: Dict[str, Any]) -> str:
        if item.get("aggregated_output"):
            return item["aggregated_output"]
        if isinstance(item.get("exit_code"), int):
            return f"[exit {item['exit_code']}]"
        if item.get("status"):
            return f"Command status: {item['status']}"
        return ""

    # ==========================================================================
    # Installation
    # ==========================================================================

    def configured_executable(self) -> Optional[str]:
        return self._executable or settings.CODEX_EXECUTABLE

    def install_paths(self) -> List[Path]:
        home = self.home()
        if self.is_windows():
            return [
                home / "AppData" / "Roaming" / "npm" / "codex.cmd",
                home / ".bun" / "bin" / "codex.exe",
            ]
        return [
            home / ".local" / "bin" / "codex",
            home / ".bun" / "bin" / "codex",
            Path("/usr/local/bin/codex"),
            Path("/usr/bin/codex"),
        ]
