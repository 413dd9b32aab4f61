"""
Agent Backends - Claude (streaming)
===================================

Adapter for the Claude CLI in ``stream-json`` mode.

The raw stream is fine-grained: token-level text/thinking deltas wrapped
in content_block_start/stop markers, tool events, and a terminal
``result`` record with usage and cost. The bulk ``assistant`` message
repeats content that already arrived through those finer events, so
only its text blocks are surfaced (as non-streaming text) and its
tool_use blocks are used solely to learn tool_use_id -> tool name.
"""

import json
import re
from pathlib import Path
from typing import Optional, List, Dict, Any

import structlog

from fleet.core.config import settings
from fleet.core.runtime.agents import AgentBackend, PermissionMode
from fleet.core.runtime.backends.base import AgentAdapter, RunConfig, sanitize_text
from fleet.core.runtime.events import NormalizedEvent, NormalizedEventType, TokenUsage

logger = structlog.get_logger()


LOCAL_COMMAND_STDOUT = re.compile(r"<local-command-stdout>([\s\S]*?)</local-command-stdout>")

# PreToolUse hook timeout when permissions are granted interactively
HOOK_TIMEOUT_SECONDS = 300


class ClaudeAdapter(AgentAdapter):
    """Claude CLI stream-json adapter."""

    backend = AgentBackend.CLAUDE
    executable_name = "claude"

    def __init__(self, data_dir: Optional[Path] = None, executable: Optional[str] = None,
                 permission_hook: Optional[str] = None):
        super().__init__(data_dir=data_dir, executable=executable)
        self.permission_hook = permission_hook or str(self.data_dir / "hooks" / "permission-hook.sh")
        self._tool_names: Dict[str, str] = {}

    # ==========================================================================
    # Arguments
    # ==========================================================================

    def build_args(self, config: RunConfig) -> List[str]:
        args = [
            "--print",
            "--verbose",
            "--output-format", "stream-json",
            "--input-format", "stream-json",
        ]

        if config.resume_session_id:
            args += ["--resume", config.resume_session_id]

        if config.permission_mode == PermissionMode.BYPASS:
            args.append("--dangerously-skip-permissions")
        elif config.permission_mode == PermissionMode.INTERACTIVE:
            args += ["--settings", str(self._write_hook_settings())]

        if config.model:
            args += ["--model", config.model]

        if config.use_chrome:
            args.append("--chrome")

        if config.system_prompt:
            prompt_file = self.write_prompt_file(config.agent_id, config.system_prompt)
            args += ["--append-system-prompt-file", str(prompt_file)]

        return args

    def _write_hook_settings(self) -> Path:
        hook_settings = {
            "hooks": {
                "PreToolUse": [
                    {
                        "hooks": [
                            {
                                "type": "command",
                                "command": self.permission_hook,
                                "timeout": HOOK_TIMEOUT_SECONDS,
                            }
                        ]
                    }
                ]
            }
        }
        return self.write_scratch_file("hook-settings.json", json.dumps(hook_settings, indent=2))

    # ==========================================================================
    # Stdin
    # ==========================================================================

    def requires_stdin_input(self) -> bool:
        return True

    def format_stdin_input(self, text: str) -> str:
        return json.dumps({
            "type": "user",
            "message": {"role": "user", "content": sanitize_text(text)},
        })

    # ==========================================================================
    # Parsing
    # ==========================================================================

    def extract_session_id(self, event: Dict[str, Any]) -> Optional[str]:
        if event.get("type") == "system" and event.get("subtype") == "init":
            return event.get("session_id") or None
        return None

    def _parse(self, event: Dict[str, Any]) -> List[NormalizedEvent]:
        handlers = {
            "system": self._parse_system,
            "assistant": self._parse_assistant,
            "tool_use": self._parse_tool_use,
            "result": self._parse_result,
            "stream_event": self._parse_stream_event,
            "user": self._parse_user,
        }
        handler = handlers.get(event.get("type"))
        if handler is None:
            return []
        return handler(event)

    def _parse_system(self, event: Dict[str, Any]) -> List[NormalizedEvent]:
        subtype = event.get("subtype")
        if subtype == "init":
            return [NormalizedEvent(
                type=NormalizedEventType.INIT,
                session_id=event.get("session_id"),
                model=event.get("model"),
                extra={"tools": event.get("tools") or []},
            )]
        if subtype == "error" and event.get("error"):
            return [NormalizedEvent(type=NormalizedEventType.ERROR, error_message=str(event["error"]))]
        return []

    def _parse_assistant(self, event: Dict[str, Any]) -> List[NormalizedEvent]:
        content = (event.get("message") or {}).get("content")
        if not isinstance(content, list):
            return []

        events = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                text = block.get("text") or ""
                if text.strip():
                    events.append(NormalizedEvent(
                        type=NormalizedEventType.TEXT,
                        text=text,
                        is_streaming=False,
                        extra={"uuid": event.get("uuid")} if event.get("uuid") else {},
                    ))
            elif block.get("type") == "tool_use" and block.get("id"):
                # tool_start for this block arrives through the tool-specific stream
                self._tool_names[block["id"]] = block.get("name") or "unknown"
        return events

    def _parse_tool_use(self, event: Dict[str, Any]) -> List[NormalizedEvent]:
        tool_name = event.get("tool_name") or "unknown"
        subtype = event.get("subtype")
        if subtype == "input" and event.get("input"):
            return [NormalizedEvent(
                type=NormalizedEventType.TOOL_START,
                tool_name=tool_name,
                tool_input=event["input"],
                tool_use_id=event.get("tool_use_id"),
            )]
        if subtype == "result":
            result = event.get("result")
            output = result if isinstance(result, str) else json.dumps(result)
            return [NormalizedEvent(
                type=NormalizedEventType.TOOL_RESULT,
                tool_name=tool_name,
                tool_output=output,
                tool_use_id=event.get("tool_use_id"),
            )]
        return []

    def _parse_result(self, event: Dict[str, Any]) -> List[NormalizedEvent]:
        usage = event.get("usage")
        tokens = None
        if isinstance(usage, dict):
            tokens = TokenUsage(
                input=usage.get("input_tokens") or 0,
                output=usage.get("output_tokens") or 0,
                cache_creation=usage.get("cache_creation_input_tokens"),
                cache_read=usage.get("cache_read_input_tokens"),
            )

        model_usage = None
        model_name = None
        raw_model_usage = event.get("modelUsage")
        if isinstance(raw_model_usage, dict) and raw_model_usage:
            # Only one model is reported in practice; take the first
            model_name = next(iter(raw_model_usage))
            entry = raw_model_usage[model_name] or {}
            model_usage = {
                "contextWindow": entry.get("contextWindow"),
                "maxOutputTokens": entry.get("maxOutputTokens"),
                "inputTokens": entry.get("inputTokens"),
                "outputTokens": entry.get("outputTokens"),
                "cacheReadInputTokens": entry.get("cacheReadInputTokens"),
                "cacheCreationInputTokens": entry.get("cacheCreationInputTokens"),
            }

        denials = None
        if event.get("permission_denials"):
            denials = [
                {
                    "toolName": d.get("tool_name"),
                    "toolUseId": d.get("tool_use_id"),
                    "toolInput": d.get("tool_input"),
                }
                for d in event["permission_denials"]
            ]

        result = event.get("result")
        return [NormalizedEvent(
            type=NormalizedEventType.STEP_COMPLETE,
            duration_ms=event.get("duration_ms"),
            cost=event.get("total_cost_usd"),
            tokens=tokens,
            model_usage=model_usage,
            model=model_name,
            result_text=result if isinstance(result, str) else None,
            permission_denials=denials,
        )]

    def _parse_stream_event(self, event: Dict[str, Any]) -> List[NormalizedEvent]:
        stream = event.get("event")
        if not isinstance(stream, dict):
            return []
        extra = {"uuid": event.get("uuid")} if event.get("uuid") else {}
        kind = stream.get("type")

        if kind == "content_block_delta":
            delta = stream.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [NormalizedEvent(
                    type=NormalizedEventType.TEXT, text=delta["text"], is_streaming=True, extra=extra,
                )]
            if delta.get("type") == "thinking_delta":
                text = delta.get("thinking") or delta.get("text")
                if text:
                    return [NormalizedEvent(
                        type=NormalizedEventType.THINKING, text=text, is_streaming=True, extra=extra,
                    )]
        elif kind == "content_block_start":
            block_type = (stream.get("content_block") or {}).get("type")
            if block_type in ("text", "thinking"):
                return [NormalizedEvent(type=NormalizedEventType.BLOCK_START, block_type=block_type, extra=extra)]
        elif kind == "content_block_stop":
            return [NormalizedEvent(type=NormalizedEventType.BLOCK_END, extra=extra)]
        return []

    def _parse_user(self, event: Dict[str, Any]) -> List[NormalizedEvent]:
        content = (event.get("message") or {}).get("content")

        if isinstance(content, list):
            results = []
            tool_use_result = event.get("tool_use_result")
            for block in content:
                if not isinstance(block, dict) or block.get("type") != "tool_result":
                    continue
                tool_use_id = block.get("tool_use_id")
                if not tool_use_id:
                    continue
                if isinstance(tool_use_result, dict) and "stdout" in tool_use_result:
                    output = tool_use_result.get("stdout") or ""
                    if tool_use_result.get("stderr"):
                        output += ("\n" if output else "") + "[stderr] " + tool_use_result["stderr"]
                else:
                    raw = block.get("content")
                    output = raw if isinstance(raw, str) else json.dumps(raw)
                results.append(NormalizedEvent(
                    type=NormalizedEventType.TOOL_RESULT,
                    tool_name=self._tool_names.pop(tool_use_id, "unknown"),
                    tool_output=output,
                    tool_use_id=tool_use_id,
                ))
            return results

        if isinstance(content, str) and "<local-command-stdout>" in content:
            match = LOCAL_COMMAND_STDOUT.search(content)
            if not match:
                return []
            report = match.group(1)
            if "## Context Usage" in report or "**Model:**" in report:
                return [NormalizedEvent(type=NormalizedEventType.CONTEXT_STATS, context_stats_raw=report)]
            if "## Usage" in report or "Current Session" in report:
                return [NormalizedEvent(type=NormalizedEventType.USAGE_STATS, usage_stats_raw=report)]
        return []

    # ==========================================================================
    # Installation
    # ==========================================================================

    def configured_executable(self) -> Optional[str]:
        return self._executable or settings.CLAUDE_EXECUTABLE

    def install_paths(self) -> List[Path]:
        home = self.home()
        if self.is_windows():
            return [
                home / "AppData" / "Roaming" / "npm" / "claude.cmd",
                home / "AppData" / "Local" / "Programs" / "claude" / "claude.exe",
                home / ".bun" / "bin" / "claude.exe",
            ]
        return [
            home / ".local" / "bin" / "claude",
            home / ".bun" / "bin" / "claude",
            Path("/usr/local/bin/claude"),
            Path("/usr/bin/claude"),
        ]
