"""
Agent Runtime - Normalized Events
=================================

One event schema for every agent backend. Adapters translate raw
line-delimited output of the external CLIs into these events; everything
downstream (runner, dispatcher, delegation parser, API) consumes only this shape.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, List, Dict, Any


# ==========================================================================
# Event Types
# ==========================================================================

class NormalizedEventType(str, Enum):
    """Tagged variant of a normalized event."""
    INIT = "init"
    TEXT = "text"
    THINKING = "thinking"
    TOOL_START = "tool_start"
    TOOL_RESULT = "tool_result"
    STEP_COMPLETE = "step_complete"
    ERROR = "error"
    BLOCK_START = "block_start"
    BLOCK_END = "block_end"
    CONTEXT_STATS = "context_stats"
    USAGE_STATS = "usage_stats"


# Wire names of the optional fields (camelCase, as consumed by front ends)
_WIRE_NAMES = {
    "session_id": "sessionId",
    "tool_name": "toolName",
    "tool_input": "toolInput",
    "tool_output": "toolOutput",
    "tool_use_id": "toolUseId",
    "model_usage": "modelUsage",
    "duration_ms": "durationMs",
    "error_message": "errorMessage",
    "result_text": "resultText",
    "permission_denials": "permissionDenials",
    "context_stats_raw": "contextStatsRaw",
    "usage_stats_raw": "usageStatsRaw",
    "is_streaming": "isStreaming",
    "block_type": "blockType",
    "cache_creation": "cacheCreation",
    "cache_read": "cacheRead",
}


# ==========================================================================
# Event Structures
# ==========================================================================

@dataclass
class TokenUsage:
    """Token counters reported by a completed turn."""
    input: int = 0
    output: int = 0
    cache_creation: Optional[int] = None
    cache_read: Optional[int] = None

    @property
    def context_snapshot(self) -> int:
        """Tokens occupying the context window at the end of the turn."""
        return (self.cache_read or 0) + (self.cache_creation or 0) + self.input + self.output


@dataclass
class NormalizedEvent:
    """
    A single backend-independent event.

    Produced by an adapter from one raw line; a line may yield zero,
    one or many of these. Events produced by heuristic inference over
    shell commands carry ``inferred=True`` and must not be treated as
    equivalent to structured tool calls.
    """
    type: NormalizedEventType
    session_id: Optional[str] = None
    text: Optional[str] = None
    is_streaming: Optional[bool] = None
    block_type: Optional[str] = None

    # Tools
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    tool_output: Optional[str] = None
    tool_use_id: Optional[str] = None

    # Turn completion
    tokens: Optional[TokenUsage] = None
    model_usage: Optional[Dict[str, Any]] = None
    cost: Optional[float] = None
    duration_ms: Optional[int] = None
    model: Optional[str] = None
    result_text: Optional[str] = None
    permission_denials: Optional[List[Dict[str, Any]]] = None

    # Errors
    error_message: Optional[str] = None

    # Slash command reports
    context_stats_raw: Optional[str] = None
    usage_stats_raw: Optional[str] = None

    # Best-effort inference marker
    inferred: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase wire shape, dropping unset fields."""
        data = asdict(self)
        wire: Dict[str, Any] = {"type": self.type.value}
        for key, value in data.items():
            if key == "type" or value is None:
                continue
            if key == "inferred" and not value:
                continue
            if key == "extra" and not value:
                continue
            if key == "tokens":
                value = {_WIRE_NAMES.get(k, k): v for k, v in value.items() if v is not None}
            wire[_WIRE_NAMES.get(key, key)] = value
        return wire
