"""
Agent Backends
==============

Protocol adapters for the supported external agent CLIs, selected by a
closed enum rather than by string lookups.
"""

from pathlib import Path
from typing import Optional

from fleet.core.runtime.agents import AgentBackend
from fleet.core.runtime.backends.base import AgentAdapter, RunConfig, decode_line
from fleet.core.runtime.backends.claude import ClaudeAdapter
from fleet.core.runtime.backends.codex import CodexAdapter


def create_adapter(backend: AgentBackend, data_dir: Optional[Path] = None) -> AgentAdapter:
    """
    Factory function to create the adapter for a backend.

    Raises ValueError for values outside the closed AgentBackend set.
    """
    backend = AgentBackend(backend)
    if backend == AgentBackend.CLAUDE:
        return ClaudeAdapter(data_dir=data_dir)
    if backend == AgentBackend.CODEX:
        return CodexAdapter(data_dir=data_dir)
    raise ValueError(f"Unsupported backend: {backend}")


__all__ = [
    "AgentAdapter",
    "ClaudeAdapter",
    "CodexAdapter",
    "RunConfig",
    "create_adapter",
    "decode_line",
]
