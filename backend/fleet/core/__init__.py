"""
Agent Fleet - Core Package
==========================

Configuration and the agent runtime.
"""

from fleet.core.config import settings

__all__ = ["settings"]
