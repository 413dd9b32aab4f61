"""
Agent Fleet
===========

Supervises external coding-agent CLI processes (Claude, Codex) and
normalizes their output into one event stream.
"""

__version__ = "0.1.0"
