"""
Agent Backends - Slash Command Reports
======================================

Parsers for the markdown printed by the ``/context`` and ``/usage``
commands of the Claude CLI.

Example ``/context`` output::

    ## Context Usage
    **Model:** claude-opus-4-5-20251101
    **Tokens:** 19.6k / 200.0k (10%)

    | Category | Tokens | Percentage |
    |----------|--------|------------|
    | System prompt | 3.1k | 1.6% |
    | Free space | 135.4k | 67.7% |
"""

import re
from typing import Optional, Dict, Any

import structlog

logger = structlog.get_logger()


_TOKENS_LINE = re.compile(
    r"\*\*Tokens:\*\*\s*([\d.]+\s*[kKmM]?)\s*/\s*([\d.]+\s*[kKmM]?)\s*\((\d+(?:\.\d+)?)%\)"
)
_MODEL_LINE = re.compile(r"\*\*Model:\*\*\s*(.+)")

CONTEXT_CATEGORIES = {
    "system_prompt": "System prompt",
    "system_tools": "System tools",
    "messages": "Messages",
    "free_space": "Free space",
    "autocompact_buffer": "Autocompact buffer",
}

USAGE_ROWS = {
    "session": r"Current Session",
    "weekly_all_models": r"Current Week \(All Models\)",
    "weekly_sonnet": r"Current Week \(Sonnet Only\)",
}


def parse_token_count(value: str) -> int:
    """'19.6k' -> 19600, '1.2M' -> 1200000, '812' -> 812."""
    value = value.strip().lower()
    multiplier = 1
    if value.endswith("k"):
        multiplier, value = 1_000, value[:-1]
    elif value.endswith("m"):
        multiplier, value = 1_000_000, value[:-1]
    return int(round(float(value) * multiplier))


def parse_context_output(content: str) -> Optional[Dict[str, Any]]:
    """Parse ``/context`` markdown; None when the tokens line is missing."""
    tokens = _TOKENS_LINE.search(content)
    if not tokens:
        logger.debug("Context output has no tokens line")
        return None

    model_match = _MODEL_LINE.search(content)
    categories: Dict[str, Dict[str, float]] = {}
    for key, label in CONTEXT_CATEGORIES.items():
        row = re.search(
            rf"\|\s*{re.escape(label)}\s*\|\s*([\d.]+\s*[kKmM]?)\s*\|\s*([\d.]+)%\s*\|",
            content,
            re.IGNORECASE,
        )
        if row:
            categories[key] = {"tokens": parse_token_count(row.group(1)), "percent": float(row.group(2))}
        else:
            categories[key] = {"tokens": 0, "percent": 0.0}

    return {
        "model": model_match.group(1).strip() if model_match else "unknown",
        "total_tokens": parse_token_count(tokens.group(1)),
        "context_window": parse_token_count(tokens.group(2)),
        "used_percent": float(tokens.group(3)),
        "categories": categories,
    }


def parse_usage_output(content: str) -> Optional[Dict[str, Any]]:
    """Parse ``/usage`` markdown rows ``| Current Session | 45.2% | reset |``."""
    result: Dict[str, Any] = {}
    for key, pattern in USAGE_ROWS.items():
        row = re.search(rf"\|\s*{pattern}\s*\|\s*([\d.]+)%\s*\|\s*([^|]+?)\s*\|", content, re.IGNORECASE)
        if not row:
            logger.debug("Usage output missing row", row=key)
            return None
        result[key] = {"percent_used": float(row.group(1)), "reset_time": row.group(2).strip()}
    return result
