"""Shared utility functions for semantic-recall."""

from __future__ import annotations

import sys
from datetime import datetime

LOG_PREFIX = "[semantic-recall]"


def log(message: str) -> None:
    """Write a diagnostic line to stderr (stdout is reserved for the MCP transport)."""
    print(f"{LOG_PREFIX} {message}", file=sys.stderr)


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def now_millis() -> int:
    """Current time as epoch milliseconds."""
    return int(datetime.now().timestamp() * 1000)


def format_millis(millis: int) -> str:
    """Render an epoch-millis timestamp for display."""
    return datetime.fromtimestamp(millis / 1000).strftime("%Y-%m-%d %H:%M:%S")


def preview(text: str, width: int) -> str:
    """Truncate text to width characters, marking the cut with an ellipsis."""
    return text[:width] + "..." if len(text) > width else text
