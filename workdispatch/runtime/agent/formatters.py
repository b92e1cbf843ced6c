from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger("workdispatch.agent")

MAX_TOTAL = 4000
_HEAD_LINES = 60
_TAIL_LINES = 15


def _truncate(body: str, max_chars: int) -> str:
    lines = body.split("\n")
    total = len(lines)
    if total > _HEAD_LINES + _TAIL_LINES + 25:
        head = "\n".join(lines[:_HEAD_LINES])
        tail = "\n".join(lines[-_TAIL_LINES:])
        body = (
            f"{head}\n\n"
            f"... [{total - _HEAD_LINES - _TAIL_LINES} more lines] ...\n\n"
            f"{tail}"
        )
    if len(body) > max_chars:
        body = body[:max_chars] + "\n... (truncated)"
    return body


def format_tool_result(
    tool_name: str | None,
    result: Any,
    success: bool,
    max_chars: int = MAX_TOTAL,
) -> str:
    """Render a tool handler's output as tool-message content."""
    if not success:
        error_msg = str(result or "").strip() or "unknown error"
        return f"ERROR: {tool_name or 'tool'} failed: {error_msg}"[:max_chars]

    if result is None:
        return (
            "Tool completed successfully with NO OUTPUT. "
            "This means no matching data; do not invent results."
        )

    if isinstance(result, str):
        content = result.strip()
    elif isinstance(result, dict) and isinstance(result.get("result"), str):
        content = result["result"].strip()
    else:
        content = json.dumps(result, default=str, indent=2)

    return _truncate(content, max_chars)
