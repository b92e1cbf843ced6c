from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from .formatters import MAX_TOTAL, format_tool_result
from .models import ToolCall, ToolResult

logger = logging.getLogger("workdispatch.agent")


@dataclass
class RegisteredTool:
    name: str
    handler: Callable[..., Any]
    definition: dict[str, Any]


class ToolRegistry:
    """Tool executor backed by plain Python callables.

    Every call yields exactly one ToolResult, in order. Malformed calls,
    unknown tools and handler exceptions are reported as failed results;
    this method itself does not raise for them.
    """

    def __init__(self, max_result_chars: int = MAX_TOTAL) -> None:
        self._tools: dict[str, RegisteredTool] = {}
        self.max_result_chars = max_result_chars
        self.tool_counts: dict[str, int] = {}

    def register(self, name: str, handler: Callable[..., Any], definition: dict[str, Any]) -> None:
        if name in self._tools:
            logger.warning(f"Tool {name} is already registered, replacing it")
        self._tools[name] = RegisteredTool(name=name, handler=handler, definition=definition)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    @property
    def tool_names(self) -> list[str]:
        return sorted(self._tools)

    def get_tool_definitions(self) -> list[dict[str, Any]]:
        return [tool.definition for tool in self._tools.values()]

    async def execute_tools(self, tool_calls: Sequence[Any]) -> list[ToolResult]:
        results = []
        for call in tool_calls:
            results.append(await self._execute_one(call))
        return results

    def _failure(self, call_id: str | None, name: str | None, error: str, duration: float = 0.0) -> ToolResult:
        return ToolResult(
            tool_call_id=call_id,
            name=name,
            success=False,
            content=format_tool_result(name, error, False, self.max_result_chars),
            error=error,
            duration=duration,
        )

    def _parse_call(self, call: Any) -> tuple[ToolCall | None, dict[str, Any] | None, str | None]:
        if not isinstance(call, ToolCall):
            return None, None, "Malformed tool call: expected a tool call object"
        if not call.id:
            return call, None, "Malformed tool call: missing id"
        if not call.name:
            return call, None, "Malformed tool call: missing function name"
        if call.arguments is None:
            return call, None, "Malformed tool call: missing arguments"
        try:
            arguments = json.loads(call.arguments) if call.arguments.strip() else {}
        except (json.JSONDecodeError, AttributeError) as e:
            return call, None, f"Malformed tool call: arguments are not valid JSON ({e})"
        if not isinstance(arguments, dict):
            return call, None, "Malformed tool call: arguments must be a JSON object"
        return call, arguments, None

    async def _execute_one(self, raw_call: Any) -> ToolResult:
        call, arguments, error = self._parse_call(raw_call)
        call_id = call.id if call else None
        name = call.name if call else None
        if error:
            logger.warning(f"{error} (id={call_id}, name={name})")
            return self._failure(call_id, name, error)

        tool = self._tools.get(name)
        if tool is None:
            available = ", ".join(self.tool_names) or "none"
            return self._failure(call_id, name, f"Unknown tool '{name}'. Available tools: {available}")

        start_time = time.time()
        try:
            if inspect.iscoroutinefunction(tool.handler):
                output = await tool.handler(**arguments)
            else:
                output = await asyncio.to_thread(tool.handler, **arguments)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(f"Tool {name} exec error: {e}")
            return self._failure(call_id, name, str(e), duration)

        duration = time.time() - start_time
        self.tool_counts[name] = self.tool_counts.get(name, 0) + 1
        logger.debug(f"Tool {name} completed in {duration:.2f}s")
        return ToolResult(
            tool_call_id=call_id,
            name=name,
            success=True,
            content=format_tool_result(name, output, True, self.max_result_chars),
            duration=duration,
        )
