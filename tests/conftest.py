"""Shared fixtures: test config and a scripted model provider."""

import asyncio

import pytest

from workdispatch.runtime.agent.models import LLMResponse, ToolCall, ToolResult
from workdispatch.runtime.config import DEFAULT_CONFIG, Config


class ScriptedProvider:
    """Model provider returning queued responses; repeats the last one when exhausted."""

    def __init__(self, responses=None, gate=None):
        self.responses = list(responses or [LLMResponse(message="done")])
        self.calls = []
        self.gate = gate
        self.active = 0
        self.max_active = 0

    async def call(self, messages, tools=None, model_id=None, board_context=None,
                   worker_context=None, on_retry=None):
        self.calls.append({
            "messages": list(messages),
            "tools": tools,
            "model_id": model_id,
            "board_context": board_context,
            "worker_context": worker_context,
        })
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
        finally:
            self.active -= 1
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        return self.responses[index]

    async def health_check(self):
        return True

    async def close(self):
        return None


class RecordingExecutor:
    def __init__(self):
        self.batches = []

    async def execute_tools(self, tool_calls):
        self.batches.append(list(tool_calls))
        return [
            ToolResult(tool_call_id=getattr(tc, "id", None), name=getattr(tc, "name", None),
                       success=True, content="ok")
            for tc in tool_calls
        ]

    def get_tool_definitions(self):
        return [{"type": "function", "function": {"name": "lookup"}}]


def tool_response(name="lookup", arguments='{"q": "x"}', call_id="call_1", message=None):
    return LLMResponse(message=message, tool_calls=[ToolCall(call_id, name, arguments)])


@pytest.fixture
def config():
    values = dict(DEFAULT_CONFIG)
    values.update({
        "flush_interval": 0.05,
        "llm_provider": "none",
        "stores": ["default"],
    })
    return Config(**values)


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture(autouse=True)
def _clear_iteration_env(monkeypatch):
    monkeypatch.delenv("LLM_MAX_ITERATIONS", raising=False)
