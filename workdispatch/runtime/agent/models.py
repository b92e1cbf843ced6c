from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol, Sequence

logger = logging.getLogger("workdispatch.agent")

ALLOWED_ROLES = ("system", "user", "assistant", "tool")


# ─── Conversation data ───────────────────────────────────────────────

@dataclass(frozen=True)
class ToolCall:
    """A single tool invocation requested by the model.

    Any field may be None when the model emitted a malformed call; the
    tool executor is responsible for reporting that as a failed result.
    """

    id: str | None
    name: str | None
    arguments: str | None

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            msg["tool_call_id"] = self.tool_call_id
        return msg


@dataclass
class ToolResult:
    tool_call_id: str | None
    name: str | None
    success: bool
    content: str = ""
    error: str | None = None
    duration: float = 0.0


@dataclass
class LLMResponse:
    message: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    model_used: str | None = None


@dataclass(frozen=True)
class BoardContext:
    id: str
    name: str
    description: str | None = None


@dataclass(frozen=True)
class WorkerContext:
    name: str
    system_prompt: str
    role_description: str | None = None
    id: str | None = None


@dataclass
class RunOptions:
    model_id: str | None = None
    board_context: BoardContext | None = None
    worker_context: WorkerContext | None = None


# ─── Collaborator contracts ──────────────────────────────────────────

RetryCallback = Callable[[int, int, float, Exception], None]


class ModelProvider(Protocol):
    async def call(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        model_id: str | None = None,
        board_context: BoardContext | None = None,
        worker_context: WorkerContext | None = None,
        on_retry: RetryCallback | None = None,
    ) -> LLMResponse: ...


class ToolExecutor(Protocol):
    async def execute_tools(self, tool_calls: Sequence[ToolCall]) -> list[ToolResult]: ...

    def get_tool_definitions(self) -> list[dict[str, Any]]: ...


# ─── Errors ──────────────────────────────────────────────────────────

class AgenticLoopError(Exception):
    """Base class for errors reported by the agentic loop."""

    kind = "unknown"


class StuckLoopError(AgenticLoopError):
    kind = "stuck_loop"

    def __init__(self) -> None:
        super().__init__("Stuck loop detected: Repeating same tool calls")


class MaxIterationsError(AgenticLoopError):
    kind = "max_iterations"

    def __init__(self, max_iterations: int) -> None:
        self.max_iterations = max_iterations
        super().__init__(
            f"Maximum iterations reached ({max_iterations}). The operation may be "
            "incomplete. Consider breaking down complex requests into smaller parts."
        )


class InputRejectedError(AgenticLoopError):
    kind = "input_rejected"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Input validation failed: {reason}")


class ModelProviderError(AgenticLoopError):
    kind = "provider"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


@dataclass
class ClassifiedError:
    type: str
    message: str
    user_message: str


_AUTH_KEYWORDS = ("401", "403", "unauthorized", "forbidden", "api key", "authentication")
_TRANSIENT_KEYWORDS = (
    "connection reset", "connection refused", "eof", "broken pipe",
    "timeout", "timed out", "network", "connection error", "503", "502",
)


def classify_error(error: BaseException) -> ClassifiedError:
    message = str(error)
    lowered = message.lower()

    if isinstance(error, StuckLoopError):
        return ClassifiedError(
            "stuck_loop", message,
            "I got stuck repeating the same steps. Please rephrase your request "
            "or break it into smaller parts.",
        )
    if isinstance(error, MaxIterationsError):
        return ClassifiedError(
            "max_iterations", message,
            f"I reached my step limit ({error.max_iterations}) before finishing. "
            "The result may be incomplete; try splitting the request into smaller parts.",
        )
    if any(k in lowered for k in _AUTH_KEYWORDS):
        return ClassifiedError(
            "auth_error", message,
            "The language model rejected my credentials. Please check the model configuration.",
        )
    if "after" in lowered and "attempts" in lowered:
        return ClassifiedError(
            "persistent_failure", message,
            "The language model is not responding after several attempts. Please try again later.",
        )
    if any(k in lowered for k in _TRANSIENT_KEYWORDS):
        return ClassifiedError(
            "transient", message,
            "I had a temporary problem reaching the language model. Please try again.",
        )
    return ClassifiedError(
        "unknown", message,
        "Sorry, I encountered an error while processing your message.",
    )


# ─── Loop events ─────────────────────────────────────────────────────

class LoopEventType(str, Enum):
    ITERATION_START = "iteration_start"
    ITERATION_COMPLETE = "iteration_complete"
    TOOLS_EXECUTING = "tools_executing"
    TOOLS_COMPLETE = "tools_complete"
    FINAL_MESSAGE = "final_message"
    ERROR = "error"
    COMPLETE = "complete"
    RETRY = "retry"


@dataclass
class LoopEvent:
    type: LoopEventType
    args: tuple[Any, ...] = ()


_HANDLER_NAMES = {
    LoopEventType.ITERATION_START: "on_iteration_start",
    LoopEventType.ITERATION_COMPLETE: "on_iteration_complete",
    LoopEventType.TOOLS_EXECUTING: "on_tools_executing",
    LoopEventType.TOOLS_COMPLETE: "on_tools_complete",
    LoopEventType.FINAL_MESSAGE: "on_final_message",
    LoopEventType.ERROR: "on_error",
    LoopEventType.COMPLETE: "on_complete",
    LoopEventType.RETRY: "on_retry",
}


@dataclass
class AgenticLoopEvents:
    """Optional observers of a loop run.

    Callback signatures:
        on_iteration_start(iteration)
        on_iteration_complete(iteration, response)
        on_tools_executing(tool_calls)
        on_tools_complete(results)
        on_final_message(message)
        on_error(error, iteration)
        on_complete(iterations)
        on_retry(attempt, max_retries, delay_seconds, error)

    Unset callbacks are skipped. Exceptions raised by a callback are not
    caught and abort the run.
    """

    on_iteration_start: Callable[[int], Any] | None = None
    on_iteration_complete: Callable[[int, LLMResponse], Any] | None = None
    on_tools_executing: Callable[[list[ToolCall]], Any] | None = None
    on_tools_complete: Callable[[list[ToolResult]], Any] | None = None
    on_final_message: Callable[[str], Any] | None = None
    on_error: Callable[[AgenticLoopError, int], Any] | None = None
    on_complete: Callable[[int], Any] | None = None
    on_retry: RetryCallback | None = None

    def dispatch(self, event: LoopEvent) -> None:
        handler = getattr(self, _HANDLER_NAMES[event.type], None)
        if handler is None:
            return
        handler(*event.args)
