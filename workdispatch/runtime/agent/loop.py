from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

from ..config import Config, max_iterations_from_env
from .history import ConversationHistory
from .models import (
    AgenticLoopError,
    AgenticLoopEvents,
    InputRejectedError,
    LLMResponse,
    LoopEvent,
    LoopEventType,
    MaxIterationsError,
    ModelProvider,
    ModelProviderError,
    RunOptions,
    StuckLoopError,
    ToolExecutor,
)
from .validators import InputValidator

logger = logging.getLogger("workdispatch.agent")

STUCK_LOOP_WINDOW = 3
WARNING_RATIO = 0.8


class LoopState(str, Enum):
    IDLE = "idle"
    ITERATING = "iterating"
    COMPLETED = "completed"
    ERRED = "erred"


@dataclass
class LoopResult:
    state: LoopState
    iterations: int
    final_message: str | None = None
    error: AgenticLoopError | None = None


def round_fingerprint(tool_calls: Sequence[Any]) -> str:
    return json.dumps(
        [[getattr(tc, "name", None), getattr(tc, "arguments", None)] for tc in tool_calls],
        default=str,
    )


class AgenticLoop:
    """Drives one user turn through model calls and tool rounds.

    A turn ends with a final message, an empty model response, a stuck-loop
    detection or an exhausted iteration budget. The last two are reported
    through ``on_error`` and the run still returns normally. Exceptions from
    the tool executor or from an event callback propagate out of ``run``.
    """

    def __init__(
        self,
        provider: ModelProvider,
        tool_executor: ToolExecutor,
        events: AgenticLoopEvents | None = None,
        history: ConversationHistory | None = None,
        validator: InputValidator | None = None,
        config: Config | None = None,
    ) -> None:
        self.provider = provider
        self.tool_executor = tool_executor
        self.events = events or AgenticLoopEvents()
        self.history = history if history is not None else ConversationHistory()
        self.validator = validator or InputValidator()
        self.config = config
        self.state = LoopState.IDLE
        self.iteration = 0
        self._callback_error: BaseException | None = None

    def _emit(self, event_type: LoopEventType, *args: Any) -> None:
        self.events.dispatch(LoopEvent(event_type, args))

    def _on_retry(self, attempt: int, max_retries: int, delay: float, error: Exception) -> None:
        try:
            self._emit(LoopEventType.RETRY, attempt, max_retries, delay, error)
        except Exception as e:
            self._callback_error = e
            raise

    def _validate_options(self, options: RunOptions) -> RunOptions:
        board = options.board_context
        if board is not None:
            checked = self.validator.validate_board_context(board)
            if not checked.is_valid:
                raise InputRejectedError(checked.reason)
            board = checked.sanitized_content

        worker = options.worker_context
        if worker is not None:
            checked = self.validator.validate_worker_context(worker)
            if not checked.is_valid:
                raise InputRejectedError(checked.reason)
            worker = checked.sanitized_content

        return RunOptions(model_id=options.model_id, board_context=board, worker_context=worker)

    def _tool_definitions(self) -> list[dict[str, Any]]:
        getter = getattr(self.tool_executor, "get_tool_definitions", None)
        return list(getter()) if getter else []

    def _fail(self, error: AgenticLoopError, iteration: int) -> LoopResult:
        self.state = LoopState.ERRED
        self._emit(LoopEventType.ERROR, error, iteration)
        self._emit(LoopEventType.COMPLETE, iteration)
        return LoopResult(LoopState.ERRED, iteration, error=error)

    async def _call_model(self, options: RunOptions, tools: list[dict[str, Any]]) -> LLMResponse:
        self._callback_error = None
        try:
            return await self.provider.call(
                self.history.get_messages(),
                tools=tools or None,
                model_id=options.model_id,
                board_context=options.board_context,
                worker_context=options.worker_context,
                on_retry=self._on_retry,
            )
        except Exception as e:
            if e is self._callback_error:
                raise
            if isinstance(e, AgenticLoopError):
                raise
            raise ModelProviderError(str(e)) from e

    async def run(self, user_message: str, options: RunOptions | None = None) -> LoopResult:
        options = options or RunOptions()
        self.state = LoopState.ITERATING
        self.iteration = 0

        checked = self.validator.validate_text(user_message)
        if not checked.is_valid:
            self.state = LoopState.ERRED
            raise InputRejectedError(checked.reason)
        options = self._validate_options(options)
        self.history.add_user_message(checked.sanitized_content)

        max_iterations = max_iterations_from_env(self.config)
        warning_threshold = int(max_iterations * WARNING_RATIO)
        tools = self._tool_definitions()
        recent_fingerprints: deque[str] = deque(maxlen=STUCK_LOOP_WINDOW)

        for iteration in range(1, max_iterations + 1):
            self.iteration = iteration
            self._emit(LoopEventType.ITERATION_START, iteration)

            try:
                response = await self._call_model(options, tools)
            except AgenticLoopError as e:
                logger.error(f"Model call failed on iteration {iteration}: {e}")
                return self._fail(e, iteration)

            tool_calls = list(response.tool_calls or [])
            if not tool_calls:
                final = response.message if response.message and response.message.strip() else None
                if final is not None:
                    self._emit(LoopEventType.FINAL_MESSAGE, final)
                    self.history.add_assistant_message(final)
                else:
                    logger.info(f"Empty model response on iteration {iteration}, ending turn")
                self.state = LoopState.COMPLETED
                self._emit(LoopEventType.COMPLETE, iteration)
                return LoopResult(LoopState.COMPLETED, iteration, final_message=final)

            recent_fingerprints.append(round_fingerprint(tool_calls))
            if (
                len(recent_fingerprints) == STUCK_LOOP_WINDOW
                and len(set(recent_fingerprints)) == 1
            ):
                logger.warning(
                    f"Stuck loop on iteration {iteration}: "
                    f"{STUCK_LOOP_WINDOW} identical tool rounds"
                )
                return self._fail(StuckLoopError(), iteration)

            if iteration == warning_threshold:
                logger.warning(f"Approaching iteration limit ({iteration}/{max_iterations})")

            self.history.add_assistant_message(response.message, tool_calls)
            self._emit(LoopEventType.TOOLS_EXECUTING, tool_calls)
            results = await self.tool_executor.execute_tools(tool_calls)
            results = list(results or [])
            self._emit(LoopEventType.TOOLS_COMPLETE, results)
            self.history.add_tool_messages(results)
            self._emit(LoopEventType.ITERATION_COMPLETE, iteration, response)

        logger.warning(f"Maximum iterations reached ({max_iterations})")
        return self._fail(MaxIterationsError(max_iterations), max_iterations)
