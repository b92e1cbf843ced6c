"""Deterministic rule-based model provider for offline runs and tests.

Rules come from the LLM_STUB_RESPONSES environment variable (inline JSON)
or the file named by LLM_STUB_FIXTURE_PATH. Either a full config object

    {"default_response": "...", "responses": [{"match": "...", "response": "..."}]}

or a flat ``{"match": "response"}`` mapping is accepted.
"""

from __future__ import annotations

import json
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Any, Literal, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .agent.models import (
    BoardContext,
    InputRejectedError,
    LLMResponse,
    Message,
    RetryCallback,
    ToolCall,
    WorkerContext,
)
from .agent.validators import InputValidator

logger = logging.getLogger("workdispatch.stub")

DEFAULT_RESPONSE = "Stubbed response"
STUB_MODEL = "stub"
_TEMPLATE = re.compile(r"\{\{\s*message\s*\}\}")


class StubToolCall(BaseModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class StubRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    match: str
    response: str
    match_type: Literal["exact", "includes", "regex"] = Field("exact", alias="matchType")
    tool_calls: list[StubToolCall] = Field(default_factory=list, alias="toolCalls")


class StubConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    default_response: str | None = Field(None, alias="defaultResponse")
    responses: list[StubRule] = Field(default_factory=list)


def parse_stub_config(raw: Any) -> StubConfig:
    if not isinstance(raw, dict):
        return StubConfig()
    if "responses" in raw or "default_response" in raw or "defaultResponse" in raw:
        try:
            return StubConfig.model_validate(raw)
        except ValidationError as e:
            raise ValueError(f"Invalid stub configuration: {e}") from e
    rules = [StubRule(match=k, response=v) for k, v in raw.items() if isinstance(v, str)]
    return StubConfig(responses=rules)


def load_stub_config_from_env() -> StubConfig:
    raw_json = os.environ.get("LLM_STUB_RESPONSES")
    fixture_path = os.environ.get("LLM_STUB_FIXTURE_PATH")

    raw: Any = None
    if raw_json:
        try:
            raw = json.loads(raw_json)
        except json.JSONDecodeError as e:
            raise ValueError(f"LLM_STUB_RESPONSES is not valid JSON: {e}") from e
    elif fixture_path:
        resolved = Path.cwd() / fixture_path
        try:
            raw = json.loads(resolved.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"LLM_STUB_FIXTURE_PATH JSON invalid: {e}") from e

    config = parse_stub_config(raw)
    if os.environ.get("LLM_STUB_DEFAULT_RESPONSE"):
        config.default_response = os.environ["LLM_STUB_DEFAULT_RESPONSE"]
    return config


def _render(template: str, message: str) -> str:
    return _TEMPLATE.sub(lambda _: message, template)


class StubProvider:
    def __init__(self, config: StubConfig | None = None, validator: InputValidator | None = None) -> None:
        self.config = config or StubConfig()
        self.validator = validator or InputValidator()
        self.calls = 0

    @classmethod
    def from_env(cls) -> StubProvider:
        return cls(load_stub_config_from_env())

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    async def call(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        model_id: str | None = None,
        board_context: BoardContext | None = None,
        worker_context: WorkerContext | None = None,
        on_retry: RetryCallback | None = None,
    ) -> LLMResponse:
        self.calls += 1
        # Long conversations are judged on their most recent window
        window = list(messages)[-self.validator.config.max_message_count:]
        checked = self.validator.validate_messages(window)
        if not checked.is_valid:
            logger.warning(f"Invalid input messages blocked: {checked.reason}")
            raise InputRejectedError(checked.reason)

        validated = checked.sanitized_content
        user_content = next(
            (m["content"] for m in reversed(validated) if m.get("role") == "user"), ""
        )
        # Tool calls are only requested in direct reply to the user, so a
        # rule with tools answers with text once the results are in.
        after_tools = bool(validated) and validated[-1].get("role") == "tool"
        message, tool_calls = self._resolve(user_content)
        if after_tools:
            tool_calls = []

        return LLMResponse(message=message, tool_calls=tool_calls, model_used=model_id or STUB_MODEL)

    def _resolve(self, message: str) -> tuple[str, list[ToolCall]]:
        for rule in self.config.responses:
            if not rule.match:
                continue
            if rule.match_type == "regex":
                try:
                    matched = re.search(rule.match, message) is not None
                except re.error as e:
                    logger.warning(f"Invalid regex in stub rule {rule.match!r}: {e}")
                    continue
            elif rule.match_type == "includes":
                matched = rule.match in message
            else:
                matched = message == rule.match
            if matched:
                return _render(rule.response, message), self._tool_calls(rule)

        fallback = self.config.default_response or DEFAULT_RESPONSE
        return _render(fallback, message), []

    def _tool_calls(self, rule: StubRule) -> list[ToolCall]:
        return [
            ToolCall(
                id=f"call_{uuid.uuid4().hex[:12]}",
                name=tc.name,
                arguments=json.dumps(tc.arguments, sort_keys=True),
            )
            for tc in rule.tool_calls
        ]
