"""Model provider backed by the official Ollama Python SDK."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Sequence

import ollama

from .agent.models import (
    BoardContext,
    LLMResponse,
    Message,
    ModelProviderError,
    RetryCallback,
    ToolCall,
    WorkerContext,
)
from .config import Config, get_config
from .prompts import build_system_prompt

logger = logging.getLogger("workdispatch.ollama")

_TRANSIENT_KEYWORDS = (
    "connection reset", "connection refused", "eof", "broken pipe",
    "timeout", "timed out", "network", "connection error",
)


def is_transient_error(error: BaseException) -> bool:
    err_str = str(error).lower()
    return any(k in err_str for k in _TRANSIENT_KEYWORDS)


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if isinstance(obj, dict):
        return obj
    return dict(obj)


def parse_tool_calls(raw_calls: Any) -> list[ToolCall]:
    """Normalize SDK tool calls; missing fields stay None for the executor to report."""
    calls: list[ToolCall] = []
    for raw in raw_calls or []:
        data = _as_dict(raw)
        function = data.get("function") or {}
        if not isinstance(function, dict):
            function = _as_dict(function)
        arguments = function.get("arguments")
        if isinstance(arguments, (dict, list)):
            arguments = json.dumps(arguments, sort_keys=True)
        calls.append(
            ToolCall(
                id=data.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                name=function.get("name"),
                arguments=arguments,
            )
        )
    return calls


def _wire_message(message: Message) -> dict[str, Any]:
    msg: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_calls:
        calls = []
        for tc in message.tool_calls:
            try:
                arguments = json.loads(tc.arguments) if tc.arguments else {}
            except json.JSONDecodeError:
                arguments = {}
            calls.append({"function": {"name": tc.name or "", "arguments": arguments}})
        msg["tool_calls"] = calls
    if message.role == "tool" and message.tool_call_id:
        msg["tool_call_id"] = message.tool_call_id
    return msg


class OllamaClient:
    """Wrapper around ollama.AsyncClient exposing the model-provider contract."""

    def __init__(self, config: Config | None = None, base_url: str | None = None, model: str | None = None) -> None:
        cfg = config or get_config()
        host = (base_url or cfg.ollama_url).rstrip("/")
        self.model = model or cfg.ollama_model
        self.max_retries = cfg.ollama_max_retries
        self.options = {
            "temperature": cfg.ollama_temperature,
            "num_ctx": cfg.ollama_num_ctx,
        }

        logger.info(f"Initializing Ollama SDK client for host: {host}, model: {self.model}, timeout: {cfg.ollama_timeout}s")
        self._client = ollama.AsyncClient(host=host, timeout=cfg.ollama_timeout)

    async def close(self) -> None:
        """Unload the model from memory by setting keep_alive to 0."""
        try:
            logger.info(f"Unloading model {self.model}...")
            await self._client.generate(model=self.model, prompt="", keep_alive=0)
        except Exception as e:
            logger.error(f"Failed to unload model: {e}")

    async def health_check(self) -> bool:
        """Check if Ollama is reachable."""
        try:
            await self._client.list()
            return True
        except Exception:
            return False

    async def list_models(self) -> list[dict]:
        try:
            response = await self._client.list()
            models = response.models if hasattr(response, "models") else response.get("models", [])
            return [_as_dict(model) for model in models]
        except Exception as e:
            logger.error(f"Failed to list models: {e}")
            return []

    async def call(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        model_id: str | None = None,
        board_context: BoardContext | None = None,
        worker_context: WorkerContext | None = None,
        on_retry: RetryCallback | None = None,
    ) -> LLMResponse:
        """Single non-streaming chat completion.

        Retries up to max_retries times on transient connection errors,
        reporting each retry through on_retry.
        """
        model = model_id or self.model
        wire = [_wire_message(m) for m in messages]
        system_prompt = build_system_prompt(board_context, worker_context)
        if system_prompt:
            wire.insert(0, {"role": "system", "content": system_prompt})

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": wire,
            "stream": False,
            "options": self.options,
        }
        if tools:
            kwargs["tools"] = tools

        last_err: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                response = await self._client.chat(**kwargs)
                break
            except ollama.ResponseError as e:
                logger.error(f"Ollama ResponseError (attempt {attempt + 1}): {e.error}")
                raise ModelProviderError(f"Ollama error: {e.error}", status_code=e.status_code) from e
            except Exception as e:
                if is_transient_error(e) and attempt < self.max_retries:
                    wait = 1.5 * (attempt + 1)
                    logger.warning(
                        f"Transient Ollama error (attempt {attempt + 1}/{self.max_retries + 1}), "
                        f"retrying in {wait:.1f}s: {e}"
                    )
                    last_err = e
                    if on_retry is not None:
                        on_retry(attempt + 1, self.max_retries, wait, e)
                    await asyncio.sleep(wait)
                    continue
                if is_transient_error(e):
                    raise ModelProviderError(
                        f"Ollama connection failed after {self.max_retries + 1} attempts: {e}"
                    ) from e
                logger.exception(f"Unexpected SDK error: {e}")
                raise
        else:
            raise ModelProviderError(
                f"Ollama connection failed after {self.max_retries + 1} attempts: {last_err}"
            )

        data = _as_dict(response)
        message = _as_dict(data.get("message"))
        return LLMResponse(
            message=message.get("content") or None,
            tool_calls=parse_tool_calls(message.get("tool_calls")),
            model_used=data.get("model") or model,
        )
