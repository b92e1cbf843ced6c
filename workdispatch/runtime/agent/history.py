from __future__ import annotations

from typing import Any, Iterable, Sequence

from .models import Message, ToolCall, ToolResult


class ConversationHistory:
    """Ordered, append-only list of messages for one conversation.

    The object has no size cap of its own; the dispatcher bounds how many
    histories are alive at once.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = list(messages)

    def add_system_message(self, text: str) -> None:
        self._messages.append(Message(role="system", content=text))

    def add_user_message(self, text: str) -> None:
        self._messages.append(Message(role="user", content=text))

    def add_assistant_message(self, text: str | None, tool_calls: Sequence[ToolCall] | None = None) -> None:
        self._messages.append(
            Message(role="assistant", content=text or "", tool_calls=tuple(tool_calls or ()))
        )

    def add_tool_messages(self, results: Iterable[ToolResult]) -> None:
        for result in results:
            self._messages.append(
                Message(role="tool", content=result.content, tool_call_id=result.tool_call_id)
            )

    def get_messages(self) -> list[Message]:
        return list(self._messages)

    def get_last_messages(self, n: int) -> list[Message]:
        if n <= 0:
            return []
        return self._messages[-n:]

    def get_message_count(self) -> int:
        return len(self._messages)

    def clear(self) -> None:
        self._messages = []

    def clone(self) -> ConversationHistory:
        return ConversationHistory(self._messages)

    def to_wire(self) -> list[dict[str, Any]]:
        return [m.to_wire() for m in self._messages]

    def __len__(self) -> int:
        return len(self._messages)
