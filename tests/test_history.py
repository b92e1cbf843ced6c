"""Tests for ConversationHistory."""

from workdispatch.runtime.agent.history import ConversationHistory
from workdispatch.runtime.agent.models import Message, ToolCall, ToolResult


class TestConversationHistory:

    def test_append_order_and_roles(self):
        history = ConversationHistory()
        history.add_system_message("sys")
        history.add_user_message("hi")
        history.add_assistant_message("hello")
        assert [m.role for m in history.get_messages()] == ["system", "user", "assistant"]
        assert history.get_message_count() == 3

    def test_snapshot_is_not_live(self):
        history = ConversationHistory()
        history.add_user_message("one")
        snapshot = history.get_messages()
        history.add_user_message("two")
        snapshot.append(Message(role="user", content="injected"))
        assert len(snapshot) == 2
        assert [m.content for m in history.get_messages()] == ["one", "two"]

    def test_assistant_tool_calls_and_tool_results(self):
        history = ConversationHistory()
        call = ToolCall("c1", "lookup", "{}")
        history.add_assistant_message(None, [call])
        history.add_tool_messages([ToolResult("c1", "lookup", True, content="42")])
        assistant, tool = history.get_messages()
        assert assistant.content == ""
        assert assistant.tool_calls == (call,)
        assert tool.role == "tool"
        assert tool.tool_call_id == "c1"
        assert tool.content == "42"

    def test_clear(self):
        history = ConversationHistory()
        history.add_user_message("x")
        history.clear()
        assert history.get_message_count() == 0
        assert history.get_messages() == []

    def test_last_messages_and_clone(self):
        history = ConversationHistory()
        for i in range(5):
            history.add_user_message(str(i))
        assert [m.content for m in history.get_last_messages(2)] == ["3", "4"]
        assert history.get_last_messages(0) == []
        clone = history.clone()
        clone.add_user_message("5")
        assert history.get_message_count() == 5
        assert clone.get_message_count() == 6

    def test_to_wire(self):
        history = ConversationHistory()
        history.add_assistant_message("", [ToolCall("c1", "lookup", '{"a": 1}')])
        history.add_tool_messages([ToolResult("c1", "lookup", True, content="ok")])
        assert history.to_wire() == [
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"id": "c1", "type": "function",
                                "function": {"name": "lookup", "arguments": '{"a": 1}'}}],
            },
            {"role": "tool", "content": "ok", "tool_call_id": "c1"},
        ]
