"""Agent package.

Internal layout:
    models.py     : ToolCall, Message, LLMResponse, loop events and errors
    validators.py : InputValidator, ValidationConfig and the strict/permissive presets
    history.py    : ConversationHistory
    executors.py  : ToolRegistry (tool executor over Python callables)
    formatters.py : format_tool_result
    tool_defs.py  : read-only store tools and their Ollama schemas
    loop.py       : AgenticLoop
"""

from .history import ConversationHistory
from .loop import AgenticLoop, LoopResult, LoopState
from .models import AgenticLoopEvents, RunOptions, ToolCall, ToolResult
from .validators import InputValidator, ValidationConfig

__all__ = [
    "AgenticLoop",
    "AgenticLoopEvents",
    "ConversationHistory",
    "InputValidator",
    "LoopResult",
    "LoopState",
    "RunOptions",
    "ToolCall",
    "ToolResult",
    "ValidationConfig",
]
