from __future__ import annotations

from .agent.models import BoardContext, WorkerContext

BASE_PROMPT = """You are a helpful assistant embedded in a project-management workspace.
Answer the user's question directly. When you need workspace data, call the
available tools instead of guessing, and never invent records that a tool did
not return. Keep answers short and concrete."""


def build_system_prompt(
    board_context: BoardContext | None = None,
    worker_context: WorkerContext | None = None,
) -> str | None:
    """Return the system prompt for a turn, or None when there is no context."""
    if board_context is None and worker_context is None:
        return None

    parts: list[str] = []
    if worker_context is not None:
        parts.append(worker_context.system_prompt.strip() or BASE_PROMPT)
        role = f"You are {worker_context.name}"
        if worker_context.role_description:
            role += f", {worker_context.role_description}"
        parts.append(f"<worker>\n{role}.\n</worker>")
    else:
        parts.append(BASE_PROMPT)

    if board_context is not None:
        board = f"Current project: {board_context.name} (id: {board_context.id})"
        if board_context.description:
            board += f"\n{board_context.description}"
        parts.append(f"<project>\n{board}\n</project>")

    return "\n\n".join(parts)
