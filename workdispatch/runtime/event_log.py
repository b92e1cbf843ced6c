"""In-process event log: an append-only event list projected into tables.

Subscriptions are level-triggered. ``subscribe`` returns the current rows
of a table and calls ``on_update`` with the full row list after every
change to that table, never a diff.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

logger = logging.getLogger("workdispatch.event_log")

CHAT_TABLE = "chat_messages"

MONITORED_TABLES = (
    CHAT_TABLE,
    "tasks",
    "projects",
    "conversations",
    "documents",
    "workers",
    "contacts",
    "comments",
    "recurring_tasks",
)

EVENT_TABLES = {
    "v1.ChatMessageSent": CHAT_TABLE,
    "v1.LLMResponseReceived": CHAT_TABLE,
    "v1.TaskCreated": "tasks",
    "v1.ProjectCreated": "projects",
    "v1.ConversationCreated": "conversations",
    "v1.DocumentCreated": "documents",
    "v1.WorkerCreated": "workers",
    "v1.ContactCreated": "contacts",
    "v1.CommentAdded": "comments",
    "v1.RecurringTaskCreated": "recurring_tasks",
}

TableListener = Callable[[list[dict[str, Any]]], None]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class DomainEvent:
    name: str
    args: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "args": self.args}


# ─── Event constructors ──────────────────────────────────────────────

def chat_message_sent(conversation_id: str, message: str, role: str = "user", message_id: str | None = None) -> DomainEvent:
    return DomainEvent("v1.ChatMessageSent", {
        "id": message_id or new_id(),
        "conversation_id": conversation_id,
        "message": message,
        "role": role,
        "created_at": utc_now(),
    })


def llm_response_started(conversation_id: str, user_message_id: str) -> DomainEvent:
    return DomainEvent("v1.LLMResponseStarted", {
        "conversation_id": conversation_id,
        "user_message_id": user_message_id,
        "started_at": utc_now(),
    })


def llm_response_received(
    conversation_id: str,
    message: str,
    model_id: str,
    response_to_message_id: str | None,
    source: str,
    **metadata: Any,
) -> DomainEvent:
    return DomainEvent("v1.LLMResponseReceived", {
        "id": new_id(),
        "conversation_id": conversation_id,
        "message": message,
        "role": "assistant",
        "model_id": model_id,
        "response_to_message_id": response_to_message_id,
        "created_at": utc_now(),
        "llm_metadata": {"source": source, **metadata},
    })


def llm_response_completed(conversation_id: str, user_message_id: str, success: bool, iterations: int = 0) -> DomainEvent:
    return DomainEvent("v1.LLMResponseCompleted", {
        "conversation_id": conversation_id,
        "user_message_id": user_message_id,
        "iterations": iterations,
        "success": success,
        "completed_at": utc_now(),
    })


def record_created(event_name: str, **fields: Any) -> DomainEvent:
    args = {"id": new_id(), "created_at": utc_now(), **fields}
    return DomainEvent(event_name, args)


# ─── Log ─────────────────────────────────────────────────────────────

class InMemoryEventLog:
    def __init__(self, store_key: str, tables: tuple[str, ...] = MONITORED_TABLES) -> None:
        self.store_key = store_key
        self.tables: dict[str, list[dict[str, Any]]] = {t: [] for t in tables}
        self._events: list[DomainEvent] = []
        self._subscribers: dict[str, list[TableListener]] = {t: [] for t in tables}
        self._listeners: list[asyncio.Queue[DomainEvent]] = []

    def subscribe(self, table: str, on_update: TableListener) -> tuple[list[dict[str, Any]], Callable[[], None]]:
        if table not in self.tables:
            raise KeyError(f"Unknown table '{table}'")
        self._subscribers[table].append(on_update)

        def unsubscribe() -> None:
            if on_update in self._subscribers[table]:
                self._subscribers[table].remove(on_update)

        return self.query(table), unsubscribe

    def query(self, table: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self.tables.get(table, []))

    def events(self) -> list[DomainEvent]:
        return list(self._events)

    def commit(self, event: DomainEvent) -> None:
        self._events.append(event)
        table = EVENT_TABLES.get(event.name)
        if table is not None and table in self.tables:
            self.tables[table].append(dict(event.args))
            rows = self.query(table)
            for listener in list(self._subscribers[table]):
                listener(rows)

        for queue in list(self._listeners):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Dropping event {event.name} for a slow listener on {self.store_key}")

    async def listen(self, max_queued: int = 1000) -> AsyncIterator[DomainEvent]:
        queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=max_queued)
        self._listeners.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._listeners.remove(queue)


class EventLogRegistry:
    """Store key to event log, created on first use."""

    def __init__(self) -> None:
        self._logs: dict[str, InMemoryEventLog] = {}

    def get_or_create(self, store_key: str) -> InMemoryEventLog:
        log = self._logs.get(store_key)
        if log is None:
            log = InMemoryEventLog(store_key)
            self._logs[store_key] = log
            logger.info(f"Created event log for store {store_key}")
        return log

    def get(self, store_key: str) -> InMemoryEventLog | None:
        return self._logs.get(store_key)

    def keys(self) -> list[str]:
        return list(self._logs)
