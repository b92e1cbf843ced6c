"""Event dispatcher: watches store tables and runs agent turns.

Each monitored store gets its own ``StoreProcessingState``, one table
subscription per monitored table, and a single worker task fed by an
``asyncio.Queue``. Every processing request, including the ones issued by
the periodic flush timer, goes through that queue, so at most one batch is
handled per store at a time while different stores run independently.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Protocol

from .agent.executors import ToolRegistry
from .agent.history import ConversationHistory
from .agent.loop import AgenticLoop, LoopResult, LoopState
from .agent.models import (
    AgenticLoopError,
    AgenticLoopEvents,
    BoardContext,
    InputRejectedError,
    ModelProvider,
    RunOptions,
    ToolCall,
    ToolExecutor,
    WorkerContext,
    classify_error,
)
from .agent.validators import InputValidator, ValidationConfig
from .bounded import BoundedIdSet, LRUMap
from .config import Config, get_config
from .event_log import (
    CHAT_TABLE,
    MONITORED_TABLES,
    DomainEvent,
    llm_response_completed,
    llm_response_received,
    llm_response_started,
    utc_now,
)

logger = logging.getLogger("workdispatch.dispatcher")

ECHO_MODEL_ID = "test-echo"
ERROR_MODEL_ID = "error"
QUEUE_FULL_MESSAGE = "Message queue is full. Please wait before sending more messages."
PROCESSING_ERROR_MESSAGE = "Sorry, I encountered an error while processing your message."
CONTEXT_ERROR_MESSAGE = "Sorry, I couldn't load the context for this conversation."
MAX_QUEUED_BATCHES = 64
PREVIEW_LENGTH = 50


class EventSource(Protocol):
    def subscribe(
        self, table: str, on_update: Callable[[list[Any]], None]
    ) -> tuple[list[Any], Callable[[], None]]: ...

    def commit(self, event: DomainEvent) -> None: ...


@dataclass
class BufferedEvent:
    table: str
    record: dict[str, Any]
    received_at: float = field(default_factory=time.monotonic)


@dataclass
class StoreProcessingState:
    store_key: str
    source: EventSource
    tool_executor: ToolExecutor
    processed_ids: BoundedIdSet
    queue: asyncio.Queue[None]
    unsubscribers: list[Callable[[], None]] = field(default_factory=list)
    tables_monitored: list[str] = field(default_factory=list)
    events: list[BufferedEvent] = field(default_factory=list)
    table_counts: dict[str, int] = field(default_factory=dict)
    table_rows: dict[str, list[Any]] = field(default_factory=dict)
    last_flushed: float = field(default_factory=time.monotonic)
    last_flushed_at: str | None = None
    processing: bool = False
    stopping: bool = False
    error_count: int = 0
    last_error: str | None = None
    malformed_records: int = 0
    worker: asyncio.Task | None = None

    def record_error(self, message: str) -> None:
        self.error_count += 1
        self.last_error = message


def _find_row(rows: list[Any], row_id: Any) -> dict[str, Any] | None:
    if not row_id:
        return None
    for row in rows:
        if isinstance(row, dict) and row.get("id") == row_id:
            return row
    return None


class EventDispatcher:
    def __init__(
        self,
        provider: ModelProvider | None = None,
        config: Config | None = None,
        validator: InputValidator | None = None,
        tool_executor_factory: Callable[[EventSource], ToolExecutor] | None = None,
    ) -> None:
        self.provider = provider
        self.config = config or get_config()
        self.validator = validator or InputValidator(
            ValidationConfig.from_profile(self.config.validation_profile)
        )
        self.tool_executor_factory = tool_executor_factory
        self._stores: dict[str, StoreProcessingState] = {}
        self._teardowns: dict[str, asyncio.Task] = {}
        self._histories: LRUMap[tuple[str, str], ConversationHistory] = LRUMap(
            self.config.history_cap, self.config.history_evict
        )
        self._flush_task: asyncio.Task | None = None

    # ─── Lifecycle ───────────────────────────────────────────────────

    def is_monitoring(self, store_key: str) -> bool:
        state = self._stores.get(store_key)
        return state is not None and not state.stopping

    def monitored_stores(self) -> list[str]:
        return [key for key, state in self._stores.items() if not state.stopping]

    def start_monitoring(self, store_key: str, source: EventSource) -> bool:
        """Subscribe to every monitored table of ``source``.

        Must be called from a running event loop. Returns False (and does
        nothing) when the store is already monitored or still stopping.
        """
        existing = self._stores.get(store_key)
        if existing is not None:
            if existing.stopping:
                logger.warning(f"Store {store_key} is currently stopping, cannot start monitoring")
            else:
                logger.warning(f"Store {store_key} is already being monitored")
            return False

        tool_executor = (
            self.tool_executor_factory(source) if self.tool_executor_factory else ToolRegistry()
        )
        state = StoreProcessingState(
            store_key=store_key,
            source=source,
            tool_executor=tool_executor,
            processed_ids=BoundedIdSet(self.config.processed_ids_cap, self.config.processed_ids_keep),
            queue=asyncio.Queue(maxsize=MAX_QUEUED_BATCHES),
        )
        self._stores[store_key] = state

        for table in MONITORED_TABLES:
            try:
                rows, unsubscribe = source.subscribe(
                    table, partial(self._on_table_update, state, table)
                )
            except Exception as e:
                state.record_error(f"Failed to subscribe to {table}: {e}")
                logger.error(f"Failed to subscribe to {table} for store {store_key}: {e}")
                continue
            state.unsubscribers.append(unsubscribe)
            state.tables_monitored.append(table)
            self._seed_snapshot(state, table, rows)

        state.worker = asyncio.get_running_loop().create_task(
            self._worker(state), name=f"dispatch-{store_key}"
        )
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(
                self._flush_loop(), name="dispatch-flush"
            )

        logger.info(f"Started monitoring store {store_key} ({len(state.tables_monitored)} tables)")
        return True

    def _seed_snapshot(self, state: StoreProcessingState, table: str, rows: Any) -> None:
        # Rows present at subscribe time are history, not new work
        rows = rows if isinstance(rows, list) else []
        state.table_rows[table] = rows
        state.table_counts[table] = len(rows)
        if table == CHAT_TABLE:
            for row in rows:
                if isinstance(row, dict) and row.get("id"):
                    state.processed_ids.add(row["id"])

    def stop_monitoring(self, store_key: str) -> asyncio.Future:
        """Stop a store; the returned future resolves once teardown is done.

        The stopping flag and unsubscription happen before this returns.
        Dedup state is cleared only after the store's queue has drained.
        """
        state = self._stores.get(store_key)
        if state is None:
            logger.warning(f"Store {store_key} is not being monitored")
            done = asyncio.get_running_loop().create_future()
            done.set_result(None)
            return done

        teardown = self._teardowns.get(store_key)
        if teardown is not None:
            return teardown

        state.stopping = True
        for unsubscribe in state.unsubscribers:
            try:
                unsubscribe()
            except Exception as e:
                state.record_error(f"Failed to unsubscribe: {e}")
                logger.warning(f"Failed to unsubscribe store {store_key}: {e}")
        state.unsubscribers.clear()

        teardown = asyncio.get_running_loop().create_task(
            self._teardown(state), name=f"teardown-{store_key}"
        )
        self._teardowns[store_key] = teardown
        return teardown

    async def _teardown(self, state: StoreProcessingState) -> None:
        key = state.store_key
        try:
            await state.queue.join()
        finally:
            if state.worker is not None:
                state.worker.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await state.worker
            state.processed_ids.clear()
            state.events.clear()
            for history_key in self._histories.keys():
                if history_key[0] == key:
                    self._histories.pop(history_key)
            if self._stores.get(key) is state:
                del self._stores[key]
            self._teardowns.pop(key, None)
            logger.info(f"Stopped monitoring store {key}")

    async def stop_all(self) -> None:
        for key in list(self._stores):
            self.stop_monitoring(key)
        pending = list(self._teardowns.values())
        if pending:
            await asyncio.gather(*pending)

    async def shutdown(self) -> None:
        await self.stop_all()
        if self._flush_task is not None:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None

    async def drain(self, store_key: str) -> None:
        """Wait until every batch queued for the store has been handled."""
        state = self._stores.get(store_key)
        if state is not None:
            await state.queue.join()

    # ─── Admission ───────────────────────────────────────────────────

    def _on_table_update(self, state: StoreProcessingState, table: str, records: Any) -> None:
        try:
            self.handle_table_update(state.store_key, table, records, state)
        except Exception as e:
            state.record_error(str(e))
            logger.exception(f"Error handling {table} update for store {state.store_key}: {e}")

    def handle_table_update(
        self,
        store_key: str,
        table: str,
        records: Any,
        state: StoreProcessingState | None = None,
    ) -> None:
        state = state or self._stores.get(store_key)
        if state is None or state.stopping:
            return
        if not isinstance(records, list):
            state.malformed_records += 1
            logger.warning(f"Ignoring non-list {table} update for store {store_key}")
            return

        state.table_rows[table] = records
        if table == CHAT_TABLE:
            new_records = self._new_chat_records(state, records)
        else:
            last_count = state.table_counts.get(table, 0)
            state.table_counts[table] = len(records)
            if len(records) <= last_count:
                return
            new_records = [r for r in records[last_count:] if isinstance(r, dict)]

        if not new_records:
            return

        for record in new_records:
            if len(state.events) >= self.config.max_pending_events:
                self._reject_overflow(state, table, record)
                continue
            state.events.append(BufferedEvent(table=table, record=record))

        if len(state.events) >= self.config.max_buffer_size or not state.processing:
            self._schedule(state)

    def _new_chat_records(self, state: StoreProcessingState, records: list[Any]) -> list[dict[str, Any]]:
        # Rows below the high-water mark were already admitted or skipped, so
        # ids trimmed from processed_ids cannot come back as new. A feed that
        # shrinks is rescanned in full and deduped by id only.
        seen = state.table_counts.get(CHAT_TABLE, 0)
        state.table_counts[CHAT_TABLE] = len(records)
        if len(records) >= seen:
            records = records[seen:]

        new_records = []
        for record in records:
            if not isinstance(record, dict):
                state.malformed_records += 1
                logger.debug(f"Skipping malformed chat record in store {state.store_key}")
                continue
            message_id = record.get("id")
            if not message_id:
                state.malformed_records += 1
                logger.debug(f"Skipping chat record without id in store {state.store_key}")
                continue
            if message_id in state.processed_ids:
                continue
            state.processed_ids.add(message_id)
            preview = str(record.get("message", ""))[:PREVIEW_LENGTH]
            logger.info(f"New chat message in {state.store_key} ({record.get('role')}): {preview}")
            new_records.append(record)
        return new_records

    def _reject_overflow(self, state: StoreProcessingState, table: str, record: dict[str, Any]) -> None:
        if table == CHAT_TABLE and self._is_trigger(record):
            logger.warning(f"Event buffer full for store {state.store_key}, rejecting message {record.get('id')}")
            self._commit(state, llm_response_received(
                record.get("conversation_id") or "",
                QUEUE_FULL_MESSAGE,
                ERROR_MODEL_ID,
                record.get("id"),
                "queue-overflow",
            ))
        else:
            logger.warning(f"Event buffer full for store {state.store_key}, dropping {table} record")

    # ─── Serialized processing ───────────────────────────────────────

    def _schedule(self, state: StoreProcessingState) -> None:
        if state.stopping:
            return
        try:
            state.queue.put_nowait(None)
        except asyncio.QueueFull:
            # A queued request will pick up the whole buffer anyway
            logger.debug(f"Processing queue full for store {state.store_key}")

    async def _worker(self, state: StoreProcessingState) -> None:
        while True:
            await state.queue.get()
            try:
                await self._process_batch(state)
            except Exception as e:
                state.record_error(str(e))
                logger.exception(f"Batch failed for store {state.store_key}: {e}")
            finally:
                state.queue.task_done()

    async def _flush_loop(self) -> None:
        interval = self.config.flush_interval
        while True:
            await asyncio.sleep(interval)
            now = time.monotonic()
            for state in list(self._stores.values()):
                if state.stopping or state.processing or not state.events:
                    continue
                if now - state.last_flushed >= interval:
                    self._schedule(state)

    async def _process_batch(self, state: StoreProcessingState) -> None:
        if state.stopping:
            state.events.clear()
            return
        if not state.events:
            return

        batch, state.events = state.events, []
        state.processing = True
        try:
            for event in batch:
                if state.stopping:
                    break
                try:
                    await self._process_event(state, event)
                except Exception as e:
                    state.record_error(str(e))
                    logger.exception(f"Error processing {event.table} event in store {state.store_key}: {e}")
        finally:
            state.processing = False
            state.last_flushed = time.monotonic()
            state.last_flushed_at = utc_now()

    def _is_trigger(self, record: dict[str, Any]) -> bool:
        message = record.get("message")
        return (
            record.get("role") == "user"
            and isinstance(message, str)
            and message.startswith(self.config.trigger_prefix)
        )

    async def _process_event(self, state: StoreProcessingState, event: BufferedEvent) -> None:
        if event.table != CHAT_TABLE:
            logger.debug(f"{event.table} changed in store {state.store_key}")
            return
        if not self._is_trigger(event.record):
            return
        text = event.record["message"][len(self.config.trigger_prefix):].strip()
        await self._handle_user_message(state, event.record, text)

    # ─── Turns ───────────────────────────────────────────────────────

    def _commit(self, state: StoreProcessingState, event: DomainEvent) -> bool:
        if state.stopping:
            logger.debug(f"Store {state.store_key} is stopping, not committing {event.name}")
            return False
        state.source.commit(event)
        return True

    def _respond(
        self,
        state: StoreProcessingState,
        conversation_id: str,
        message_id: str,
        text: str,
        model_id: str,
        source: str,
        **metadata: Any,
    ) -> None:
        self._commit(state, llm_response_received(
            conversation_id, text, model_id, message_id, source, **metadata
        ))

    async def _handle_user_message(self, state: StoreProcessingState, record: dict[str, Any], text: str) -> None:
        conversation_id = record.get("conversation_id") or ""
        message_id = record["id"]
        self._commit(state, llm_response_started(conversation_id, message_id))

        try:
            checked = self.validator.validate_messages([{"role": "user", "content": text}])
            if not checked.is_valid:
                logger.warning(f"Rejected message {message_id} in {state.store_key}: {checked.reason}")
                self._respond(
                    state, conversation_id, message_id,
                    f"I can't process that message: {checked.reason}",
                    ERROR_MODEL_ID, "input-validation-error",
                )
                self._commit(state, llm_response_completed(conversation_id, message_id, False))
                return
            content = checked.sanitized_content[0]["content"]

            if self.provider is None:
                self._respond(state, conversation_id, message_id, f"Echo: {content}", ECHO_MODEL_ID, "echo")
                self._commit(state, llm_response_completed(conversation_id, message_id, True))
                return

            try:
                options = self._load_context(state, conversation_id)
            except Exception as e:
                state.record_error(f"Context load failed: {e}")
                logger.error(f"Failed to load context for conversation {conversation_id}: {e}")
                self._respond(
                    state, conversation_id, message_id, CONTEXT_ERROR_MESSAGE,
                    ERROR_MODEL_ID, "context-load-error",
                )
                self._commit(state, llm_response_completed(conversation_id, message_id, False))
                return

            result = await self._run_turn(state, conversation_id, message_id, content, options)
            self._commit(state, llm_response_completed(
                conversation_id, message_id, result.state == LoopState.COMPLETED, result.iterations
            ))
        except Exception:
            self._respond(
                state, conversation_id, message_id, PROCESSING_ERROR_MESSAGE,
                ERROR_MODEL_ID, "processing-error",
            )
            self._commit(state, llm_response_completed(conversation_id, message_id, False))
            raise

    def _load_context(self, state: StoreProcessingState, conversation_id: str) -> RunOptions:
        conversation = _find_row(state.table_rows.get("conversations", []), conversation_id) or {}
        model_id = conversation.get("model") or self.config.ollama_model

        worker = None
        worker_row = _find_row(state.table_rows.get("workers", []), conversation.get("worker_id"))
        if worker_row is not None:
            worker = WorkerContext(
                name=worker_row.get("name"),
                system_prompt=worker_row.get("system_prompt") or "",
                role_description=worker_row.get("role_description"),
                id=worker_row.get("id"),
            )

        board = None
        project_row = _find_row(state.table_rows.get("projects", []), conversation.get("project_id"))
        if project_row is not None:
            board = BoardContext(
                id=project_row.get("id"),
                name=project_row.get("name"),
                description=project_row.get("description"),
            )

        return RunOptions(model_id=model_id, board_context=board, worker_context=worker)

    async def _run_turn(
        self,
        state: StoreProcessingState,
        conversation_id: str,
        message_id: str,
        content: str,
        options: RunOptions,
    ) -> LoopResult:
        history = self._histories.get_or_create(
            (state.store_key, conversation_id), ConversationHistory
        )
        model_id = options.model_id or self.config.ollama_model

        def on_final_message(message: str) -> None:
            self._respond(state, conversation_id, message_id, message, model_id, "llm")

        def on_error(error: AgenticLoopError, iteration: int) -> None:
            classified = classify_error(error)
            logger.warning(f"Turn for {message_id} ended with {classified.type} at iteration {iteration}: {error}")
            self._respond(
                state, conversation_id, message_id, classified.user_message,
                ERROR_MODEL_ID, "agent-error", error_type=classified.type, iteration=iteration,
            )

        def on_tools_executing(tool_calls: list[ToolCall]) -> None:
            names = ", ".join(str(tc.name) for tc in tool_calls)
            logger.info(f"Executing tools for {message_id}: {names}")

        def on_retry(attempt: int, max_retries: int, delay: float, error: Exception) -> None:
            logger.info(f"Retrying model call for {message_id} ({attempt}/{max_retries}) in {delay:.1f}s: {error}")

        events = AgenticLoopEvents(
            on_final_message=on_final_message,
            on_error=on_error,
            on_tools_executing=on_tools_executing,
            on_retry=on_retry,
        )
        loop = AgenticLoop(
            self.provider,
            state.tool_executor,
            events=events,
            history=history,
            validator=self.validator,
            config=self.config,
        )
        try:
            return await loop.run(content, options)
        except InputRejectedError as e:
            logger.warning(f"Rejected context for {message_id} in {state.store_key}: {e.reason}")
            self._respond(
                state, conversation_id, message_id,
                f"I can't process that message: {e.reason}",
                ERROR_MODEL_ID, "input-validation-error",
            )
            return LoopResult(LoopState.ERRED, loop.iteration, error=e)

    # ─── Stats ───────────────────────────────────────────────────────

    def get_processing_stats(self) -> dict[str, dict[str, Any]]:
        return {
            key: {
                "error_count": state.error_count,
                "last_error": state.last_error,
                "buffer_size": len(state.events),
                "processing": state.processing,
                "last_flushed": state.last_flushed_at,
                "tables_monitored": len(state.tables_monitored),
                "processed_message_count": len(state.processed_ids),
                "malformed_records": state.malformed_records,
                "queued_batches": state.queue.qsize(),
                "stopping": state.stopping,
            }
            for key, state in self._stores.items()
        }

    @property
    def history_count(self) -> int:
        return len(self._histories)
