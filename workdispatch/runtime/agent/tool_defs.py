from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .executors import ToolRegistry

if TYPE_CHECKING:
    from ..event_log import InMemoryEventLog

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100


def get_tool_definitions(tables: list[str]) -> list[dict]:
    return [
        _list_records_def(tables),
        _count_records_def(tables),
    ]


def _list_records_def(tables: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": "list_records",
            "description": "List the most recent records of a table in the current workspace.",
            "parameters": {
                "type": "object",
                "properties": {
                    "table": {
                        "type": "string",
                        "enum": tables,
                        "description": "Table to read.",
                    },
                    "limit": {
                        "type": "integer",
                        "description": f"Maximum number of records (default {DEFAULT_LIST_LIMIT}).",
                    },
                },
                "required": ["table"],
            },
        },
    }


def _count_records_def(tables: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": "count_records",
            "description": "Count the records of a table in the current workspace.",
            "parameters": {
                "type": "object",
                "properties": {
                    "table": {"type": "string", "enum": tables, "description": "Table to count."},
                },
                "required": ["table"],
            },
        },
    }


def build_store_tools(log: InMemoryEventLog, max_result_chars: int | None = None) -> ToolRegistry:
    """Registry of read-only tools over one store's tables."""
    registry = ToolRegistry() if max_result_chars is None else ToolRegistry(max_result_chars)
    tables = list(log.tables)
    list_def, count_def = get_tool_definitions(tables)

    def list_records(table: str, limit: int = DEFAULT_LIST_LIMIT) -> dict[str, Any]:
        if table not in log.tables:
            raise ValueError(f"Unknown table '{table}'")
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        rows = log.query(table)
        return {"table": table, "total": len(rows), "records": rows[-limit:]}

    def count_records(table: str) -> dict[str, Any]:
        if table not in log.tables:
            raise ValueError(f"Unknown table '{table}'")
        return {"table": table, "count": len(log.query(table))}

    registry.register("list_records", list_records, list_def)
    registry.register("count_records", count_records, count_def)
    return registry
