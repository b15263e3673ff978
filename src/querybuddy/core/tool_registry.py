"""Tool registry: expose the database tools and execute model tool calls."""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from querybuddy.db.base import DataAccess, DataAccessError
from querybuddy.llm.types import ToolCall, ToolDefinition
from querybuddy.tools.definitions import DatabaseType, get_tool_definitions
from querybuddy.tools.sql_tools import (
    ColumnSummary,
    ExecuteSelectQueryArgs,
    GetTableColumnsArgs,
    GetTableSampleArgs,
    QueryDataResult,
    QueryValidationError,
    TableSummary,
    ToolError,
    validate_select_query,
)

logger = logging.getLogger(__name__)


def _dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=str, ensure_ascii=False)


def _error(message: str) -> str:
    return _dumps(ToolError(error=message).to_dict())


class ToolRegistry:
    """Runs the fixed database tool catalog against one saved connection.

    ``execute`` never raises for bad input: unknown tools, malformed
    arguments, rejected queries and backend failures all come back as
    ``{"error": ...}`` payloads for the model to read.
    """

    def __init__(self, data_access: DataAccess, connection_id: str, db_type: DatabaseType):
        self._data_access = data_access
        self._connection_id = connection_id
        self._db_type = DatabaseType(db_type)
        self._definitions = get_tool_definitions(self._db_type)
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[Any]]] = {
            "list_tables": self._list_tables,
            "get_table_columns": self._get_table_columns,
            "execute_select_query": self._execute_select_query,
            "get_table_sample": self._get_table_sample,
        }

    @property
    def db_type(self) -> DatabaseType:
        return self._db_type

    def definitions(self) -> list[ToolDefinition]:
        return list(self._definitions)

    def names(self) -> list[str]:
        return [d.name for d in self._definitions]

    async def execute(self, tool_call: ToolCall) -> str:
        """Execute a tool call and return the result as pretty JSON."""
        handler = self._handlers.get(tool_call.name)
        if handler is None:
            logger.warning("Model requested unknown tool: %s", tool_call.name)
            return _error(f"Unknown tool: {tool_call.name}")

        try:
            arguments = json.loads(tool_call.arguments) if tool_call.arguments.strip() else {}
        except json.JSONDecodeError as e:
            return _error(f"Invalid arguments: {e}")
        if not isinstance(arguments, dict):
            return _error("Invalid arguments: expected a JSON object")

        logger.info("Executing tool %s (%s)", tool_call.name, tool_call.id)
        try:
            result = await handler(arguments)
        except ValidationError as e:
            return _error(f"Invalid arguments: {e}")
        except QueryValidationError as e:
            logger.info("Rejected query: %s", e)
            return _error(str(e))
        except DataAccessError as e:
            logger.warning("Tool %s failed: %s", tool_call.name, e)
            return _error(str(e))

        return _dumps(result)

    async def _list_tables(self, arguments: dict[str, Any]) -> list[dict]:
        tables = await self._data_access.list_tables(self._connection_id)
        return [TableSummary.from_table(t).to_dict() for t in tables]

    async def _get_table_columns(self, arguments: dict[str, Any]) -> list[dict]:
        args = _parse(GetTableColumnsArgs, arguments)
        columns = await self._data_access.get_table_columns(
            self._connection_id, args.schema_name, args.table
        )
        return [ColumnSummary.from_column(c).to_dict() for c in columns]

    async def _execute_select_query(self, arguments: dict[str, Any]) -> dict:
        args = _parse(ExecuteSelectQueryArgs, arguments)
        validate_select_query(args.query)
        result = await self._data_access.execute_query(self._connection_id, args.query)
        return QueryDataResult.from_query_result(result).to_dict()

    async def _get_table_sample(self, arguments: dict[str, Any]) -> dict:
        args = _parse(GetTableSampleArgs, arguments)
        result = await self._data_access.get_table_data(
            self._connection_id, args.schema_name, args.table, args.limit, 0
        )
        return QueryDataResult.from_query_result(result).to_dict()


def _parse(model: type[BaseModel], arguments: dict[str, Any]) -> Any:
    return model.model_validate(arguments)
