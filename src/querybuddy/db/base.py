"""Data-access collaborator interface used by the database tools."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


class DataAccessError(Exception):
    """A backend failed to answer a read request."""


@dataclass
class TableInfo:
    schema: str
    name: str
    row_count: int = 0


@dataclass
class ColumnInfo:
    name: str
    data_type: str
    is_nullable: bool
    is_primary_key: bool
    has_default: bool


@dataclass
class QueryResult:
    columns: list[str] = field(default_factory=list)
    rows: list[list[Any]] = field(default_factory=list)  # JSON-typed cells
    row_count: int = 0


class DataAccess(Protocol):
    """Read-only access to the databases behind saved connections."""

    async def list_tables(self, connection_id: str) -> list[TableInfo]: ...

    async def get_table_columns(
        self, connection_id: str, schema: str, table: str
    ) -> list[ColumnInfo]: ...

    async def execute_query(self, connection_id: str, query: str) -> QueryResult: ...

    async def get_table_data(
        self, connection_id: str, schema: str, table: str, limit: int, offset: int
    ) -> QueryResult: ...
