"""Read-only query guard, tool argument models and tool result payloads."""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from querybuddy.db.base import ColumnInfo, QueryResult, TableInfo

MAX_RESULT_ROWS = 50
DEFAULT_SAMPLE_LIMIT = 10
MAX_SAMPLE_LIMIT = 100

FORBIDDEN_KEYWORDS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "TRUNCATE",
    "ALTER",
    "CREATE",
    "GRANT",
    "REVOKE",
    "EXEC",
    "EXECUTE",
)

_FORBIDDEN_PATTERNS = [(kw, re.compile(rf"\b{kw}\b")) for kw in FORBIDDEN_KEYWORDS]


class QueryValidationError(ValueError):
    """A query was rejected by the read-only guard."""


def validate_select_query(query: str) -> None:
    """Allow only SELECT / WITH statements without any DML or DDL keyword.

    Keywords match as whole words, so ``created_at`` or ``last_update`` pass
    while ``SELECT 1; DROP TABLE t`` does not.
    """
    normalized = query.strip().upper()

    if not normalized.startswith(("SELECT", "WITH")):
        raise QueryValidationError(
            "Only SELECT queries (including WITH clauses) are allowed for safety"
        )

    for keyword, pattern in _FORBIDDEN_PATTERNS:
        if pattern.search(normalized):
            raise QueryValidationError(f"Query contains forbidden keyword: {keyword}")


# -- arguments ------------------------------------------------------------


class GetTableColumnsArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schema_name: str = Field(alias="schema")
    table: str


class ExecuteSelectQueryArgs(BaseModel):
    query: str


class GetTableSampleArgs(GetTableColumnsArgs):
    limit: int = DEFAULT_SAMPLE_LIMIT

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, value: Any) -> int:
        if value is None:
            return DEFAULT_SAMPLE_LIMIT
        return max(1, min(int(value), MAX_SAMPLE_LIMIT))


# -- results --------------------------------------------------------------


class TableSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schema_name: str = Field(alias="schema")
    name: str
    row_count: int

    @classmethod
    def from_table(cls, table: TableInfo) -> TableSummary:
        return cls(schema_name=table.schema, name=table.name, row_count=table.row_count)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ColumnSummary(BaseModel):
    name: str
    data_type: str
    is_nullable: bool
    is_primary_key: bool
    has_default: bool

    @classmethod
    def from_column(cls, column: ColumnInfo) -> ColumnSummary:
        return cls(
            name=column.name,
            data_type=column.data_type,
            is_nullable=column.is_nullable,
            is_primary_key=column.is_primary_key,
            has_default=column.has_default,
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()


class QueryDataResult(BaseModel):
    columns: list[str]
    rows: list[list[Any]]
    total_rows: int
    showing: int
    truncated: bool

    @classmethod
    def from_query_result(cls, result: QueryResult) -> QueryDataResult:
        rows = result.rows[:MAX_RESULT_ROWS]
        return cls(
            columns=list(result.columns),
            rows=rows,
            total_rows=result.row_count,
            showing=len(rows),
            truncated=result.row_count > MAX_RESULT_ROWS,
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()


class ToolError(BaseModel):
    error: str

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()
