"""Test fixtures for querybuddy."""

from __future__ import annotations

import sqlite3
import tempfile
from pathlib import Path
from typing import AsyncIterator

import pytest

from querybuddy.db.base import ColumnInfo, DataAccessError, QueryResult, TableInfo
from querybuddy.llm.models import AIModel, ProviderType
from querybuddy.llm.types import (
    ChatResponse,
    ContentDelta,
    Done,
    FinishReason,
    StreamEvent,
    ToolCallDelta,
    ToolCallStart,
)


def stream_events_for(resp: ChatResponse) -> list[StreamEvent]:
    """The stream a well-behaved provider would send for a response."""
    events: list[StreamEvent] = []
    if resp.content:
        for i in range(0, len(resp.content), 10):
            events.append(ContentDelta(text=resp.content[i:i + 10]))
    for tc in resp.tool_calls:
        events.append(ToolCallStart(id=tc.id, name=tc.name))
        # Split arguments to exercise fragment accumulation
        half = len(tc.arguments) // 2
        events.append(ToolCallDelta(id=tc.id, arguments=tc.arguments[:half]))
        events.append(ToolCallDelta(id=tc.id, arguments=tc.arguments[half:]))
    events.append(Done(finish_reason=resp.finish_reason))
    return events


class MockLLMProvider:
    """Mock LLM provider for testing.

    Each call consumes the next scripted item: a ChatResponse, or for
    ``chat_stream`` an explicit list of StreamEvents. The last item repeats.
    """

    provider_type = ProviderType.OPENAI

    def __init__(self, responses: list[ChatResponse | list[StreamEvent]] | None = None):
        self._responses = responses or [
            ChatResponse(content="Mock response", finish_reason=FinishReason.STOP)
        ]
        self._call_index = 0
        self.calls: list[dict] = []
        self.closed_streams = 0

    def _next(self, model, messages, tools):
        self.calls.append({"model": model, "messages": list(messages), "tools": tools})
        resp = self._responses[min(self._call_index, len(self._responses) - 1)]
        self._call_index += 1
        return resp

    async def chat(self, model, messages, tools) -> ChatResponse:
        resp = self._next(model, messages, tools)
        if isinstance(resp, list):
            raise AssertionError("scripted stream used for chat()")
        return resp

    async def chat_stream(self, model, messages, tools) -> AsyncIterator[StreamEvent]:
        resp = self._next(model, messages, tools)
        events = resp if isinstance(resp, list) else stream_events_for(resp)
        try:
            for event in events:
                yield event
        finally:
            self.closed_streams += 1


class MockDataAccess:
    """In-memory data access keyed by table name."""

    def __init__(self, tables: dict[str, QueryResult] | None = None):
        self.tables = tables or {}
        self.queries: list[str] = []
        self.fail_with: str | None = None

    def _check(self):
        if self.fail_with:
            raise DataAccessError(self.fail_with)

    async def list_tables(self, connection_id: str) -> list[TableInfo]:
        self._check()
        return [
            TableInfo(schema="main", name=name, row_count=result.row_count)
            for name, result in self.tables.items()
        ]

    async def get_table_columns(self, connection_id: str, schema: str, table: str) -> list[ColumnInfo]:
        self._check()
        result = self.tables.get(table)
        if result is None:
            return []
        return [
            ColumnInfo(
                name=col,
                data_type="TEXT",
                is_nullable=i > 0,
                is_primary_key=i == 0,
                has_default=False,
            )
            for i, col in enumerate(result.columns)
        ]

    async def execute_query(self, connection_id: str, query: str) -> QueryResult:
        self._check()
        self.queries.append(query)
        for name, result in self.tables.items():
            if name in query:
                return result
        return QueryResult(columns=[], rows=[], row_count=0)

    async def get_table_data(
        self, connection_id: str, schema: str, table: str, limit: int, offset: int
    ) -> QueryResult:
        self._check()
        result = self.tables[table]
        rows = result.rows[offset:offset + limit]
        return QueryResult(columns=result.columns, rows=rows, row_count=len(rows))


def make_rows(count: int) -> QueryResult:
    rows = [[i, f"name-{i}"] for i in range(count)]
    return QueryResult(columns=["id", "name"], rows=rows, row_count=count)


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def model():
    return AIModel.parse("gpt-5")


@pytest.fixture
def mock_llm():
    return MockLLMProvider()


@pytest.fixture
def data_access():
    return MockDataAccess({"t1": make_rows(3)})


@pytest.fixture
def sqlite_db(tmp_dir):
    """A small SQLite file with a users table."""
    path = tmp_dir / "test.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE users (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            avatar BLOB
        );
        CREATE TABLE orders (id INTEGER PRIMARY KEY, user_id INTEGER, total REAL);
        """
    )
    conn.executemany(
        "INSERT INTO users (name, email, avatar) VALUES (?, ?, ?)",
        [(f"user{i}", f"user{i}@example.com", b"\x00\x01" if i == 0 else None) for i in range(120)],
    )
    conn.commit()
    conn.close()
    return path
