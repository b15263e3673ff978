"""SQLite data access backed by aiosqlite."""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any

import aiosqlite

from querybuddy.db.base import ColumnInfo, DataAccessError, QueryResult, TableInfo

logger = logging.getLogger(__name__)

LIST_TABLES_SQL = """
SELECT name FROM sqlite_master
WHERE type = 'table' AND name NOT LIKE 'sqlite_%'
ORDER BY name
"""

TABLE_COLUMNS_SQL = """
SELECT
    name,
    type AS data_type,
    "notnull" = 0 AS is_nullable,
    pk > 0 AS is_primary_key,
    dflt_value IS NOT NULL AS has_default
FROM pragma_table_info(?)
ORDER BY cid
"""


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def to_json_value(value: Any) -> Any:
    """Blobs become base64 strings; everything else SQLite returns is JSON-safe."""
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    return value


class SQLiteDataAccess:
    """Serves SQLite files registered under connection ids.

    Every schema argument is ignored: a SQLite file only has ``main``.
    """

    def __init__(self, connections: dict[str, Path] | None = None):
        self._connections: dict[str, Path] = dict(connections or {})

    def add_connection(self, connection_id: str, db_path: Path) -> None:
        self._connections[connection_id] = Path(db_path)

    def _path(self, connection_id: str) -> Path:
        path = self._connections.get(connection_id)
        if path is None:
            raise DataAccessError(f"Connection not found: {connection_id}")
        return path

    async def _fetch(self, connection_id: str, sql: str, params: tuple = ()) -> QueryResult:
        path = self._path(connection_id)
        try:
            async with aiosqlite.connect(path) as db:
                cursor = await db.execute(sql, params)
                rows = await cursor.fetchall()
                columns = [d[0] for d in cursor.description or []]
        except aiosqlite.Error as e:
            logger.debug("SQLite query failed on %s: %s", path, e)
            raise DataAccessError(str(e)) from e

        result_rows = [[to_json_value(v) for v in row] for row in rows]
        return QueryResult(columns=columns, rows=result_rows, row_count=len(result_rows))

    async def list_tables(self, connection_id: str) -> list[TableInfo]:
        path = self._path(connection_id)
        tables: list[TableInfo] = []
        try:
            async with aiosqlite.connect(path) as db:
                cursor = await db.execute(LIST_TABLES_SQL)
                names = [row[0] for row in await cursor.fetchall()]
                for name in names:
                    try:
                        count_cursor = await db.execute(
                            f"SELECT COUNT(*) FROM {quote_identifier(name)}"
                        )
                        row = await count_cursor.fetchone()
                        row_count = row[0] if row else 0
                    except aiosqlite.Error as e:
                        logger.debug("Row count failed for %s: %s", name, e)
                        row_count = 0
                    tables.append(TableInfo(schema="main", name=name, row_count=row_count))
        except aiosqlite.Error as e:
            raise DataAccessError(str(e)) from e
        return tables

    async def get_table_columns(
        self, connection_id: str, schema: str, table: str
    ) -> list[ColumnInfo]:
        result = await self._fetch(connection_id, TABLE_COLUMNS_SQL, (table,))
        return [
            ColumnInfo(
                name=name,
                data_type=data_type or "",
                is_nullable=bool(is_nullable),
                is_primary_key=bool(is_pk),
                has_default=bool(has_default),
            )
            for name, data_type, is_nullable, is_pk, has_default in result.rows
        ]

    async def execute_query(self, connection_id: str, query: str) -> QueryResult:
        return await self._fetch(connection_id, query)

    async def get_table_data(
        self, connection_id: str, schema: str, table: str, limit: int, offset: int
    ) -> QueryResult:
        sql = f"SELECT * FROM {quote_identifier(table)} LIMIT ? OFFSET ?"
        return await self._fetch(connection_id, sql, (int(limit), int(offset)))
