"""Database tool catalog and the assistant system prompt."""

from __future__ import annotations

from enum import Enum

from querybuddy.llm.types import ToolDefinition, ToolParameters


class DatabaseType(str, Enum):
    POSTGRES = "postgres"
    MYSQL = "mysql"
    LIBSQL = "libsql"
    SQLITE = "sqlite"
    REDIS = "redis"
    MONGODB = "mongodb"


DISPLAY_NAMES = {
    DatabaseType.POSTGRES: "PostgreSQL",
    DatabaseType.MYSQL: "MySQL",
    DatabaseType.LIBSQL: "libSQL/Turso",
    DatabaseType.SQLITE: "SQLite",
    DatabaseType.REDIS: "Redis",
    DatabaseType.MONGODB: "MongoDB",
}

_COLUMNS_SCHEMA_DESCRIPTIONS = {
    DatabaseType.POSTGRES: "The schema name (usually 'public' for PostgreSQL)",
    DatabaseType.MYSQL: "The database/schema name",
    DatabaseType.LIBSQL: "The schema name (always 'main' for libSQL/Turso)",
    DatabaseType.SQLITE: "The schema name (always 'main' for SQLite)",
    DatabaseType.REDIS: "The logical database (e.g. 'db0' for Redis)",
    DatabaseType.MONGODB: "The database name",
}

_SAMPLE_SCHEMA_DESCRIPTIONS = {
    **_COLUMNS_SCHEMA_DESCRIPTIONS,
    DatabaseType.POSTGRES: "The schema name (usually 'public')",
}

_QUERY_DESCRIPTIONS = {
    DatabaseType.POSTGRES: "The SELECT SQL query to execute. Must be a valid PostgreSQL SELECT statement.",
    DatabaseType.MYSQL: "The SELECT SQL query to execute. Must be a valid MySQL SELECT statement.",
    DatabaseType.LIBSQL: "The SELECT SQL query to execute. Must be a valid SQLite/libSQL SELECT statement.",
    DatabaseType.SQLITE: "The SELECT SQL query to execute. Must be a valid SQLite SELECT statement.",
    DatabaseType.REDIS: "The read-only SELECT-style query to execute against the Redis keyspace.",
    DatabaseType.MONGODB: "The read-only SELECT-style query to execute against the MongoDB collections.",
}

_SQLITE_TIPS = """
- Use double quotes for identifiers: "table_name", "column_name"
- Use single quotes for strings: 'value'
- Use CAST() for type casting: CAST(column AS TEXT)
- LIMIT and OFFSET for pagination
- Use LOWER() with LIKE for case-insensitive matching"""

_SYNTAX_TIPS = {
    DatabaseType.POSTGRES: """
- Use double quotes for identifiers: "table_name", "column_name"
- Use single quotes for strings: 'value'
- Use :: for type casting: column::text
- LIMIT and OFFSET for pagination
- Use ILIKE for case-insensitive matching""",
    DatabaseType.MYSQL: """
- Use backticks for identifiers: `table_name`, `column_name`
- Use single quotes for strings: 'value'
- Use CAST() for type casting: CAST(column AS CHAR)
- LIMIT and OFFSET for pagination
- Use LOWER() with LIKE for case-insensitive matching""",
    DatabaseType.LIBSQL: _SQLITE_TIPS + """
- SQLite-compatible syntax (libSQL is a SQLite fork)
- No schemas - all tables are in the 'main' schema""",
    DatabaseType.SQLITE: _SQLITE_TIPS + """
- No schemas - all tables are in the 'main' schema""",
    DatabaseType.REDIS: """
- Keys are grouped into numbered logical databases (db0, db1, ...)
- Each key holds one type: string, hash, list, set, sorted set or stream
- Use key name prefixes (user:*, session:*) to find related data""",
    DatabaseType.MONGODB: """
- Collections play the role of tables; documents the role of rows
- Fields can differ between documents in the same collection
- Nested documents and arrays are returned as JSON values""",
}

SYSTEM_PROMPT_TEMPLATE = """You are Querybuddy, an expert {db_name} assistant.

## Formatting Rules (IMPORTANT)

Always use rich markdown formatting:

- **Tables**: Display schema/column info in markdown tables:
  | Column | Type | Nullable | Default |
  |--------|------|----------|---------|
  | id | bigint | NO | auto |

- **Code**: SQL in ```sql blocks, identifiers in `backticks`
- **Lists**: Use bullet points for multiple items
- **Bold**: Key terms and column names
- **Headers**: Use ### for sections when needed

## Database: {db_name}

SQL Syntax Tips for {db_name}:
{syntax_tips}

## Capabilities

✅ List tables, examine schemas, run SELECT queries, explain SQL, debug errors
❌ Cannot execute INSERT/UPDATE/DELETE (but can write examples for you to copy)

## Response Style

- Be concise and direct
- Format data nicely - never dump raw JSON
- Use tables for structured data (columns, query results)
- Suggest follow-up queries when helpful"""


def _string_param(description: str) -> dict:
    return {"type": "string", "description": description}


def get_tool_definitions(db_type: DatabaseType) -> list[ToolDefinition]:
    """The fixed tool catalog; only description wording depends on the backend."""
    db_type = DatabaseType(db_type)
    return [
        ToolDefinition(
            name="list_tables",
            description=(
                "List all tables in the database. Returns table names, schemas, and "
                "approximate row counts. Use this first to understand what data is available."
            ),
            parameters=ToolParameters(),
        ),
        ToolDefinition(
            name="get_table_columns",
            description=(
                "Get detailed column information for a specific table. Returns column names, "
                "data types, nullability, default values, and primary key status. Essential "
                "for understanding table structure before querying."
            ),
            parameters=ToolParameters(
                properties={
                    "schema": _string_param(_COLUMNS_SCHEMA_DESCRIPTIONS[db_type]),
                    "table": _string_param("The table name to inspect"),
                },
                required=["schema", "table"],
            ),
        ),
        ToolDefinition(
            name="execute_select_query",
            description=(
                "Execute a read-only SELECT query against the database. Returns up to 50 rows. "
                "Use LIMIT clauses for large tables. Only SELECT statements are allowed for safety."
            ),
            parameters=ToolParameters(
                properties={"query": _string_param(_QUERY_DESCRIPTIONS[db_type])},
                required=["query"],
            ),
        ),
        ToolDefinition(
            name="get_table_sample",
            description=(
                "Get a quick sample of rows from a table. Useful for understanding what kind "
                "of data a table contains before writing more specific queries."
            ),
            parameters=ToolParameters(
                properties={
                    "schema": _string_param(_SAMPLE_SCHEMA_DESCRIPTIONS[db_type]),
                    "table": _string_param("The table name to sample"),
                    "limit": {
                        "type": "number",
                        "description": "Number of sample rows to return (default: 10, max: 100)",
                    },
                },
                required=["schema", "table"],
            ),
        ),
    ]


def get_system_prompt(db_type: DatabaseType) -> str:
    db_type = DatabaseType(db_type)
    return SYSTEM_PROMPT_TEMPLATE.format(
        db_name=DISPLAY_NAMES[db_type],
        syntax_tips=_SYNTAX_TIPS[db_type],
    )
