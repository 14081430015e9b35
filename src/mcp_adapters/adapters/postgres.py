"""PostgreSQL adapter: ad-hoc queries and schema introspection.

Configure with ``POSTGRES_CONNECTION_STRING`` or with ``POSTGRES_USER``,
``POSTGRES_PASSWORD``, ``POSTGRES_DATABASE`` and optionally
``POSTGRES_HOST`` / ``POSTGRES_PORT``.  Queries run through a lazily created
SQLAlchemy engine (psycopg driver).
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

from mcp.server import Server
from mcp.types import TextContent, Tool
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError

from ..base import (
    PromptRoute,
    ResourceRoute,
    ToolHandler,
    build_server,
    configure_logging,
    json_response,
    require_args,
    require_env,
    run_stdio,
    text_response,
)
from ..errors import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

POOL_SIZE = 10
_POSITIONAL_RE = re.compile(r"\$(\d+)")

_engine: Engine | None = None


def _build_tools() -> list[Tool]:
    return [
        Tool(
            name="execute-query",
            description=(
                "Run one SQL statement. Use $1, $2, ... placeholders with params for values. "
                "Statements are committed."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "params": {"type": "array", "description": "Values for $1, $2, ..."},
                },
                "required": ["query"],
            },
        ),
        Tool(
            name="describe-table",
            description="Columns of a table: name, type, nullability and default.",
            inputSchema={
                "type": "object",
                "properties": {"tableName": {"type": "string"}},
                "required": ["tableName"],
            },
        ),
        Tool(
            name="test-connection",
            description="Check that the database is reachable and report its version.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


TOOLS = _build_tools()

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def database_url() -> str | URL:
    if os.environ.get("POSTGRES_CONNECTION_STRING"):
        return os.environ["POSTGRES_CONNECTION_STRING"]
    env = require_env("POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_DATABASE")
    return URL.create(
        "postgresql+psycopg",
        username=env["POSTGRES_USER"],
        password=env["POSTGRES_PASSWORD"],
        host=os.environ.get("POSTGRES_HOST") or "localhost",
        port=int(os.environ.get("POSTGRES_PORT") or 5432),
        database=env["POSTGRES_DATABASE"],
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_engine(database_url(), pool_size=POOL_SIZE, pool_pre_ping=True)
        logger.info("Created database engine for %s", _engine.url.render_as_string(hide_password=True))
    return _engine


def set_engine(engine: Engine | None) -> None:
    """Replace the shared engine (None resets it to be rebuilt from the environment)."""
    global _engine
    _engine = engine


def _schema(engine: Engine) -> str | None:
    return "public" if engine.dialect.name == "postgresql" else None


def bind_positional(query: str, params: list[Any]) -> tuple[str, dict[str, Any]]:
    """Rewrite ``$n`` placeholders to named binds ``:pn``."""
    return _POSITIONAL_RE.sub(r":p\1", query), {f"p{i}": v for i, v in enumerate(params, start=1)}


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def run_query(engine: Engine, query: str, params: list[Any] | None = None) -> dict[str, Any]:
    sql, binds = bind_positional(query, list(params or []))
    command = query.strip().split(None, 1)[0].upper() if query.strip() else ""
    with engine.begin() as conn:
        result = conn.execute(text(sql), binds)
        if result.returns_rows:
            fields = list(result.keys())
            rows = [dict(row._mapping) for row in result]
            return {
                "rows": rows,
                "rowCount": len(rows),
                "command": command,
                "fields": [{"name": f} for f in fields],
            }
        return {"rows": [], "rowCount": result.rowcount, "command": command, "fields": []}


def describe(engine: Engine, table: str) -> list[dict[str, Any]]:
    inspector = inspect(engine)
    schema = _schema(engine)
    if table not in inspector.get_table_names(schema=schema) + inspector.get_view_names(schema=schema):
        raise ValidationError(f"Table '{table}' not found.")
    return [
        {
            "column_name": col["name"],
            "data_type": str(col["type"]),
            "is_nullable": bool(col.get("nullable", True)),
            "column_default": col.get("default"),
            "ordinal_position": i,
        }
        for i, col in enumerate(inspector.get_columns(table, schema=schema), start=1)
    ]


def schema_overview(engine: Engine) -> dict[str, list[dict[str, Any]]]:
    inspector = inspect(engine)
    schema = _schema(engine)
    return {
        table: [
            {
                "name": col["name"],
                "type": str(col["type"]),
                "nullable": bool(col.get("nullable", True)),
                "default": col.get("default"),
            }
            for col in inspector.get_columns(table, schema=schema)
        ]
        for table in sorted(inspector.get_table_names(schema=schema))
    }


def list_tables(engine: Engine) -> list[dict[str, str]]:
    inspector = inspect(engine)
    schema = _schema(engine)
    tables = [{"table_name": t, "table_type": "BASE TABLE"} for t in inspector.get_table_names(schema=schema)]
    views = [{"table_name": v, "table_type": "VIEW"} for v in inspector.get_view_names(schema=schema)]
    return sorted(tables + views, key=lambda t: t["table_name"])


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


def _read_schema(params: dict[str, str]) -> str:
    return json.dumps(schema_overview(get_engine()), indent=2, default=str)


def _read_tables(params: dict[str, str]) -> str:
    return json.dumps(list_tables(get_engine()), indent=2)


RESOURCES = [
    ResourceRoute(
        "postgresql://schema", "database-schema", _read_schema, "Columns of every table, grouped by table"
    ),
    ResourceRoute("postgresql://tables", "tables", _read_tables, "Tables and views"),
]

# ---------------------------------------------------------------------------
# Individual tool handlers
# ---------------------------------------------------------------------------


def _handle_query(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "query")
    params = args.get("params") or []
    if not isinstance(params, list):
        raise ValidationError("params must be an array")
    try:
        return json_response(run_query(get_engine(), args["query"], params))
    except SQLAlchemyError as e:
        raise ExternalServiceError(f"SQL Error: {getattr(e, 'orig', None) or e}", e) from e


def _handle_describe(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "tableName")
    try:
        return json_response(describe(get_engine(), args["tableName"]))
    except SQLAlchemyError as e:
        raise ExternalServiceError(f"Error describing table: {e}", e) from e


def _handle_test_connection(args: dict[str, Any]) -> list[TextContent]:
    engine = get_engine()
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            version = ".".join(str(p) for p in conn.dialect.server_version_info or ())
    except SQLAlchemyError as e:
        raise ExternalServiceError(f"Connection failed: {e}", e) from e
    return text_response(f"Connection successful! {engine.dialect.name} version: {version or 'unknown'}")


HANDLERS: dict[str, ToolHandler] = {
    "execute-query": _handle_query,
    "describe-table": _handle_describe,
    "test-connection": _handle_test_connection,
}

PROMPTS = [
    PromptRoute(
        "query-database",
        "Answer a question about the data with SQL",
        lambda args: (
            f"Answer this question using the PostgreSQL database: {args['question']}\n\n"
            "First read postgresql://schema to learn the tables and columns, then write a "
            "single read-only query and run it with execute-query. Use $1, $2 placeholders "
            "for literal values. Explain the result in plain language."
        ),
        [("question", "Question about the data", True)],
    ),
]


def create_mcp_server(name: str = "postgresql") -> Server:
    return build_server(name, TOOLS, HANDLERS, RESOURCES, PROMPTS)


def main_stdio() -> None:
    configure_logging()
    run_stdio(create_mcp_server())


if __name__ == "__main__":
    main_stdio()
