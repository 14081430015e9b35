"""Tests for the PostgreSQL adapter, run against an in-memory SQLite engine."""

from __future__ import annotations

import json
from typing import Iterator

import pytest
from conftest import text_of
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.pool import StaticPool

from mcp_adapters.adapters import postgres
from mcp_adapters.adapters.postgres import (
    HANDLERS,
    PROMPTS,
    RESOURCES,
    bind_positional,
    database_url,
    describe,
    list_tables,
    run_query,
)
from mcp_adapters.base import dispatch, read_route, render_prompt
from mcp_adapters.errors import ConfigurationError, ExternalServiceError, ValidationError


@pytest.fixture
def engine() -> Iterator[Engine]:
    engine = create_engine(
        "sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL, email TEXT)"))
        conn.execute(text("CREATE VIEW user_names AS SELECT name FROM users"))
        conn.execute(text("INSERT INTO users (id, name, email) VALUES (1, 'ann', 'ann@example.test')"))
    postgres.set_engine(engine)
    yield engine
    postgres.set_engine(None)
    engine.dispose()


class TestConnectionSettings:
    def test_connection_string_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("POSTGRES_CONNECTION_STRING", "postgresql+psycopg://u:p@db/app")
        assert database_url() == "postgresql+psycopg://u:p@db/app"

    def test_from_parts(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("POSTGRES_CONNECTION_STRING", raising=False)
        monkeypatch.delenv("POSTGRES_HOST", raising=False)
        monkeypatch.setenv("POSTGRES_USER", "app")
        monkeypatch.setenv("POSTGRES_PASSWORD", "secret")
        monkeypatch.setenv("POSTGRES_DATABASE", "appdb")
        monkeypatch.setenv("POSTGRES_PORT", "6543")
        url = database_url()
        assert isinstance(url, URL)
        assert (url.drivername, url.host, url.port, url.database) == ("postgresql+psycopg", "localhost", 6543, "appdb")

    def test_missing_parts(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("POSTGRES_CONNECTION_STRING", "POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_DATABASE"):
            monkeypatch.delenv(name, raising=False)
        with pytest.raises(ConfigurationError, match="POSTGRES_USER"):
            database_url()


class TestQueries:
    def test_bind_positional(self) -> None:
        sql, binds = bind_positional("SELECT * FROM t WHERE a = $1 AND b = $2", ["x", 3])
        assert sql == "SELECT * FROM t WHERE a = :p1 AND b = :p2"
        assert binds == {"p1": "x", "p2": 3}

    def test_select(self, engine: Engine) -> None:
        result = run_query(engine, "SELECT name, email FROM users WHERE id = $1", [1])
        assert result["rows"] == [{"name": "ann", "email": "ann@example.test"}]
        assert result["rowCount"] == 1
        assert result["command"] == "SELECT"
        assert result["fields"] == [{"name": "name"}, {"name": "email"}]

    def test_insert_commits(self, engine: Engine) -> None:
        result = run_query(engine, "INSERT INTO users (id, name) VALUES ($1, $2)", [2, "bob"])
        assert result["command"] == "INSERT"
        assert result["rowCount"] == 1
        assert run_query(engine, "SELECT count(*) AS n FROM users")["rows"] == [{"n": 2}]

    def test_describe(self, engine: Engine) -> None:
        columns = describe(engine, "users")
        assert [c["column_name"] for c in columns] == ["id", "name", "email"]
        assert columns[1]["is_nullable"] is False
        assert columns[0]["ordinal_position"] == 1

    def test_describe_unknown(self, engine: Engine) -> None:
        with pytest.raises(ValidationError, match="Table 'ghosts' not found."):
            describe(engine, "ghosts")

    def test_list_tables(self, engine: Engine) -> None:
        assert list_tables(engine) == [
            {"table_name": "user_names", "table_type": "VIEW"},
            {"table_name": "users", "table_type": "BASE TABLE"},
        ]


class TestHandlers:
    @pytest.mark.asyncio
    async def test_execute_query(self, engine: Engine) -> None:
        result = json.loads(text_of(await dispatch(HANDLERS, "execute-query", {"query": "SELECT id FROM users"})))
        assert result["rows"] == [{"id": 1}]

    @pytest.mark.asyncio
    async def test_sql_error(self, engine: Engine) -> None:
        with pytest.raises(ExternalServiceError, match="SQL Error: no such table: missing"):
            await dispatch(HANDLERS, "execute-query", {"query": "SELECT * FROM missing"})

    @pytest.mark.asyncio
    async def test_params_must_be_list(self, engine: Engine) -> None:
        with pytest.raises(ValidationError):
            await dispatch(HANDLERS, "execute-query", {"query": "SELECT 1", "params": "1"})

    @pytest.mark.asyncio
    async def test_describe_table(self, engine: Engine) -> None:
        columns = json.loads(text_of(await dispatch(HANDLERS, "describe-table", {"tableName": "users"})))
        assert columns[0]["column_name"] == "id"

    @pytest.mark.asyncio
    async def test_connection(self, engine: Engine) -> None:
        text_out = text_of(await dispatch(HANDLERS, "test-connection", {}))
        assert text_out.startswith("Connection successful! sqlite version: 3.")


class TestResourcesAndPrompts:
    @pytest.mark.asyncio
    async def test_schema_resource(self, engine: Engine) -> None:
        body, mime = await read_route(RESOURCES, "postgresql://schema")
        schema = json.loads(body)
        assert [c["name"] for c in schema["users"]] == ["id", "name", "email"]
        assert mime == "application/json"

    @pytest.mark.asyncio
    async def test_tables_resource(self, engine: Engine) -> None:
        body, _mime = await read_route(RESOURCES, "postgresql://tables")
        assert {"table_name": "users", "table_type": "BASE TABLE"} in json.loads(body)

    def test_query_prompt(self) -> None:
        result = render_prompt(PROMPTS, "query-database", {"question": "How many users?"})
        assert "How many users?" in result.messages[0].content.text
        assert "postgresql://schema" in result.messages[0].content.text
