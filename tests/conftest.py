"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

import os
from typing import Any
from uuid import uuid4

import psycopg
import pytest

from tests.utils.engine_db import PsycopgEngineTestDB, install_schema


@pytest.fixture(scope="session")
def pg_conn() -> Any:
    """Session-scoped psycopg connection for integration tests."""
    host = os.getenv("TEST_DB_HOST")
    port = os.getenv("TEST_DB_PORT")
    dbname = os.getenv("TEST_DB_NAME")
    user = os.getenv("TEST_DB_USER")
    password = os.getenv("TEST_DB_PASSWORD")

    if not all([host, port, dbname, user, password]):
        pytest.skip("Integration DB env vars are missing; set TEST_DB_HOST/PORT/NAME/USER/PASSWORD")

    conn = psycopg.connect(
        host=host,
        port=port,
        dbname=dbname,
        user=user,
        password=password,
        autocommit=False,
    )
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def engine_db(pg_conn: Any) -> Any:
    """Engine DB adapter over a throwaway schema, discarded by rollback."""
    install_schema(pg_conn, f"engine_it_{uuid4().hex[:12]}")
    try:
        yield PsycopgEngineTestDB(pg_conn)
    finally:
        pg_conn.rollback()
