"""pytest fixtures for ephemeral PostgreSQL databases.

Registered through the ``pytest11`` entry point, so installing pgtmp is
enough::

    def test_insert(pgtmp_database):
        pgtmp_database.execute("CREATE TABLE foo (id SERIAL PRIMARY KEY)")

One server is started per test session (claiming a prewarmed directory when
one is available); every test that asks for ``pgtmp_database`` gets its own
freshly created database on it.
"""

from __future__ import annotations

from collections.abc import Iterator

import psycopg
import pytest

from pgtmp.cache import PrewarmCache
from pgtmp.errors import ToolNotFoundError
from pgtmp.server import Server


@pytest.fixture(scope="session")
def pgtmp_server() -> Iterator[Server]:
    """A running server shared by the whole session; skipped without PostgreSQL."""
    cache = PrewarmCache()
    try:
        server = cache.start_server()
    except ToolNotFoundError as e:
        pytest.skip(f"PostgreSQL is not installed: {e}")
    try:
        yield server
    finally:
        server.cleanup()


@pytest.fixture
def pgtmp_database(pgtmp_server: Server) -> Iterator[psycopg.Connection]:
    """A connection to a database nobody else in the session uses."""
    conn = pgtmp_server.new_database()
    try:
        yield conn
    finally:
        conn.close()
