"""Shared test fixtures for the gateway."""
import sqlite3
from contextlib import closing

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from querygate.config import PLUGIN_NAME, PoolConfig
from querygate.connection import ConnectionPool


@pytest.fixture
def raw_config():
    """Plugin settings as they appear in the host document."""
    return {
        "server": "db.example.lan",
        "port": 10800,
        "username": "gateway",
        "password": "s3cret",
        "table": "SQL_PUBLIC_ORGANIZATION",
        "tls": "no",
        "tls-insecure": "no",
        "max-idle-conn": 3,
        "max-open-conn": 10,
        "conn-max-lifetime": 0,
        "timeout": 60000,
    }


@pytest.fixture
def host_document(raw_config):
    return {"name": PLUGIN_NAME, PLUGIN_NAME: raw_config}


@pytest.fixture
def db_path(tmp_path):
    """SQLite database with a one-row ORG table and a three-row EMPLOYEE table."""
    path = tmp_path / "gateway.db"
    with closing(sqlite3.connect(path)) as conn:
        conn.execute("CREATE TABLE ORG (ID INTEGER, NAME TEXT)")
        conn.execute("INSERT INTO ORG VALUES (1, 'Acme')")
        conn.execute(
            "CREATE TABLE EMPLOYEE (ID INTEGER, NAME TEXT, SALARY REAL, BADGE BLOB, MANAGER_ID INTEGER)"
        )
        conn.executemany(
            "INSERT INTO EMPLOYEE VALUES (?, ?, ?, ?, ?)",
            [
                (1, "Ada", 5200.5, b"A-001", None),
                (2, "Grace", 4800.0, b"A-002", 1),
                (3, "Linus", 4100.25, b"A-003", 1),
            ],
        )
        conn.execute("CREATE TABLE EMPTY_TABLE (ID INTEGER)")
        conn.commit()
    return path


@pytest.fixture
def sqlite_config():
    return PoolConfig(
        server="localhost",
        port=0,
        username="gateway",
        password="s3cret",
        table="ORG",
        max_idle_conns=2,
        max_open_conns=4,
        timeout_ms=5000,
        driver="sqlite+aiosqlite",
    )


def make_sqlite_pool(db_path, config):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        poolclass=AsyncAdaptedQueuePool,
        pool_size=config.max_idle_conns,
        max_overflow=config.max_open_conns - config.max_idle_conns,
    )
    return ConnectionPool(engine, config)


@pytest_asyncio.fixture
async def pool(db_path, sqlite_config):
    sqlite_pool = make_sqlite_pool(db_path, sqlite_config)
    yield sqlite_pool
    await sqlite_pool.close()


@pytest.fixture
def sqlite_pool_factory(db_path, sqlite_config):
    """Builds a fresh pool on the test database, for code that opens its own."""

    def factory():
        return make_sqlite_pool(db_path, sqlite_config)

    return factory
