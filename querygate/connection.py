"""Pooled backend access through a SQLAlchemy async engine.

The pool is built once when the gateway is mounted and shared by every
request. It enforces the idle/open limits itself; callers only borrow a
connection for the duration of one query.
"""
import asyncio
import ssl
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, QueuePool

from querygate.config import PLUGIN_NAME, PoolConfig, resolve_pool_config
from querygate.errors import BackendConnectionError
from querygate.logging import get_logger

# Rows buffered per fetch on streamed cursors
PAGE_SIZE = 10000
# Seconds allowed for the liveness probe at mount time
PING_TIMEOUT = 5.0


def build_url(config: PoolConfig) -> URL:
    """Connection target for the configured driver.

    str() of the returned URL masks the password.
    """
    return URL.create(
        drivername=config.driver,
        username=config.username,
        password=config.password.get_secret_value(),
        host=config.server,
        port=config.port,
        database=config.target_database,
    )


def build_ssl_context(config: PoolConfig) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if config.tls_insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def build_engine_options(config: PoolConfig) -> Dict[str, Any]:
    """Translate the pool limits into create_async_engine() keywords.

    QueuePool reads pool_size=0 as "no limit", so at least one idle
    connection is kept. max-open-conn 0 means unlimited overflow.
    """
    pool_size = max(config.max_idle_conns, 1)
    if config.max_open_conns == 0:
        max_overflow = -1
    else:
        pool_size = min(pool_size, config.max_open_conns)
        max_overflow = config.max_open_conns - pool_size

    options: Dict[str, Any] = {
        "poolclass": AsyncAdaptedQueuePool,
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_recycle": config.conn_max_lifetime or -1,
        "pool_pre_ping": True,
    }
    if config.tls:
        options["connect_args"] = {"ssl": build_ssl_context(config)}
    return options


class ConnectionPool:
    """The shared engine plus the configuration it was built from."""

    def __init__(self, engine: AsyncEngine, config: PoolConfig):
        self.engine = engine
        self.config = config
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        async with self.engine.connect() as conn:
            yield conn

    async def _ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def ping(self, timeout: float = PING_TIMEOUT) -> None:
        try:
            await asyncio.wait_for(self._ping(), timeout)
        except asyncio.TimeoutError as e:
            raise BackendConnectionError(f"ping failed: no answer within {timeout}s") from e
        except Exception as e:
            raise BackendConnectionError(f"ping failed: {e}") from e

    def checked_out(self) -> int:
        pool = self.engine.sync_engine.pool
        if isinstance(pool, QueuePool):
            return pool.checkedout()
        return 0

    async def close(self) -> None:
        """Dispose of every pooled connection. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        await self.engine.dispose()
        get_logger(__name__).info(f"{PLUGIN_NAME}: connection pool closed")


async def open_pool(
    raw_config: Optional[Mapping[str, Any]], ping_timeout: float = PING_TIMEOUT
) -> ConnectionPool:
    """Resolve the plugin settings, open the pool and check the backend answers.

    Raises:
        ConfigError: settings are missing or malformed.
        BackendConnectionError: the engine cannot be created or the ping fails.
    """
    log = get_logger(__name__)
    config = resolve_pool_config(raw_config)
    url = build_url(config)
    log.debug(f"{PLUGIN_NAME}: target = {url.render_as_string(hide_password=True)}")

    try:
        engine = create_async_engine(url, **build_engine_options(config))
    except Exception as e:
        raise BackendConnectionError(f"failed to open connection: {e}") from e

    pool = ConnectionPool(engine, config)
    try:
        await pool.ping(ping_timeout)
    except BackendConnectionError:
        await pool.close()
        raise

    lifetime = config.conn_max_lifetime
    log.info(f"{PLUGIN_NAME}: MaxConnLifetime set to {lifetime}s" if lifetime else
             f"{PLUGIN_NAME}: MaxConnLifetime set to unlimited")
    log.info(f"{PLUGIN_NAME}: MaxIdleConn set to {config.max_idle_conns}")
    log.info(f"{PLUGIN_NAME}: MaxOpenConn set to {config.max_open_conns}")
    log.info(f"{PLUGIN_NAME}: query timeout set to {config.timeout_ms}ms")
    log.info(f"{PLUGIN_NAME}: connection initialized successfully")
    return pool
