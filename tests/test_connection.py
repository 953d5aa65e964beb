import ssl

import pytest
from sqlalchemy.pool import AsyncAdaptedQueuePool

from querygate.config import PoolConfig
from querygate.connection import (
    build_engine_options,
    build_url,
    open_pool,
)
from querygate.errors import BackendConnectionError, ConfigError


def pool_config(**overrides):
    values = dict(
        server="db.example.lan",
        port=10800,
        username="gateway",
        password="s3cret",
        table="SQL_PUBLIC_ORGANIZATION",
    )
    values.update(overrides)
    return PoolConfig(**values)


class TestBuildUrl:
    def test_target_embeds_server_port_credentials_and_table(self):
        url = build_url(pool_config())

        assert url.drivername == "postgresql+asyncpg"
        assert url.host == "db.example.lan"
        assert url.port == 10800
        assert url.username == "gateway"
        assert url.password == "s3cret"
        assert url.database == "SQL_PUBLIC_ORGANIZATION"

    def test_database_overrides_table(self):
        url = build_url(pool_config(database="analytics"))
        assert url.database == "analytics"

    def test_rendered_target_masks_password(self):
        url = build_url(pool_config())
        assert "s3cret" not in str(url)
        assert "s3cret" not in url.render_as_string(hide_password=True)


class TestEngineOptions:
    def test_default_limits(self):
        options = build_engine_options(pool_config())

        assert options["poolclass"] is AsyncAdaptedQueuePool
        assert options["pool_size"] == 3
        assert options["max_overflow"] == 7
        assert options["pool_recycle"] == -1
        assert "connect_args" not in options

    def test_lifetime_in_seconds(self):
        assert build_engine_options(pool_config(conn_max_lifetime=300))["pool_recycle"] == 300

    def test_unlimited_open_connections(self):
        options = build_engine_options(pool_config(max_open_conns=0))
        assert options["max_overflow"] == -1

    def test_idle_is_clamped_to_open(self):
        options = build_engine_options(pool_config(max_idle_conns=8, max_open_conns=5))
        assert options["pool_size"] == 5
        assert options["max_overflow"] == 0

    def test_zero_idle_keeps_one_connection(self):
        options = build_engine_options(pool_config(max_idle_conns=0, max_open_conns=4))
        assert options["pool_size"] == 1
        assert options["max_overflow"] == 3

    def test_tls_verifies_by_default(self):
        context = build_engine_options(pool_config(tls=True))["connect_args"]["ssl"]
        assert isinstance(context, ssl.SSLContext)
        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname is True

    def test_tls_insecure_skips_verification(self):
        context = build_engine_options(pool_config(tls=True, tls_insecure=True))["connect_args"]["ssl"]
        assert context.verify_mode == ssl.CERT_NONE
        assert context.check_hostname is False


class TestOpenPool:
    @pytest.mark.asyncio
    async def test_missing_setting_is_a_config_error(self, raw_config):
        del raw_config["username"]
        with pytest.raises(ConfigError, match="username not found"):
            await open_pool(raw_config)

    @pytest.mark.asyncio
    async def test_unknown_driver_fails_to_open(self, raw_config):
        raw_config["driver"] = "nosuchdb+nodriver"
        with pytest.raises(BackendConnectionError, match="^failed to open connection: "):
            await open_pool(raw_config)

    @pytest.mark.asyncio
    async def test_unreachable_backend_fails_ping(self, raw_config):
        raw_config["server"] = "127.0.0.1"
        raw_config["port"] = 1
        with pytest.raises(BackendConnectionError, match="^ping failed: "):
            await open_pool(raw_config, ping_timeout=2.0)


class TestConnectionPool:
    @pytest.mark.asyncio
    async def test_ping_answers(self, pool):
        await pool.ping(timeout=2.0)
        assert pool.checked_out() == 0

    @pytest.mark.asyncio
    async def test_connect_checks_out_a_connection(self, pool):
        async with pool.connect():
            assert pool.checked_out() == 1
        assert pool.checked_out() == 0

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, pool):
        await pool.close()
        await pool.close()
        assert pool.closed is True
