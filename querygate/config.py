"""Configuration for the gateway.

Two sources feed the gateway. The plugin settings arrive as an untyped
mapping inside the host document and are resolved into a frozen
PoolConfig. The process settings (listen address, endpoint, where the
host document lives) come from the environment through pydantic-settings.
"""
import json
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from querygate.errors import ConfigError
from querygate.logging import get_logger

PLUGIN_NAME = "querygate"

DEFAULT_MAX_IDLE_CONN = 3
DEFAULT_MAX_OPEN_CONN = 10
DEFAULT_CONN_MAX_LIFETIME = 0
# milliseconds
DEFAULT_TIMEOUT = 60000
DEFAULT_DRIVER = "postgresql+asyncpg"

REQUIRED_KEYS = ("server", "port", "username", "password", "table", "tls", "tls-insecure")


class PoolConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    server: str
    port: int
    username: str
    password: SecretStr
    table: str
    tls: bool = False
    tls_insecure: bool = False
    max_idle_conns: int = DEFAULT_MAX_IDLE_CONN
    max_open_conns: int = DEFAULT_MAX_OPEN_CONN
    conn_max_lifetime: int = DEFAULT_CONN_MAX_LIFETIME
    timeout_ms: int = DEFAULT_TIMEOUT
    driver: str = DEFAULT_DRIVER
    database: Optional[str] = None

    @property
    def target_database(self) -> str:
        return self.database or self.table


class ServerSettings(BaseSettings):
    """Process settings, read from QUERYGATE_* variables or a .env file."""

    model_config = SettingsConfigDict(
        env_prefix="QUERYGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = "127.0.0.1"
    port: int = 8765
    endpoint: str = "/query"
    config_file: str = "querygate.json"
    log_level: str = "info"


def coerce_int(value: Any) -> int:
    """Coerce an integer or a float-encoded integer, as JSON decoders produce them."""
    if isinstance(value, bool):
        raise TypeError(type(value).__name__)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise TypeError(type(value).__name__)


def _get_int(config: Mapping[str, Any], key: str, default: int, minimum: int = 0) -> int:
    if key not in config:
        return default
    value = config[key]
    try:
        number = coerce_int(value)
    except TypeError as e:
        get_logger(__name__).error(f"{key} is an unknown type: {e}; setting default")
        return default
    if number < minimum:
        get_logger(__name__).error(f"{key} must be at least {minimum}, got {number}; setting default")
        return default
    return number


def get_max_idle_conn(config: Mapping[str, Any]) -> int:
    return _get_int(config, "max-idle-conn", DEFAULT_MAX_IDLE_CONN)


def get_max_open_conn(config: Mapping[str, Any]) -> int:
    return _get_int(config, "max-open-conn", DEFAULT_MAX_OPEN_CONN)


def get_conn_max_lifetime(config: Mapping[str, Any]) -> int:
    """Connection lifetime in seconds, 0 meaning unlimited."""
    return _get_int(config, "conn-max-lifetime", DEFAULT_CONN_MAX_LIFETIME)


def get_timeout(config: Mapping[str, Any]) -> int:
    """Query timeout in milliseconds."""
    return _get_int(config, "timeout", DEFAULT_TIMEOUT, minimum=1)


def _yes_no(config: Mapping[str, Any], key: str) -> bool:
    value = config[key]
    if isinstance(value, str):
        if value.lower() == "yes":
            return True
        if value.lower() == "no":
            return False
    raise ConfigError(f'{key} should be "yes" or "no"')


def check_args(config: Mapping[str, Any]) -> None:
    """Check that every required plugin setting is present and well formed.

    Raises:
        ConfigError: naming the first missing or malformed setting.
    """
    for key in REQUIRED_KEYS:
        if key not in config:
            raise ConfigError(f"{key} not found in {PLUGIN_NAME} config")
    try:
        coerce_int(config["port"])
    except TypeError as e:
        raise ConfigError(f"port is an unknown type: {e}") from e
    _yes_no(config, "tls")
    _yes_no(config, "tls-insecure")


def resolve_pool_config(config: Optional[Mapping[str, Any]]) -> PoolConfig:
    """Build the immutable PoolConfig from the raw plugin settings.

    Required settings are checked first; optional numeric settings that
    are missing or malformed fall back to their defaults.
    """
    config = config or {}
    check_args(config)
    return PoolConfig(
        server=str(config["server"]),
        port=coerce_int(config["port"]),
        username=str(config["username"]),
        password=SecretStr(str(config["password"])),
        table=str(config["table"]),
        tls=_yes_no(config, "tls"),
        tls_insecure=_yes_no(config, "tls-insecure"),
        max_idle_conns=get_max_idle_conn(config),
        max_open_conns=get_max_open_conn(config),
        conn_max_lifetime=get_conn_max_lifetime(config),
        timeout_ms=get_timeout(config),
        driver=str(config.get("driver", DEFAULT_DRIVER)),
        database=str(config["database"]) if config.get("database") else None,
    )


def load_host_config(path: str) -> dict:
    """Read the JSON host document holding the plugin registration."""
    try:
        with Path(path).open(encoding="utf-8") as f:
            document = json.load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"config file {path} is not valid JSON: {e}") from e
    if not isinstance(document, dict):
        raise ConfigError(f"config file {path} must hold a JSON object")
    return document
