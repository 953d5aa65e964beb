import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Mapping, Optional

import pydantic
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from querygate.config import PLUGIN_NAME, ServerSettings, load_host_config
from querygate.connection import PING_TIMEOUT, open_pool
from querygate.errors import CANCELLED, ConfigError, DecodeError, GatewayError, QueryError
from querygate.executor import QueryExecutor
from querygate.logging import get_logger, setup_logging
from querygate.models import ClientQuery, HealthResponse, ResultWithTypes, error_result, rfc3339_nano
from querygate.validator import normalize_query

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
# Seconds between client disconnect checks while a query runs
DISCONNECT_POLL_INTERVAL = 0.5


def decode_query(body: bytes) -> ClientQuery:
    try:
        return ClientQuery.model_validate_json(body)
    except pydantic.ValidationError as e:
        errors = e.errors()
        reason = errors[0]["msg"] if errors else str(e)
        raise DecodeError(f"Invalid request body : {reason}") from e


def propagate_error(query: str, error: GatewayError, timestamp: str) -> JSONResponse:
    """Log a failed request and build the error envelope sent back to the client."""
    get_logger(__name__).error(
        f'{PLUGIN_NAME}: Request: "{query}" at {timestamp}: {error.message}'
    )
    envelope = error_result(error.message, timestamp)
    return JSONResponse(status_code=500, content=envelope.model_dump(mode="json", by_alias=True))


async def run_until_disconnect(request: Request, work: Awaitable[ResultWithTypes], sql: str) -> ResultWithTypes:
    """Await work, cancelling it if the client goes away first."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
            if done:
                return task.result()
            if await request.is_disconnected():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                raise QueryError(f"failed sql query {sql}: client disconnected", sql=sql, kind=CANCELLED)
    finally:
        if not task.done():
            task.cancel()


async def mount(config: Optional[Mapping[str, Any]]) -> Optional[QueryExecutor]:
    """Open the pool for the plugin settings; None when the backend is unusable."""
    log = get_logger(__name__)
    log.info(f"{PLUGIN_NAME}: Initializing connection to backend")
    try:
        pool = await open_pool(config, ping_timeout=PING_TIMEOUT)
    except GatewayError as e:
        log.error(f"{PLUGIN_NAME}: Error initializing backend connection : {e.message}")
        return None
    return QueryExecutor(pool, pool.config.timeout_ms)


def create_app(extra: Mapping[str, Any], endpoint: str = "/query") -> FastAPI:
    """Build the gateway application from a host registration document.

    The document names the plugin and nests its settings under the plugin
    name. A failed mount does not raise: the endpoint then answers every
    request with "Backend is not ready".
    """
    name = extra.get("name")
    if not isinstance(name, str):
        raise ConfigError("wrong config")
    if name != PLUGIN_NAME:
        raise ConfigError(f"unknown register {name}")
    config = extra.get(PLUGIN_NAME)
    if not isinstance(config, Mapping):
        config = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.started_at = time.time()
        app.state.executor = await mount(config)
        try:
            yield
        finally:
            if app.state.executor is not None:
                await app.state.executor.pool.close()

    app = FastAPI(title="Query Gateway", lifespan=lifespan)
    app.state.executor = None
    app.state.started_at = time.time()

    @app.get("/health")
    async def health() -> HealthResponse:
        executor: Optional[QueryExecutor] = app.state.executor
        if executor is None:
            return HealthResponse(
                status="unhealthy",
                uptime_seconds=time.time() - app.state.started_at,
                connection_count=0,
                active_queries=0,
            )
        return HealthResponse(
            status="healthy",
            uptime_seconds=time.time() - app.state.started_at,
            connection_count=executor.pool.checked_out(),
            active_queries=executor.active_queries,
        )

    @app.api_route(endpoint, methods=ALL_METHODS)
    async def execute_query(request: Request) -> Response:
        # Computed once so the response and the logs can be correlated
        timestamp = rfc3339_nano()
        executor: Optional[QueryExecutor] = request.app.state.executor
        if executor is None:
            return PlainTextResponse("Backend is not ready", status_code=500)
        if request.method.upper() != "POST":
            return PlainTextResponse("Only POST method is supported", status_code=500)

        try:
            body = await request.body()
            q = decode_query(body)
        except DecodeError as e:
            return propagate_error("", e, timestamp)

        query = normalize_query(q.query)
        try:
            res = await run_until_disconnect(request, executor.execute(query, timestamp), query)
        except GatewayError as e:
            return propagate_error(query, e, timestamp)

        get_logger(__name__).info(f'{PLUGIN_NAME}: request: "{query}" at {timestamp}')
        return JSONResponse(content=res.to_wire(include_types=q.gettypes))

    return app


def main() -> None:
    settings = ServerSettings()
    setup_logging(settings.log_level)
    app = create_app(load_host_config(settings.config_file), endpoint=settings.endpoint)

    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


# Entry point for manual testing
if __name__ == "__main__":
    main()
