import asyncio
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from querygate.connection import PAGE_SIZE, ConnectionPool
from querygate.errors import TIMEOUT, QueryError, classify_error
from querygate.models import ResultWithTypes
from querygate.validator import validate_query

# Declared type names for PostgreSQL type OIDs found in cursor descriptions
_PG_TYPE_NAMES = {
    16: "BOOLEAN",
    17: "BYTEA",
    20: "BIGINT",
    21: "SMALLINT",
    23: "INTEGER",
    25: "TEXT",
    114: "JSON",
    700: "REAL",
    701: "DOUBLE PRECISION",
    1042: "CHAR",
    1043: "VARCHAR",
    1082: "DATE",
    1083: "TIME",
    1114: "TIMESTAMP",
    1184: "TIMESTAMPTZ",
    1186: "INTERVAL",
    1700: "DECIMAL",
    2950: "UUID",
    3802: "JSONB",
}

# Fallback for drivers that do not declare column types; order matters
# (bool before int, datetime before date)
_VALUE_TYPE_NAMES = (
    (bool, "BOOLEAN"),
    (int, "INTEGER"),
    (float, "DOUBLE"),
    (Decimal, "DECIMAL"),
    (str, "VARCHAR"),
    ((bytes, bytearray, memoryview), "BINARY"),
    (datetime, "TIMESTAMP"),
    (date, "DATE"),
    (time, "TIME"),
    (timedelta, "INTERVAL"),
    (uuid.UUID, "UUID"),
)


def normalize_value(value: Any) -> Any:
    """Render byte sequences as text, pass everything else through."""
    if isinstance(value, memoryview):
        value = value.tobytes()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


def value_type_name(value: Any) -> str:
    if value is None:
        return "NULL"
    for types, name in _VALUE_TYPE_NAMES:
        if isinstance(value, types):
            return name
    return type(value).__name__.upper()


def declared_type_name(dialect_name: str, type_code: Any) -> Optional[str]:
    if isinstance(type_code, str) and type_code:
        return type_code.upper()
    if dialect_name == "postgresql" and isinstance(type_code, int):
        return _PG_TYPE_NAMES.get(type_code)
    return None


def capture_column_types(
    dialect_name: str,
    columns: Sequence[str],
    description: Optional[Sequence[Sequence[Any]]],
    first_row: Sequence[Any],
) -> Dict[str, str]:
    """Type name per column, taken once the first row has been scanned.

    The driver's declared type wins; without one the type is read off the
    scanned value.
    """
    types = {}
    for i, column in enumerate(columns):
        name = None
        if description and i < len(description):
            name = declared_type_name(dialect_name, description[i][1])
        types[column] = name or value_type_name(first_row[i])
    return types


def materialize(conn: Connection, sql: str, timestamp: str) -> ResultWithTypes:
    """Run sql on a sync connection and shape the rows.

    Rows keep cursor order and each row keeps column order.
    """
    try:
        result = conn.execution_options(
            stream_results=True, max_row_buffer=PAGE_SIZE
        ).exec_driver_sql(sql)
    except SQLAlchemyError as e:
        raise QueryError(f"failed sql query {sql}: {e}", sql=sql, kind=classify_error(str(e))) from e

    rows: List[Dict[str, Any]] = []
    column_types: Dict[str, str] = {}
    with result:
        if not result.returns_rows:
            return ResultWithTypes(success=True, row_count=0, query_timestamp=timestamp, rows=rows)
        columns = list(result.keys())
        description = result.cursor.description
        try:
            for row in result:
                values = [normalize_value(v) for v in row]
                rows.append(dict(zip(columns, values)))
                if len(rows) == 1:
                    column_types = capture_column_types(
                        conn.dialect.name, columns, description, row
                    )
        except SQLAlchemyError as e:
            raise QueryError(f"failed to get row: {e}", sql=sql, kind=classify_error(str(e))) from e

    return ResultWithTypes(
        success=True,
        message="",
        row_count=len(rows),
        query_timestamp=timestamp,
        rows=rows,
        column_types=column_types,
    )


class QueryExecutor:
    """Executes read-only queries against the shared connection pool."""

    def __init__(self, pool: ConnectionPool, timeout_ms: int):
        self.pool = pool
        self.timeout_ms = timeout_ms
        self.active_queries = 0

    async def _run(self, sql: str, timestamp: str) -> ResultWithTypes:
        try:
            async with self.pool.connect() as conn:
                return await conn.run_sync(materialize, sql, timestamp)
        except SQLAlchemyError as e:
            raise QueryError(f"failed sql query {sql}: {e}", sql=sql, kind=classify_error(str(e))) from e

    async def execute(self, sql: str, timestamp: str) -> ResultWithTypes:
        """Validate then run sql, bounded by the configured timeout.

        Raises:
            ValidationError: the statement is not a single read query.
            QueryError: execution failed, timed out or a row could not be read.
        """
        validate_query(sql)

        self.active_queries += 1
        try:
            return await asyncio.wait_for(self._run(sql, timestamp), self.timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise QueryError(
                f"failed sql query {sql}: timed out after {self.timeout_ms}ms",
                sql=sql,
                kind=TIMEOUT,
            ) from e
        finally:
            self.active_queries -= 1
