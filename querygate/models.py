import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ClientQuery(BaseModel):
    schema_: str = Field(default="", alias="schema")  # informational only
    query: str = ""
    gettypes: bool = False


class Result(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str = ""
    row_count: int = Field(default=0, alias="count")
    query_timestamp: str = Field(default="", alias="querytimestamp")
    rows: Optional[List[Dict[str, Any]]] = Field(default=None, alias="data")


class ResultWithTypes(Result):
    column_types: Dict[str, str] = Field(default_factory=dict, alias="datatypes")

    def to_wire(self, include_types: bool = True) -> Dict[str, Any]:
        """JSON-ready payload; the type map is left out unless asked for."""
        exclude = None if include_types else {"column_types"}
        return self.model_dump(mode="json", by_alias=True, exclude=exclude)


class HealthResponse(BaseModel):
    status: str  # "healthy", "unhealthy"
    uptime_seconds: float
    connection_count: int
    active_queries: int


def error_result(message: str, timestamp: str) -> Result:
    return Result(success=False, message=message, row_count=0, query_timestamp=timestamp, rows=None)


def rfc3339_nano(ns: Optional[int] = None) -> str:
    """UTC timestamp with nanoseconds, trailing zeros of the fraction trimmed."""
    if ns is None:
        ns = time.time_ns()
    seconds, fraction = divmod(ns, 1_000_000_000)
    stamp = datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    if fraction:
        stamp += "." + f"{fraction:09d}".rstrip("0")
    return stamp + "Z"
