"""Read-only statement gate.

Nothing else in the gateway re-checks the statement kind, so every query
goes through validate_query() before it reaches the backend.
"""
import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from querygate.errors import ValidationError

# Statements that change data or schema
MUTATING_STATEMENTS = (
    exp.Insert,
    exp.Update,
    exp.Delete,
    exp.Merge,
    exp.Create,
    exp.Drop,
    exp.Alter,
    exp.TruncateTable,
)

# Roots sqlglot yields for input that is an expression rather than a statement
EXPRESSION_ROOTS = (exp.Condition, exp.Alias)


def _diagnostic(error: SqlglotError) -> str:
    # ParseError carries structured details; its str() embeds terminal highlighting
    details = getattr(error, "errors", None)
    if details:
        first = details[0]
        return f"{first.get('description')} at line {first.get('line')}, col {first.get('col')}"
    return str(error)


def normalize_query(sql: str) -> str:
    """Undo the percent-escaping some clients apply to single quotes."""
    return sql.replace("%27", "'")


def validate_query(sql: str) -> None:
    """Accept a single SELECT-class statement, reject everything else.

    Raises:
        ValidationError: "Invalid query" when the text does not parse
            or is a bare expression, "Unsupported SQL statement" for
            writes and DDL, including writes nested in a SELECT,
            "Unknown SQL statement" for any other statement kind.
    """
    try:
        statements = [s for s in sqlglot.parse(sql) if s is not None]
    except SqlglotError as e:
        raise ValidationError(f"Invalid query : {_diagnostic(e)}") from e

    if not statements:
        raise ValidationError("Invalid query : empty statement")
    if len(statements) > 1:
        raise ValidationError(
            f"Invalid query : expected a single statement, got {len(statements)}"
        )

    stmt = statements[0]
    if isinstance(stmt, exp.Query):
        # SELECT ... INTO creates a table on most backends
        if stmt.args.get("into") is not None:
            raise ValidationError("Unsupported SQL statement : SelectInto")
        # Data-modifying CTEs hide a write under a SELECT root
        nested = stmt.find(*MUTATING_STATEMENTS)
        if nested is not None:
            raise ValidationError(f"Unsupported SQL statement : {type(nested).__name__}")
        return
    kind = type(stmt).__name__
    if isinstance(stmt, MUTATING_STATEMENTS):
        raise ValidationError(f"Unsupported SQL statement : {kind}")
    if isinstance(stmt, EXPRESSION_ROOTS):
        raise ValidationError("Invalid query : not a statement")
    raise ValidationError(f"Unknown SQL statement : {kind}")
