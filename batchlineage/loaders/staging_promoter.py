"""Promote raw all-text lake tables to typed staging tables.

For each table, a parallel ``staging.<table>`` is dropped and recreated as
``SELECT CAST(col AS <type>) ...`` from ``raw.<table>``. The target type of
each column comes from an external type-decision table, in order of
precedence: explicit ``final_type``, then ``suggested_type``, then TEXT.

Usage:
    from batchlineage.loaders.staging_promoter import promote_batch_tables, read_type_decisions

    results = promote_batch_tables(
        engine,
        tables=["labs", "encounters"],
        type_decisions=read_type_decisions("reference/type_decisions.csv"),
    )
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd
from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from batchlineage.utils.naming import normalize_key, normalize_name
from batchlineage.utils.postgres_client import ensure_schemas, fetch_all, transaction
from batchlineage.utils.sql_identifiers import (
    UnsafeIdentifierError,
    qualified_name,
    quote_column,
    validate_identifier,
    validate_type_name,
)

log = logging.getLogger(__name__)

PROMOTED = "promoted"
FAILED = "error"
FALLBACK_TYPE = "TEXT"

TYPE_DECISION_COLUMNS = ["table_name", "column_name", "suggested_type", "final_type"]

_TYPE_DECISION_ALIASES = {
    "lake_table_name": "table_name",
    "lake_variable_name": "column_name",
    "variable": "column_name",
}


class PromotionError(Exception):
    """Raised when type decisions cannot be used for promotion."""


@dataclass
class PromotionResult:
    """Outcome of promoting one raw table."""

    table: str
    status: str
    n_rows: Optional[int] = None
    n_columns: Optional[int] = None
    n_typed: int = 0
    ddl: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def promoted(self) -> bool:
        return self.status == PROMOTED


def coerce_type_decisions(df: pd.DataFrame) -> pd.DataFrame:
    """Normalize a type-decision extract to the canonical column set.

    Raises:
        PromotionError: If table or column name columns are missing.
    """
    frame = df.rename(columns=lambda c: normalize_name(c))
    frame = frame.rename(columns={k: v for k, v in _TYPE_DECISION_ALIASES.items() if v not in frame.columns})

    missing = [c for c in ("table_name", "column_name") if c not in frame.columns]
    if missing:
        raise PromotionError(f"Type decisions are missing columns: {', '.join(missing)}")

    for col in ("suggested_type", "final_type"):
        if col not in frame.columns:
            frame[col] = None

    frame = frame[TYPE_DECISION_COLUMNS].dropna(subset=["table_name", "column_name"]).copy()
    frame["table_name"] = frame["table_name"].map(normalize_key)
    frame["column_name"] = frame["column_name"].map(normalize_name)
    return frame.reset_index(drop=True)


def read_type_decisions(path: str) -> pd.DataFrame:
    """Read a type-decision CSV file."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False, na_values=[""])
    decisions = coerce_type_decisions(df)
    log.info("Loaded %d type decisions from '%s'", len(decisions), path)
    return decisions


def _present(value) -> bool:
    return isinstance(value, str) and value.strip() != ""


def resolve_target_type(final_type=None, suggested_type=None) -> str:
    """Pick the cast type: final decision, then suggestion, then TEXT."""
    if _present(final_type):
        return validate_type_name(final_type)
    if _present(suggested_type):
        return validate_type_name(suggested_type)
    return FALLBACK_TYPE


def build_cast_plan(raw_columns: List[str], decisions: pd.DataFrame) -> List[Tuple[str, str]]:
    """Map each raw column to its target type using one table's decisions."""
    by_column: Dict[str, Tuple] = {}
    for row in decisions.itertuples(index=False):
        by_column.setdefault(row.column_name, (row.final_type, row.suggested_type))

    plan = []
    for column in raw_columns:
        final_type, suggested_type = by_column.get(normalize_name(column), (None, None))
        plan.append((column, resolve_target_type(final_type, suggested_type)))
    return plan


def _build_select_list(conn: Connection, plan: List[Tuple[str, str]]) -> str:
    exprs = []
    for column, target_type in plan:
        quoted = quote_column(conn, column)
        exprs.append(f"CAST({quoted} AS {target_type}) AS {quoted}")
    return ",\n       ".join(exprs)


def promote_table_to_staging(
    engine: Engine,
    table: str,
    type_decisions: pd.DataFrame,
    raw_schema: str = "raw",
    staging_schema: str = "staging",
) -> PromotionResult:
    """Recreate ``staging.<table>`` as a typed copy of ``raw.<table>``.

    The drop and create run in one transaction, so a failure leaves any
    previous staging table untouched. Failures are returned, not raised.

    Args:
        engine: SQLAlchemy engine.
        table: Raw lake table to promote.
        type_decisions: Coerced type-decision table.
        raw_schema: Schema holding the raw table.
        staging_schema: Schema receiving the typed table.

    Returns:
        PromotionResult with row/column counts and the executed DDL.
    """
    table = normalize_key(table)

    try:
        validate_identifier(table)
        if not inspect(engine).has_table(table, schema=raw_schema):
            return PromotionResult(table, FAILED, error_message=f"{raw_schema}.{table} does not exist")

        raw_columns = [col["name"] for col in inspect(engine).get_columns(table, schema=raw_schema)]
        if not raw_columns:
            return PromotionResult(table, FAILED, error_message=f"{raw_schema}.{table} has no columns")

        decisions = type_decisions[type_decisions["table_name"] == table]
        plan = build_cast_plan(raw_columns, decisions)
        n_typed = sum(1 for _, target in plan if target.upper() != FALLBACK_TYPE)
        staging_table = qualified_name(engine, staging_schema, table)
    except (UnsafeIdentifierError, SQLAlchemyError) as exc:
        log.warning("Staging promotion of '%s' rejected: %s", table, exc)
        return PromotionResult(table, FAILED, error_message=str(exc))

    ddl = None
    try:
        with transaction(engine) as conn:
            ddl = (
                f"CREATE TABLE {staging_table} AS\n"
                f"SELECT {_build_select_list(conn, plan)}\n"
                f"  FROM {qualified_name(conn, raw_schema, table)}"
            )
            conn.execute(text(f"DROP TABLE IF EXISTS {staging_table}"))
            conn.execute(text(ddl))
        n_rows = fetch_all(engine, f"SELECT COUNT(*) AS n FROM {staging_table}")[0]["n"]
    except (UnsafeIdentifierError, SQLAlchemyError) as exc:
        log.warning("Staging promotion of '%s' failed: %s", table, exc)
        return PromotionResult(
            table, FAILED, n_columns=len(plan), n_typed=n_typed, ddl=ddl, error_message=str(exc)
        )

    log.info("Promoted %s.%s -> %s.%s (%d rows, %d/%d typed)",
             raw_schema, table, staging_schema, table, n_rows, n_typed, len(plan))
    return PromotionResult(
        table, PROMOTED, n_rows=int(n_rows), n_columns=len(plan), n_typed=n_typed, ddl=ddl
    )


def promote_batch_tables(
    engine: Engine,
    tables: Iterable[str],
    type_decisions: Optional[pd.DataFrame],
    raw_schema: str = "raw",
    staging_schema: str = "staging",
) -> List[PromotionResult]:
    """Promote every table touched by a batch.

    Skipped (empty result) when no type decisions are supplied. Decisions
    are coerced first, so aliased extracts are accepted; decisions that
    cannot be coerced give an error result for every table. A failing table
    does not stop the remaining ones.
    """
    if type_decisions is None or type_decisions.empty:
        log.info("No type decisions supplied; skipping staging promotion")
        return []

    tables = sorted({normalize_key(t) for t in tables})
    if not tables:
        return []

    try:
        type_decisions = coerce_type_decisions(type_decisions)
    except PromotionError as exc:
        log.warning("Staging promotion skipped, unusable type decisions: %s", exc)
        return [PromotionResult(table, FAILED, error_message=str(exc)) for table in tables]

    ensure_schemas(engine, [staging_schema])
    log.info("Promoting %d table(s) to %s", len(tables), staging_schema)
    return [
        promote_table_to_staging(engine, table, type_decisions, raw_schema, staging_schema)
        for table in tables
    ]
