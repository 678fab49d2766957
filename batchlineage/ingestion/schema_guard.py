"""Append-safe schema evolution for raw lake tables.

Raw tables are all-text and all-nullable. Before every append the incoming
frame and the destination table are reconciled:

* a missing table is created from the frame's columns;
* incoming columns the table lacks are added as nullable TEXT columns;
* table columns the frame lacks are filled with NULL in the frame;
* the frame is reordered to the table's column order.

Columns are never dropped or retyped. Every DDL statement is recorded in the
governance ``schema_evolution_log`` table in the same transaction.

Two ingestions evolving the same table at once is not supported; callers
serialize writes per destination table.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

import pandas as pd
from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from batchlineage.utils.postgres_client import transaction
from batchlineage.utils.sql_identifiers import (
    UnsafeIdentifierError,
    qualified_name,
    quote_column,
    validate_column_name,
    validate_identifier,
)

log = logging.getLogger(__name__)

ACTION_CREATE_TABLE = "create_table"
ACTION_ADD_COLUMN = "add_column"


class SchemaEvolutionError(Exception):
    """Raised when a raw table cannot be made compatible with incoming rows."""


def table_exists(engine: Engine, table: str, schema: str = "raw") -> bool:
    """Return True if ``schema.table`` exists."""
    return inspect(engine).has_table(table, schema=schema)


def get_table_columns(bind, table: str, schema: str = "raw") -> List[str]:
    """Return a table's column names in ordinal order."""
    return [col["name"] for col in inspect(bind).get_columns(table, schema=schema)]


def _record_evolution(
    conn: Connection,
    governance_schema: Optional[str],
    ingest_id: Optional[str],
    schema: str,
    table: str,
    action: str,
    column: Optional[str] = None,
) -> None:
    if governance_schema is None:
        return
    conn.execute(
        text(f"""
            INSERT INTO {validate_identifier(governance_schema)}.schema_evolution_log
                (ingest_id, table_schema, table_name, action, column_name, executed_at_utc)
            VALUES
                (:ingest_id, :table_schema, :table_name, :action, :column_name, :now)
        """),
        {
            "ingest_id": ingest_id,
            "table_schema": schema,
            "table_name": table,
            "action": action,
            "column_name": column,
            "now": datetime.now(timezone.utc).isoformat(),
        },
    )


def _create_table(conn: Connection, schema: str, table: str, columns: List[str]) -> None:
    column_defs = ", ".join(f"{quote_column(conn, col)} TEXT" for col in columns)
    conn.execute(text(f"CREATE TABLE {qualified_name(conn, schema, table)} ({column_defs})"))


def _add_column(conn: Connection, schema: str, table: str, column: str) -> None:
    conn.execute(text(
        f"ALTER TABLE {qualified_name(conn, schema, table)} "
        f"ADD COLUMN {quote_column(conn, column)} TEXT"
    ))


def align(
    engine: Engine,
    table: str,
    df: pd.DataFrame,
    schema: str = "raw",
    ingest_id: Optional[str] = None,
    governance_schema: Optional[str] = "governance",
) -> pd.DataFrame:
    """Make ``schema.table`` compatible with ``df`` and return aligned rows.

    Args:
        engine: SQLAlchemy engine.
        table: Destination lake table.
        df: Incoming rows (all text).
        schema: Raw schema holding the table.
        ingest_id: Batch identifier recorded with each evolution.
        governance_schema: Schema of ``schema_evolution_log``; ``None``
            disables the audit record.

    Returns:
        DataFrame with exactly the table's columns, in table order.

    Raises:
        SchemaEvolutionError: If identifiers are unsafe, the frame has no
            columns, or the DDL fails.
    """
    incoming = [str(col) for col in df.columns]
    if not incoming:
        raise SchemaEvolutionError(f"No columns to write to {schema}.{table}")
    if len(set(incoming)) != len(incoming):
        raise SchemaEvolutionError(f"Duplicate columns in rows for {schema}.{table}")

    try:
        validate_identifier(schema)
        validate_identifier(table)
        for name in incoming:
            validate_column_name(name)

        with transaction(engine) as conn:
            insp = inspect(conn)
            if not insp.has_table(table, schema=schema):
                _create_table(conn, schema, table, incoming)
                _record_evolution(conn, governance_schema, ingest_id, schema, table, ACTION_CREATE_TABLE)
                log.info("Created raw table %s.%s with %d columns", schema, table, len(incoming))
                columns = incoming
            else:
                existing = get_table_columns(conn, table, schema)
                added = [col for col in incoming if col not in existing]
                for col in added:
                    _add_column(conn, schema, table, col)
                    _record_evolution(conn, governance_schema, ingest_id, schema, table, ACTION_ADD_COLUMN, col)
                    log.warning("Schema evolution: added column '%s' to %s.%s", col, schema, table)
                columns = existing + added
    except UnsafeIdentifierError as exc:
        raise SchemaEvolutionError(str(exc)) from exc
    except SQLAlchemyError as exc:
        raise SchemaEvolutionError(f"Failed to evolve {schema}.{table}: {exc}") from exc

    missing = [col for col in columns if col not in incoming]
    if missing:
        log.info("Filling %d missing column(s) of %s.%s with NULL: %s",
                 len(missing), schema, table, ", ".join(missing))
    return df.reindex(columns=columns)
