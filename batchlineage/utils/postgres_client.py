"""PostgreSQL client utilities for the ingestion engine.

Every helper takes the engine explicitly; there is no process-wide cached
connection. A batch run creates one engine and passes it to each component.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

import pandas as pd
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.schema import CreateSchema

from batchlineage.utils.sql_identifiers import validate_identifier

log = logging.getLogger(__name__)

# Postgres caps a statement at 65535 bind parameters
_MAX_BIND_PARAMS = 30000


def create_db_engine(connection_string: str, **kwargs: Any) -> Engine:
    """Create a SQLAlchemy engine for the given connection string.

    Args:
        connection_string: SQLAlchemy URL, e.g.
            ``postgresql+psycopg2://user:pw@host:5432/db``.
        **kwargs: Extra keyword arguments for ``create_engine``.

    Returns:
        SQLAlchemy Engine instance.
    """
    options: Dict[str, Any] = {"pool_pre_ping": True}
    if connection_string.startswith("postgresql"):
        options.update(pool_size=5, max_overflow=10)
    options.update(kwargs)
    engine = create_engine(connection_string, **options)
    log.info("Database engine created for dialect '%s'", engine.dialect.name)
    return engine


@contextmanager
def transaction(engine: Engine) -> Iterator[Connection]:
    """Context manager yielding a connection inside a single transaction."""
    with engine.connect() as conn:
        trans = conn.begin()
        try:
            yield conn
            trans.commit()
        except Exception:
            trans.rollback()
            raise


def execute_query(engine: Engine, sql: str, params: Optional[dict] = None) -> int:
    """Execute a parameterized statement in its own transaction.

    Returns:
        Number of rows affected, as reported by the driver.
    """
    with transaction(engine) as conn:
        result = conn.execute(text(sql), params or {})
        log.debug("Executed query: %s", sql.strip()[:100])
        return result.rowcount


def fetch_all(engine: Engine, sql: str, params: Optional[dict] = None) -> List[Dict[str, Any]]:
    """Execute a query and return all rows as dicts."""
    with engine.connect() as conn:
        rows = conn.execute(text(sql), params or {}).mappings().all()
    return [dict(row) for row in rows]


def fetch_dataframe(engine: Engine, sql: str, params: Optional[dict] = None) -> pd.DataFrame:
    """Execute a SQL query and return results as a pandas DataFrame.

    Args:
        engine: SQLAlchemy engine.
        sql: SQL query string.
        params: Optional query parameters.

    Returns:
        pandas DataFrame with query results.
    """
    with engine.connect() as conn:
        df = pd.read_sql(text(sql), conn, params=params or {})
    log.debug("Fetched DataFrame with %d rows from query: %s", len(df), sql.strip()[:100])
    return df


def bulk_insert(
    engine: Engine,
    df: pd.DataFrame,
    table_name: str,
    schema: str,
) -> int:
    """Append a DataFrame to an existing table.

    Missing values are written as SQL NULL. The target table is expected to
    already match the frame's columns (see ``schema_guard.align``).

    Returns:
        Number of rows inserted.
    """
    if df.empty:
        log.info("No rows to insert into %s.%s", schema, table_name)
        return 0

    frame = df.astype(object).where(df.notna(), None)
    chunksize = max(1, _MAX_BIND_PARAMS // max(1, len(frame.columns)))
    frame.to_sql(
        name=validate_identifier(table_name),
        con=engine,
        schema=validate_identifier(schema),
        if_exists="append",
        index=False,
        method="multi",
        chunksize=min(chunksize, 1000),
    )
    log.info("Inserted %d rows into %s.%s", len(frame), schema, table_name)
    return len(frame)


def ensure_schemas(engine: Engine, schemas: Iterable[str]) -> None:
    """Create the given schemas where the dialect supports them.

    SQLite has no ``CREATE SCHEMA``; schemas there are attached databases and
    must be attached by the caller when the connection is opened.
    """
    schemas = list(schemas)
    if engine.dialect.name == "sqlite":
        return
    with transaction(engine) as conn:
        for schema in schemas:
            conn.execute(CreateSchema(validate_identifier(schema), if_not_exists=True))
    log.info("Ensured schemas exist: %s", ", ".join(schemas))
