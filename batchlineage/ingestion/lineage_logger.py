"""Batch and file lineage logging for the ingestion engine.

Tracks every ingestion run in two governance tables:

* ``batch_log`` holds one row per batch (ingest id, source, declared file
  count, aggregate status);
* ``ingest_file_log`` holds one row per discovered file, created ``pending``
  at registration and moved to ``success`` or ``error`` exactly once.

Each write is its own short transaction so partial progress stays durable.
The batch status is derived only from the file rows: all ``success`` gives
``success``, all ``error`` gives ``error``, anything else ``partial``.
"""

import hashlib
import logging
import os
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Table,
    Text,
    text,
)
from sqlalchemy.engine import Engine

from batchlineage.utils.postgres_client import ensure_schemas, execute_query, fetch_all, transaction
from batchlineage.utils.sql_identifiers import validate_identifier

log = logging.getLogger(__name__)

BATCH_PENDING = "pending"
BATCH_SUCCESS = "success"
BATCH_PARTIAL = "partial"
BATCH_ERROR = "error"

FILE_PENDING = "pending"
FILE_SUCCESS = "success"
FILE_ERROR = "error"


class IngestionError(Exception):
    """Raised when an ingestion operation fails."""


class DuplicateBatchError(IngestionError):
    """Raised when an ingest id has already been registered."""


class SourceDirectoryError(IngestionError):
    """Raised when the incoming directory is missing or holds no files."""


class LineageStateError(IngestionError):
    """Raised when a lineage row is not in the state a transition expects."""


def build_governance_metadata(schema: str = "governance") -> MetaData:
    """Declare the governance tables inside ``schema``."""
    validate_identifier(schema)
    metadata = MetaData(schema=schema)

    Table(
        "batch_log", metadata,
        Column("ingest_id", Text, primary_key=True),
        Column("source_id", Text, nullable=False),
        Column("source_type", Text, nullable=False),
        Column("file_count", Integer, nullable=False),
        Column("files_success", Integer),
        Column("files_error", Integer),
        Column("status", Text, nullable=False),
        Column("error_message", Text),
        Column("batch_started_at_utc", DateTime(timezone=True), nullable=False),
        Column("batch_completed_at_utc", DateTime(timezone=True)),
    )

    Table(
        "ingest_file_log", metadata,
        Column("ingest_file_id", Integer, primary_key=True, autoincrement=True),
        Column("ingest_id", Text, ForeignKey(f"{schema}.batch_log.ingest_id"), nullable=False, index=True),
        Column("file_name", Text, nullable=False),
        Column("file_path", Text),
        Column("lake_table_name", Text),
        Column("file_size_bytes", Integer),
        Column("row_count", Integer),
        Column("checksum", Text),
        Column("load_status", Text, nullable=False),
        Column("error_message", Text),
        Column("logged_at_utc", DateTime(timezone=True), nullable=False),
        Column("completed_at_utc", DateTime(timezone=True)),
    )

    Table(
        "schema_evolution_log", metadata,
        Column("evolution_id", Integer, primary_key=True, autoincrement=True),
        Column("ingest_id", Text),
        Column("table_schema", Text, nullable=False),
        Column("table_name", Text, nullable=False),
        Column("action", Text, nullable=False),
        Column("column_name", Text),
        Column("executed_at_utc", DateTime(timezone=True), nullable=False),
    )

    return metadata


def ensure_lineage_tables(engine: Engine, schema: str = "governance") -> None:
    """Create the governance schema and lineage tables if they do not exist."""
    try:
        ensure_schemas(engine, [schema])
        build_governance_metadata(schema).create_all(engine)
        log.info("Ensured lineage tables exist in schema '%s'", schema)
    except Exception as exc:
        log.error("Failed to create lineage tables: %s", exc)
        raise


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_ingest_id(source_id: str, now: Optional[datetime] = None) -> str:
    """Build a batch identifier of the form ``ING_<source>_<YYYYmmdd_HHMMSS>``."""
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S")
    return f"ING_{source_id}_{stamp}"


def compute_file_checksum(file_path: str, algorithm: str = "sha256") -> str:
    """Compute a hex-digest checksum of a file's raw bytes.

    Args:
        file_path: Path to the file.
        algorithm: Any ``hashlib`` algorithm name (``sha256``, ``md5``...).

    Returns:
        Hex-encoded checksum string.
    """
    h = hashlib.new(algorithm)
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def register_batch(
    engine: Engine,
    ingest_id: str,
    source_id: str,
    source_type: str,
    file_paths: List[str],
    schema: str = "governance",
) -> List[Dict[str, Any]]:
    """Register a batch and one pending lineage row per file.

    Runs in a single transaction: either the batch row and all of its file
    rows exist afterwards, or nothing was written.

    Args:
        engine: SQLAlchemy engine.
        ingest_id: Unique batch identifier.
        source_id: Registered source identifier.
        source_type: Source type partition key.
        file_paths: Discovered files, in processing order.
        schema: Governance schema.

    Returns:
        The pending file rows (``ingest_file_id``, ``file_name``,
        ``file_path``) in registration order.

    Raises:
        DuplicateBatchError: If ``ingest_id`` already exists.
        IngestionError: If ``file_paths`` is empty.
    """
    validate_identifier(schema)
    if not file_paths:
        raise IngestionError(f"Batch '{ingest_id}' has no files to register")

    now = _now()
    with transaction(engine) as conn:
        existing = conn.execute(
            text(f"SELECT 1 FROM {schema}.batch_log WHERE ingest_id = :ingest_id"),
            {"ingest_id": ingest_id},
        ).first()
        if existing is not None:
            raise DuplicateBatchError(f"ingest_id '{ingest_id}' already exists")

        conn.execute(
            text(f"""
                INSERT INTO {schema}.batch_log
                    (ingest_id, source_id, source_type, file_count, status, batch_started_at_utc)
                VALUES
                    (:ingest_id, :source_id, :source_type, :file_count, :status, :now)
            """),
            {
                "ingest_id": ingest_id,
                "source_id": source_id,
                "source_type": source_type,
                "file_count": len(file_paths),
                "status": BATCH_PENDING,
                "now": now,
            },
        )
        conn.execute(
            text(f"""
                INSERT INTO {schema}.ingest_file_log
                    (ingest_id, file_name, file_path, load_status, logged_at_utc)
                VALUES
                    (:ingest_id, :file_name, :file_path, :load_status, :now)
            """),
            [
                {
                    "ingest_id": ingest_id,
                    "file_name": os.path.basename(path),
                    "file_path": os.path.abspath(path),
                    "load_status": FILE_PENDING,
                    "now": now,
                }
                for path in file_paths
            ],
        )
        rows = conn.execute(
            text(f"""
                SELECT ingest_file_id, file_name, file_path
                FROM {schema}.ingest_file_log
                WHERE ingest_id = :ingest_id
                ORDER BY ingest_file_id
            """),
            {"ingest_id": ingest_id},
        ).mappings().all()

    log.info("Batch registered: ingest_id='%s' source='%s' type='%s' files=%d",
             ingest_id, source_id, source_type, len(file_paths))
    return [dict(row) for row in rows]


def _update_pending_file(engine: Engine, ingest_file_id: int, sql: str, params: Dict[str, Any]) -> None:
    params = dict(params, ingest_file_id=ingest_file_id, pending=FILE_PENDING, now=_now())
    updated = execute_query(engine, sql, params=params)
    if updated != 1:
        raise LineageStateError(f"File lineage row {ingest_file_id} is not pending")


def record_file_success(
    engine: Engine,
    ingest_file_id: int,
    lake_table_name: str,
    row_count: int,
    file_size: int,
    checksum: str,
    schema: str = "governance",
) -> None:
    """Mark a pending file lineage row as successfully loaded."""
    validate_identifier(schema)
    sql = f"""
        UPDATE {schema}.ingest_file_log
        SET load_status = :status,
            lake_table_name = :lake_table_name,
            row_count = :row_count,
            file_size_bytes = :file_size,
            checksum = :checksum,
            completed_at_utc = :now
        WHERE ingest_file_id = :ingest_file_id AND load_status = :pending
    """
    _update_pending_file(engine, ingest_file_id, sql, {
        "status": FILE_SUCCESS,
        "lake_table_name": lake_table_name,
        "row_count": row_count,
        "file_size": file_size,
        "checksum": checksum,
    })
    log.info("File lineage %d succeeded: table='%s' rows=%d size=%d",
             ingest_file_id, lake_table_name, row_count, file_size)


def record_file_failure(
    engine: Engine,
    ingest_file_id: int,
    error_message: str,
    lake_table_name: Optional[str] = None,
    schema: str = "governance",
) -> None:
    """Mark a pending file lineage row as failed.

    Numeric fields stay NULL; the lake table is kept when it was resolved
    before the failure.
    """
    validate_identifier(schema)
    sql = f"""
        UPDATE {schema}.ingest_file_log
        SET load_status = :status,
            error_message = :error_message,
            lake_table_name = COALESCE(:lake_table_name, lake_table_name),
            completed_at_utc = :now
        WHERE ingest_file_id = :ingest_file_id AND load_status = :pending
    """
    _update_pending_file(engine, ingest_file_id, sql, {
        "status": FILE_ERROR,
        "error_message": error_message,
        "lake_table_name": lake_table_name,
    })
    log.error("File lineage %d failed: %s", ingest_file_id, error_message)


def derive_batch_status(load_statuses: Iterable[str]) -> str:
    """Aggregate file load statuses into a batch status.

    All ``success`` gives ``success``, all ``error`` gives ``error``,
    any other mix gives ``partial``.
    """
    statuses = set(load_statuses)
    if statuses == {FILE_SUCCESS}:
        return BATCH_SUCCESS
    if statuses == {FILE_ERROR}:
        return BATCH_ERROR
    return BATCH_PARTIAL


def finalize_batch(engine: Engine, ingest_id: str, schema: str = "governance") -> Dict[str, Any]:
    """Close a batch with counts and status derived from its file rows.

    Returns:
        Dict with ``status``, ``n_files``, ``n_success`` and ``n_error``.

    Raises:
        LineageStateError: If the batch does not exist or is already closed.
    """
    validate_identifier(schema)
    with transaction(engine) as conn:
        rows = conn.execute(
            text(f"SELECT load_status FROM {schema}.ingest_file_log WHERE ingest_id = :ingest_id"),
            {"ingest_id": ingest_id},
        ).scalars().all()
        counts = Counter(rows)
        status = derive_batch_status(rows)

        updated = conn.execute(
            text(f"""
                UPDATE {schema}.batch_log
                SET status = :status,
                    files_success = :files_success,
                    files_error = :files_error,
                    batch_completed_at_utc = :now
                WHERE ingest_id = :ingest_id AND status = :pending
            """),
            {
                "status": status,
                "files_success": counts[FILE_SUCCESS],
                "files_error": counts[FILE_ERROR],
                "now": _now(),
                "ingest_id": ingest_id,
                "pending": BATCH_PENDING,
            },
        ).rowcount
        if updated != 1:
            raise LineageStateError(f"Batch '{ingest_id}' does not exist or is already closed")

    if counts[FILE_PENDING]:
        log.warning("Batch '%s' finalized with %d file(s) still pending",
                    ingest_id, counts[FILE_PENDING])
    log.info("Batch finalized: ingest_id='%s' status=%s success=%d error=%d",
             ingest_id, status, counts[FILE_SUCCESS], counts[FILE_ERROR])
    return {
        "status": status,
        "n_files": len(rows),
        "n_success": counts[FILE_SUCCESS],
        "n_error": counts[FILE_ERROR],
    }


def get_batch(engine: Engine, ingest_id: str, schema: str = "governance") -> Optional[Dict[str, Any]]:
    """Return the batch row for ``ingest_id``, or None."""
    validate_identifier(schema)
    rows = fetch_all(
        engine,
        f"SELECT * FROM {schema}.batch_log WHERE ingest_id = :ingest_id",
        params={"ingest_id": ingest_id},
    )
    return rows[0] if rows else None


def get_file_lineage(engine: Engine, ingest_id: str, schema: str = "governance") -> List[Dict[str, Any]]:
    """Return all file lineage rows of a batch in registration order."""
    validate_identifier(schema)
    return fetch_all(
        engine,
        f"""
            SELECT * FROM {schema}.ingest_file_log
            WHERE ingest_id = :ingest_id
            ORDER BY ingest_file_id
        """,
        params={"ingest_id": ingest_id},
    )
