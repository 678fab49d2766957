"""Detection and reconciliation of abandoned batches.

A process that dies mid-batch leaves its batch and some file rows
``pending`` forever. These helpers find such batches by age and close them
through the normal finalizer, after marking their leftover file rows as
errors.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine

from batchlineage.utils.postgres_client import execute_query, fetch_all
from batchlineage.utils.sql_identifiers import validate_identifier
from .lineage_logger import BATCH_PENDING, FILE_ERROR, FILE_PENDING, finalize_batch

log = logging.getLogger(__name__)

DEFAULT_REASON = "abandoned: batch did not complete before the stale threshold"


def find_stale_batches(
    engine: Engine,
    older_than: timedelta,
    schema: str = "governance",
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Return pending batches started more than ``older_than`` ago.

    Args:
        engine: SQLAlchemy engine.
        older_than: Age after which a pending batch counts as stale.
        schema: Governance schema.
        now: Reference time (defaults to current UTC time).

    Returns:
        Batch rows (``ingest_id``, ``source_id``, ``batch_started_at_utc``),
        oldest first.
    """
    validate_identifier(schema)
    cutoff = (now or datetime.now(timezone.utc)) - older_than
    rows = fetch_all(
        engine,
        f"""
            SELECT ingest_id, source_id, batch_started_at_utc
            FROM {schema}.batch_log
            WHERE status = :pending AND batch_started_at_utc < :cutoff
            ORDER BY batch_started_at_utc
        """,
        params={"pending": BATCH_PENDING, "cutoff": cutoff.isoformat()},
    )
    if rows:
        log.warning("Found %d stale batch(es) older than %s", len(rows), older_than)
    return rows


def reconcile_stale_batch(
    engine: Engine,
    ingest_id: str,
    reason: str = DEFAULT_REASON,
    schema: str = "governance",
) -> Dict[str, Any]:
    """Fail the pending file rows of a batch and finalize it.

    Returns:
        The finalize summary (``status``, ``n_files``, ``n_success``,
        ``n_error``) plus ``n_abandoned``.
    """
    validate_identifier(schema)
    abandoned = execute_query(
        engine,
        f"""
            UPDATE {schema}.ingest_file_log
            SET load_status = :error,
                error_message = :reason,
                completed_at_utc = :now
            WHERE ingest_id = :ingest_id AND load_status = :pending
        """,
        params={
            "error": FILE_ERROR,
            "reason": reason,
            "now": datetime.now(timezone.utc).isoformat(),
            "ingest_id": ingest_id,
            "pending": FILE_PENDING,
        },
    )
    log.warning("Reconciling batch '%s': %d pending file(s) marked as error", ingest_id, abandoned)
    summary = finalize_batch(engine, ingest_id, schema=schema)
    summary["n_abandoned"] = abandoned
    return summary


def reconcile_stale_batches(
    engine: Engine,
    older_than: timedelta,
    schema: str = "governance",
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Find and reconcile every stale batch."""
    results = []
    for batch in find_stale_batches(engine, older_than, schema=schema, now=now):
        summary = reconcile_stale_batch(engine, batch["ingest_id"], schema=schema)
        results.append(dict(summary, ingest_id=batch["ingest_id"]))
    return results
