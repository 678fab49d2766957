"""Batch ingestion of a source's incoming directory.

Control flow for one batch:

1. discover candidate files (pre-flight; a missing or empty directory aborts);
2. register the batch and one pending lineage row per file;
3. ingest files one at a time in discovery order, recording each outcome;
4. finalize the batch status from the lineage rows (always runs);
5. optionally promote the touched raw tables to staging.

Processing is synchronous and single-threaded, so no two ingestions ever
evolve the same raw table concurrently.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from sqlalchemy.engine import Engine

from batchlineage.config.pipeline_config import IngestionConfig
from batchlineage.loaders.staging_promoter import PromotionResult, promote_batch_tables
from batchlineage.utils.logging_config import batch_logging_context
from batchlineage.utils.postgres_client import ensure_schemas
from .file_ingestor import IngestionOutcome, discover_incoming_files, ingest_one_file
from .lineage_logger import (
    SourceDirectoryError,
    ensure_lineage_tables,
    finalize_batch,
    make_ingest_id,
    record_file_failure,
    record_file_success,
    register_batch,
)
from .mapping_resolver import load_ingest_dictionary

log = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Summary of one batch run, handed to the orchestrating step."""

    ingest_id: str
    status: str
    n_files: int
    n_success: int
    n_error: int
    outcomes: List[IngestionOutcome] = field(default_factory=list)
    promotions: List[PromotionResult] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.ingest_id,
            "status": self.status,
            "n_files": self.n_files,
            "n_success": self.n_success,
            "n_error": self.n_error,
        }


def ingest_registered_files(
    engine: Engine,
    ingest_id: str,
    source_type: str,
    file_rows: List[Dict[str, Any]],
    dictionary: pd.DataFrame,
    config: IngestionConfig,
) -> Tuple[List[IngestionOutcome], Dict[str, Any]]:
    """Ingest the registered files of a batch and finalize it.

    Finalization runs even if recording an outcome raises, so the batch
    never stays pending because of a single failure. The interrupting
    exception is logged first and re-raised; if finalizing fails too, its
    error is raised with the original chained as context.

    Returns:
        The per-file outcomes and the finalize summary.
    """
    outcomes: List[IngestionOutcome] = []
    schema = config.governance_schema

    try:
        for row in file_rows:
            log.info("Ingesting file '%s' with source_type='%s'", row["file_name"], source_type)
            outcome = ingest_one_file(
                engine, row["file_path"], source_type, dictionary, config, ingest_id=ingest_id
            )
            if outcome.succeeded:
                record_file_success(
                    engine,
                    row["ingest_file_id"],
                    outcome.lake_table,
                    outcome.row_count,
                    outcome.file_size_bytes,
                    outcome.checksum,
                    schema=schema,
                )
            else:
                record_file_failure(
                    engine,
                    row["ingest_file_id"],
                    outcome.error_message,
                    lake_table_name=outcome.lake_table,
                    schema=schema,
                )
            outcomes.append(outcome)
    except Exception:
        log.exception("Batch '%s' interrupted after %d of %d file(s); finalizing before re-raising",
                      ingest_id, len(outcomes), len(file_rows))
        finalize_batch(engine, ingest_id, schema=schema)
        raise

    summary = finalize_batch(engine, ingest_id, schema=schema)

    return outcomes, summary


def run_batch_ingestion(
    engine: Engine,
    source_id: str,
    source_type: str,
    ingest_id: Optional[str] = None,
    incoming_dir: Optional[str] = None,
    dictionary: Optional[pd.DataFrame] = None,
    type_decisions: Optional[pd.DataFrame] = None,
    config: Optional[IngestionConfig] = None,
) -> BatchResult:
    """Run one ingestion batch for a source.

    Args:
        engine: SQLAlchemy engine shared by every step of the batch.
        source_id: Registered source identifier.
        source_type: Source type partition key for dictionary resolution.
        ingest_id: Batch identifier; generated from ``source_id`` if omitted.
        incoming_dir: Directory to scan; defaults to
            ``<raw_root>/<source_id>/incoming``.
        dictionary: Coerced ingest dictionary; read from the reference
            schema if omitted.
        type_decisions: Coerced type decisions; promotion is skipped when
            ``None`` or empty.
        config: Ingestion settings.

    Returns:
        BatchResult with the final status and per-file outcomes.

    Raises:
        SourceDirectoryError: Missing directory or no candidate files.
        DuplicateBatchError: ``ingest_id`` was already registered.
    """
    config = config or IngestionConfig()
    ingest_id = ingest_id or make_ingest_id(source_id)
    incoming_dir = incoming_dir or config.incoming_dir(source_id)

    with batch_logging_context(ingest_id, source_id, source_type):
        files = discover_incoming_files(incoming_dir, config.file_extension)
        if not files:
            raise SourceDirectoryError(f"No {config.file_extension} files found in {incoming_dir}")

        ensure_lineage_tables(engine, config.governance_schema)
        ensure_schemas(engine, [config.raw_schema])
        if dictionary is None:
            dictionary = load_ingest_dictionary(engine, config.reference_schema, config.dictionary_table)

        file_rows = register_batch(
            engine, ingest_id, source_id, source_type, files, schema=config.governance_schema
        )
        outcomes, summary = ingest_registered_files(
            engine, ingest_id, source_type, file_rows, dictionary, config
        )

        touched = {outcome.lake_table for outcome in outcomes if outcome.succeeded}
        promotions = promote_batch_tables(
            engine, touched, type_decisions, config.raw_schema, config.staging_schema
        )

        log.info("Batch %s complete: status=%s files=%d success=%d error=%d",
                 ingest_id, summary["status"], summary["n_files"],
                 summary["n_success"], summary["n_error"])

    return BatchResult(
        ingest_id=ingest_id,
        status=summary["status"],
        n_files=summary["n_files"],
        n_success=summary["n_success"],
        n_error=summary["n_error"],
        outcomes=outcomes,
        promotions=promotions,
    )
