"""Batch ingestion modules for the raw lake layer.

Modules:
    mapping_resolver: Resolve file names to lake tables per source type.
    schema_guard: Append-safe, column-adding schema evolution of raw tables.
    file_ingestor: Ingest one file and report its outcome as data.
    lineage_logger: Register batches and record file-level lineage.
    batch_ingestor: Run a whole batch from discovery to finalization.
    reconciliation: Detect and close batches abandoned mid-run.
"""

from .mapping_resolver import (
    coerce_dictionary,
    load_ingest_dictionary,
    resolve_lake_table,
    MappingResolutionError,
    UnknownSourceTypeError,
    UnresolvedMappingError,
    AmbiguousMappingError,
)
from .schema_guard import (
    align,
    get_table_columns,
    SchemaEvolutionError,
)
from .lineage_logger import (
    ensure_lineage_tables,
    register_batch,
    record_file_success,
    record_file_failure,
    finalize_batch,
    derive_batch_status,
    compute_file_checksum,
    make_ingest_id,
    get_batch,
    get_file_lineage,
    IngestionError,
    DuplicateBatchError,
    SourceDirectoryError,
    LineageStateError,
)
from .file_ingestor import (
    discover_incoming_files,
    ingest_one_file,
    IngestionOutcome,
)
from .batch_ingestor import (
    run_batch_ingestion,
    BatchResult,
)
from .reconciliation import (
    find_stale_batches,
    reconcile_stale_batch,
    reconcile_stale_batches,
)

__all__ = [
    # Mapping resolution
    "coerce_dictionary",
    "load_ingest_dictionary",
    "resolve_lake_table",
    "MappingResolutionError",
    "UnknownSourceTypeError",
    "UnresolvedMappingError",
    "AmbiguousMappingError",
    # Schema evolution
    "align",
    "get_table_columns",
    "SchemaEvolutionError",
    # Lineage
    "ensure_lineage_tables",
    "register_batch",
    "record_file_success",
    "record_file_failure",
    "finalize_batch",
    "derive_batch_status",
    "compute_file_checksum",
    "make_ingest_id",
    "get_batch",
    "get_file_lineage",
    "IngestionError",
    "DuplicateBatchError",
    "SourceDirectoryError",
    "LineageStateError",
    # File ingestion
    "discover_incoming_files",
    "ingest_one_file",
    "IngestionOutcome",
    # Batch ingestion
    "run_batch_ingestion",
    "BatchResult",
    # Reconciliation
    "find_stale_batches",
    "reconcile_stale_batch",
    "reconcile_stale_batches",
]
