"""Single-file ingestion into the raw lake layer.

A file is resolved against the ingest dictionary, read as all-text rows,
renamed to lake column names, aligned with its destination table by the
schema guard and appended. The result is always an ``IngestionOutcome``:
failures are returned as data, never raised, so one bad file cannot abort
the surrounding batch.
"""

import glob as globmod
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from batchlineage.config.pipeline_config import IngestionConfig
from batchlineage.utils.naming import normalize_name
from batchlineage.utils.postgres_client import bulk_insert
from batchlineage.utils.sql_identifiers import UnsafeIdentifierError
from .lineage_logger import FILE_ERROR, FILE_SUCCESS, SourceDirectoryError, compute_file_checksum
from .mapping_resolver import MappingResolutionError, TableResolution, resolve_lake_table
from .schema_guard import SchemaEvolutionError, align

log = logging.getLogger(__name__)

_READ_ERRORS = (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError)
_WRITE_ERRORS = (SchemaEvolutionError, SQLAlchemyError, UnsafeIdentifierError)


@dataclass
class IngestionOutcome:
    """Result of ingesting one file."""

    file_path: str
    status: str
    lake_table: Optional[str] = None
    row_count: Optional[int] = None
    file_size_bytes: Optional[int] = None
    checksum: Optional[str] = None
    error_message: Optional[str] = None
    derived_values: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == FILE_SUCCESS

    @classmethod
    def failure(cls, file_path: str, message: str, lake_table: Optional[str] = None) -> "IngestionOutcome":
        return cls(file_path=file_path, status=FILE_ERROR, lake_table=lake_table, error_message=message)


def discover_incoming_files(directory: str, extension: str = ".csv") -> List[str]:
    """List candidate files in ``directory``, non-recursively and sorted.

    Only regular files with the given extension (case-insensitive) are
    returned; anything else is skipped without being logged as lineage.

    Raises:
        SourceDirectoryError: If the directory does not exist.
    """
    if not os.path.isdir(directory):
        raise SourceDirectoryError(f"Incoming directory does not exist: {directory}")

    ext = extension.lower()
    files = []
    for path in sorted(globmod.glob(os.path.join(globmod.escape(directory), "*"))):
        if not os.path.isfile(path):
            continue
        if os.path.splitext(path)[1].lower() != ext:
            log.debug("Skipping non-%s file: %s", ext, os.path.basename(path))
            continue
        files.append(path)

    log.info("Found %d %s file(s) in '%s'", len(files), ext, directory)
    return files


def read_raw_file(file_path: str) -> pd.DataFrame:
    """Read a delimited file with every column as text.

    No type inference happens here; empty cells become null and everything
    else is kept verbatim.
    """
    return pd.read_csv(
        file_path,
        dtype=str,
        keep_default_na=False,
        na_values=[""],
        encoding="utf-8",
    )


def apply_rename_plan(df: pd.DataFrame, resolution: TableResolution) -> pd.DataFrame:
    """Rename file columns to lake columns according to a resolution.

    Headers are normalized with the same function used for the dictionary's
    source columns. Lake columns absent from the file are filled with null,
    unmapped file columns are dropped and derived values are injected.
    """
    frame = df.copy()
    frame.columns = [normalize_name(col) for col in df.columns]
    frame = frame.loc[:, ~frame.columns.duplicated()]

    out = pd.DataFrame(index=frame.index)
    for lake_column, source_column in resolution.column_map:
        if source_column is not None and source_column in frame.columns:
            out[lake_column] = frame[source_column]
        else:
            out[lake_column] = None

    for column, value in resolution.derived_values.items():
        out[column] = value

    mapped = {source for _, source in resolution.column_map}
    dropped = [col for col in frame.columns if col not in mapped]
    if dropped:
        log.debug("Dropping %d unmapped column(s) for '%s': %s",
                  len(dropped), resolution.lake_table, ", ".join(dropped))
    return out.reset_index(drop=True)


def ingest_one_file(
    engine: Engine,
    file_path: str,
    source_type: str,
    dictionary: pd.DataFrame,
    config: Optional[IngestionConfig] = None,
    ingest_id: Optional[str] = None,
) -> IngestionOutcome:
    """Ingest a single file into its raw lake table.

    Args:
        engine: SQLAlchemy engine.
        file_path: Path to the incoming file.
        source_type: Source type partition used for resolution.
        dictionary: Coerced ingest dictionary.
        config: Ingestion settings (schemas, checksum algorithm...).
        ingest_id: Batch identifier, recorded with schema evolutions.

    Returns:
        IngestionOutcome. On success it carries the lake table, row count,
        file size and checksum; on failure an error message prefixed with
        its category and, when known, the lake table.
    """
    config = config or IngestionConfig()
    lake_table = None

    try:
        try:
            resolution = resolve_lake_table(
                dictionary, source_type, file_path, config.derived_year_column
            )
        except MappingResolutionError as exc:
            return IngestionOutcome.failure(file_path, f"unresolved mapping: {exc}")

        lake_table = resolution.lake_table

        try:
            raw = read_raw_file(file_path)
            file_size = os.path.getsize(file_path)
            checksum = compute_file_checksum(file_path, config.checksum_algorithm)
        except _READ_ERRORS as exc:
            return IngestionOutcome.failure(file_path, f"read error: {exc}", lake_table)

        rows = apply_rename_plan(raw, resolution)

        try:
            aligned = align(
                engine,
                lake_table,
                rows,
                schema=config.raw_schema,
                ingest_id=ingest_id,
                governance_schema=config.governance_schema,
            )
            row_count = bulk_insert(engine, aligned, lake_table, config.raw_schema)
        except _WRITE_ERRORS as exc:
            return IngestionOutcome.failure(file_path, f"write error: {exc}", lake_table)

    except Exception as exc:
        log.exception("Unexpected failure ingesting '%s'", file_path)
        return IngestionOutcome.failure(file_path, f"unexpected error: {exc}", lake_table)

    log.info("File ingested: %s -> %s.%s (%d rows)",
             os.path.basename(file_path), config.raw_schema, lake_table, row_count)
    return IngestionOutcome(
        file_path=file_path,
        status=FILE_SUCCESS,
        lake_table=lake_table,
        row_count=row_count,
        file_size_bytes=file_size,
        checksum=checksum,
        derived_values=dict(resolution.derived_values),
    )
