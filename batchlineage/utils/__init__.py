"""Shared utility functions for the ingestion engine."""

from batchlineage.utils.postgres_client import (
    bulk_insert,
    create_db_engine,
    ensure_schemas,
    execute_query,
    fetch_all,
    fetch_dataframe,
    transaction,
)
from batchlineage.utils.logging_config import batch_logging_context, setup_logging

__all__ = [
    "create_db_engine",
    "transaction",
    "execute_query",
    "fetch_all",
    "fetch_dataframe",
    "bulk_insert",
    "ensure_schemas",
    "setup_logging",
    "batch_logging_context",
]
