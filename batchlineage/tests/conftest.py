"""Pytest configuration and shared fixtures for ingestion tests.

Tests run against a file-backed SQLite database. Each lake schema (raw,
staging, governance, reference) is a separate attached database file, and
the pysqlite driver is switched to explicit BEGIN so DDL participates in
transactions the same way it does on PostgreSQL.
"""

import os

import pandas as pd
import pytest
from sqlalchemy import create_engine, event

from batchlineage.config.pipeline_config import IngestionConfig
from batchlineage.ingestion.lineage_logger import ensure_lineage_tables
from batchlineage.ingestion.mapping_resolver import coerce_dictionary

LAKE_SCHEMAS = ("raw", "staging", "governance", "reference")


@pytest.fixture
def engine(tmp_path):
    """SQLite engine with the lake schemas attached."""
    eng = create_engine(f"sqlite:///{tmp_path / 'main.db'}")

    @event.listens_for(eng, "connect")
    def _attach_schemas(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        for schema in LAKE_SCHEMAS:
            path = tmp_path / f"{schema}.db"
            dbapi_connection.execute(f"ATTACH DATABASE '{path}' AS {schema}")

    @event.listens_for(eng, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    yield eng
    eng.dispose()


@pytest.fixture
def lineage_engine(engine):
    """Engine with the governance lineage tables created."""
    ensure_lineage_tables(engine, "governance")
    return engine


@pytest.fixture
def ingestion_config(tmp_path, monkeypatch):
    """Ingestion settings isolated from the caller's environment."""
    for name in list(os.environ):
        if name.startswith("INGEST_"):
            monkeypatch.delenv(name, raising=False)
    return IngestionConfig(raw_root=str(tmp_path / "lake"))


@pytest.fixture
def dictionary():
    """Ingest dictionary with two source types and both rule kinds."""
    rows = [
        # LABS: yearly extracts matched by pattern
        ("LABS", "labs_*", "Patient ID", "labs", "patient_id", True),
        ("LABS", "labs_*", "Test Name", "labs", "test_name", True),
        ("LABS", "labs_*", "Result", "labs", "result_value", True),
        # LABS: exact-named extracts
        ("LABS", "vitals", "Patient ID", "vitals", "patient_id", False),
        ("LABS", "vitals", "Weight (kg)", "vitals", "weight_kg", False),
        ("LABS", "encounters", "Patient ID", "encounters", "patient_id", False),
        ("LABS", "encounters", "Visit Date", "encounters", "visit_date", False),
        # CLAIMS: a different partition with its own encounters table
        ("CLAIMS", "claims_encounters", "Claim ID", "claim_encounters", "claim_id", False),
        ("CLAIMS", "claims_encounters", "Patient ID", "claim_encounters", "patient_id", False),
    ]
    df = pd.DataFrame(rows, columns=[
        "source_type",
        "source_table_name_or_pattern",
        "source_column",
        "lake_table",
        "lake_column",
        "is_wildcard",
    ])
    return coerce_dictionary(df)


@pytest.fixture
def write_file():
    """Write text content to ``directory/name`` and return the path."""

    def _write(directory, name, content):
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(str(directory), name)
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        return path

    return _write


@pytest.fixture
def incoming_dir(tmp_path):
    """Empty incoming directory for one source."""
    path = tmp_path / "lake" / "labs2024" / "incoming"
    path.mkdir(parents=True)
    return str(path)
