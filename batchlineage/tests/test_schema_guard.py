"""Tests for the raw table schema guard."""

import pandas as pd
import pytest

from batchlineage.ingestion.schema_guard import (
    ACTION_ADD_COLUMN,
    ACTION_CREATE_TABLE,
    SchemaEvolutionError,
    align,
    get_table_columns,
    table_exists,
)
from batchlineage.utils.postgres_client import bulk_insert, fetch_all, fetch_dataframe


def _evolutions(engine):
    return fetch_all(
        engine,
        "SELECT table_name, action, column_name FROM governance.schema_evolution_log "
        "ORDER BY evolution_id",
    )


class TestAlign:
    """Tests for align."""

    def test_creates_missing_table(self, lineage_engine):
        df = pd.DataFrame({"patient_id": ["p1"], "result_value": ["7.1"]})

        aligned = align(lineage_engine, "labs", df, ingest_id="ING_a")

        assert table_exists(lineage_engine, "labs", "raw")
        assert get_table_columns(lineage_engine, "labs", "raw") == ["patient_id", "result_value"]
        assert list(aligned.columns) == ["patient_id", "result_value"]
        assert _evolutions(lineage_engine) == [
            {"table_name": "labs", "action": ACTION_CREATE_TABLE, "column_name": None},
        ]

    def test_adds_new_column_once(self, lineage_engine):
        align(lineage_engine, "labs", pd.DataFrame({"patient_id": ["p1"]}))
        df = pd.DataFrame({"patient_id": ["p2"], "lab_flag": ["H"]})

        align(lineage_engine, "labs", df)
        align(lineage_engine, "labs", df)

        assert get_table_columns(lineage_engine, "labs", "raw") == ["patient_id", "lab_flag"]
        added = [e for e in _evolutions(lineage_engine) if e["action"] == ACTION_ADD_COLUMN]
        assert added == [{"table_name": "labs", "action": ACTION_ADD_COLUMN, "column_name": "lab_flag"}]

    def test_missing_columns_filled_and_reordered(self, lineage_engine):
        align(lineage_engine, "labs", pd.DataFrame({"patient_id": ["p1"], "test_name": ["hb"]}))
        df = pd.DataFrame({"new_col": ["x"], "patient_id": ["p2"]})

        aligned = align(lineage_engine, "labs", df)

        assert list(aligned.columns) == ["patient_id", "test_name", "new_col"]
        assert aligned.loc[0, "patient_id"] == "p2"
        assert pd.isna(aligned.loc[0, "test_name"])

    def test_aligned_rows_append_with_nulls(self, lineage_engine):
        first = align(lineage_engine, "labs", pd.DataFrame({"patient_id": ["p1"], "test_name": ["hb"]}))
        bulk_insert(lineage_engine, first, "labs", "raw")
        second = align(lineage_engine, "labs", pd.DataFrame({"patient_id": ["p2"]}))
        bulk_insert(lineage_engine, second, "labs", "raw")

        result = fetch_dataframe(lineage_engine, "SELECT * FROM raw.labs ORDER BY patient_id")

        assert list(result["patient_id"]) == ["p1", "p2"]
        assert pd.isna(result.loc[1, "test_name"])

    def test_no_audit_without_governance_schema(self, lineage_engine):
        align(lineage_engine, "labs", pd.DataFrame({"a": ["1"]}), governance_schema=None)
        assert _evolutions(lineage_engine) == []

    def test_rejects_unsafe_column(self, lineage_engine):
        df = pd.DataFrame({'bad"; DROP TABLE x; --': ["1"]})
        with pytest.raises(SchemaEvolutionError, match="Unsafe SQL column name"):
            align(lineage_engine, "labs", df)
        assert not table_exists(lineage_engine, "labs", "raw")

    def test_column_with_leading_digit(self, lineage_engine):
        first = align(lineage_engine, "vaccines", pd.DataFrame({"patient_id": ["p1"]}))
        bulk_insert(lineage_engine, first, "vaccines", "raw")
        second = align(lineage_engine, "vaccines", pd.DataFrame({"patient_id": ["p2"], "2nd_dose": ["2024-02-01"]}))
        bulk_insert(lineage_engine, second, "vaccines", "raw")

        assert get_table_columns(lineage_engine, "vaccines", "raw") == ["patient_id", "2nd_dose"]
        rows = fetch_all(lineage_engine, 'SELECT "2nd_dose" AS d FROM raw.vaccines ORDER BY patient_id')
        assert rows == [{"d": None}, {"d": "2024-02-01"}]

    def test_rejects_unsafe_table(self, lineage_engine):
        with pytest.raises(SchemaEvolutionError, match="Unsafe SQL identifier"):
            align(lineage_engine, "2nd_table", pd.DataFrame({"a": ["1"]}))

    def test_rejects_empty_frame(self, lineage_engine):
        with pytest.raises(SchemaEvolutionError, match="No columns"):
            align(lineage_engine, "labs", pd.DataFrame())

    def test_rejects_duplicate_columns(self, lineage_engine):
        df = pd.DataFrame([["1", "2"]], columns=["a", "a"])
        with pytest.raises(SchemaEvolutionError, match="Duplicate"):
            align(lineage_engine, "labs", df)
