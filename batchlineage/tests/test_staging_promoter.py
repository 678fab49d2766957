"""Tests for raw-to-staging promotion."""

import pandas as pd
import pytest
from sqlalchemy import inspect

from batchlineage.loaders import staging_promoter
from batchlineage.loaders.staging_promoter import (
    FALLBACK_TYPE,
    PromotionError,
    build_cast_plan,
    coerce_type_decisions,
    promote_batch_tables,
    promote_table_to_staging,
    read_type_decisions,
    resolve_target_type,
)
from batchlineage.utils.postgres_client import fetch_all
from batchlineage.utils.sql_identifiers import UnsafeIdentifierError


@pytest.fixture
def raw_vitals(engine):
    pd.DataFrame({
        "patient_id": ["p1", "p2"],
        "weight_kg": ["70", "82"],
        "note": ["ok", None],
    }).to_sql("vitals", engine, schema="raw", index=False)
    return engine


@pytest.fixture
def decisions():
    return coerce_type_decisions(pd.DataFrame({
        "table_name": ["vitals", "vitals"],
        "column_name": ["weight_kg", "note"],
        "suggested_type": ["INTEGER", "VARCHAR(50)"],
        "final_type": [None, None],
    }))


class TestResolveTargetType:
    """Tests for resolve_target_type."""

    def test_final_type_wins(self):
        assert resolve_target_type("NUMERIC(10,2)", "INTEGER") == "NUMERIC(10,2)"

    def test_suggested_when_no_final(self):
        assert resolve_target_type(None, "integer") == "integer"
        assert resolve_target_type("   ", "DATE") == "DATE"

    def test_text_fallback(self):
        assert resolve_target_type(None, None) == FALLBACK_TYPE

    def test_multi_word_type(self):
        assert resolve_target_type("timestamp  without time zone") == "timestamp without time zone"

    def test_unsafe_type(self):
        with pytest.raises(UnsafeIdentifierError):
            resolve_target_type("INTEGER); DROP TABLE raw.labs; --")


class TestCoerceTypeDecisions:
    """Tests for coerce_type_decisions and read_type_decisions."""

    def test_aliases_and_normalization(self):
        df = pd.DataFrame({
            "Lake Table Name": ["Vitals"],
            "lake_variable_name": ["Weight (kg)"],
            "suggested_type": ["INTEGER"],
        })
        result = coerce_type_decisions(df)
        assert list(result.columns) == ["table_name", "column_name", "suggested_type", "final_type"]
        assert result.loc[0, "table_name"] == "vitals"
        assert result.loc[0, "column_name"] == "weight_kg"
        assert pd.isna(result.loc[0, "final_type"])

    def test_missing_columns(self):
        with pytest.raises(PromotionError, match="column_name"):
            coerce_type_decisions(pd.DataFrame({"table_name": ["vitals"]}))

    def test_read_csv(self, tmp_path):
        path = tmp_path / "type_decisions.csv"
        path.write_text("table_name,column_name,suggested_type,final_type\nvitals,weight_kg,INTEGER,\n")

        result = read_type_decisions(str(path))

        assert len(result) == 1
        assert pd.isna(result.loc[0, "final_type"])


class TestBuildCastPlan:
    """Tests for build_cast_plan."""

    def test_undecided_columns_stay_text(self, decisions):
        plan = build_cast_plan(["patient_id", "weight_kg", "note"], decisions)
        assert plan == [
            ("patient_id", "TEXT"),
            ("weight_kg", "INTEGER"),
            ("note", "VARCHAR(50)"),
        ]


class TestPromoteTableToStaging:
    """Tests for promote_table_to_staging."""

    def test_creates_typed_copy(self, raw_vitals, decisions):
        result = promote_table_to_staging(raw_vitals, "vitals", decisions)

        assert result.promoted
        assert (result.n_rows, result.n_columns, result.n_typed) == (2, 3, 2)
        assert "CAST" in result.ddl
        rows = fetch_all(
            raw_vitals,
            "SELECT patient_id, weight_kg, typeof(weight_kg) AS t FROM staging.vitals ORDER BY patient_id",
        )
        assert rows == [
            {"patient_id": "p1", "weight_kg": 70, "t": "integer"},
            {"patient_id": "p2", "weight_kg": 82, "t": "integer"},
        ]

    def test_rerun_replaces_previous_copy(self, raw_vitals, decisions):
        promote_table_to_staging(raw_vitals, "vitals", decisions)
        pd.DataFrame({"patient_id": ["p3"], "weight_kg": ["90"], "note": [None]}).to_sql(
            "vitals", raw_vitals, schema="raw", index=False, if_exists="append"
        )

        result = promote_table_to_staging(raw_vitals, "vitals", decisions)

        assert result.n_rows == 3

    def test_missing_raw_table(self, engine, decisions):
        result = promote_table_to_staging(engine, "vitals", decisions)

        assert result.status == "error"
        assert "does not exist" in result.error_message
        assert not inspect(engine).has_table("vitals", schema="staging")

    def test_unsafe_type_rejected_before_ddl(self, raw_vitals):
        bad = coerce_type_decisions(pd.DataFrame({
            "table_name": ["vitals"],
            "column_name": ["weight_kg"],
            "final_type": ["INT; DROP TABLE raw.vitals"],
        }))

        result = promote_table_to_staging(raw_vitals, "vitals", bad)

        assert result.status == "error"
        assert result.ddl is None
        assert inspect(raw_vitals).has_table("vitals", schema="raw")

    def test_failure_keeps_previous_staging_table(self, raw_vitals, decisions, monkeypatch):
        promote_table_to_staging(raw_vitals, "vitals", decisions)
        monkeypatch.setattr(
            staging_promoter, "_build_select_list", lambda conn, plan: "CAST(ghost AS TEXT) AS ghost"
        )

        result = promote_table_to_staging(raw_vitals, "vitals", decisions)

        assert result.status == "error"
        assert result.error_message
        assert fetch_all(raw_vitals, "SELECT COUNT(*) AS n FROM staging.vitals") == [{"n": 2}]


class TestPromoteBatchTables:
    """Tests for promote_batch_tables."""

    def test_skipped_without_decisions(self, raw_vitals):
        assert promote_batch_tables(raw_vitals, ["vitals"], None) == []
        assert promote_batch_tables(raw_vitals, ["vitals"], pd.DataFrame()) == []
        assert not inspect(raw_vitals).has_table("vitals", schema="staging")

    def test_accepts_uncoerced_aliased_decisions(self, raw_vitals):
        aliased = pd.DataFrame({
            "lake_table_name": ["Vitals"],
            "lake_variable_name": ["Weight (kg)"],
            "suggested_type": ["INTEGER"],
        })

        results = promote_batch_tables(raw_vitals, ["vitals"], aliased)

        assert [(r.table, r.status, r.n_typed) for r in results] == [("vitals", "promoted", 1)]

    def test_unusable_decisions_reported_per_table(self, raw_vitals):
        unusable = pd.DataFrame({"table_name": ["vitals"], "suggested_type": ["INTEGER"]})

        results = promote_batch_tables(raw_vitals, ["vitals", "labs"], unusable)

        assert [(r.table, r.status) for r in results] == [("labs", "error"), ("vitals", "error")]
        assert "column_name" in results[0].error_message
        assert not inspect(raw_vitals).has_table("vitals", schema="staging")

    def test_failure_does_not_block_other_tables(self, raw_vitals, decisions):
        results = promote_batch_tables(raw_vitals, ["vitals", "missing", "vitals"], decisions)

        assert [(r.table, r.status) for r in results] == [("missing", "error"), ("vitals", "promoted")]
