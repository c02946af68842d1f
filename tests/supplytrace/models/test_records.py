"""
Tests for Record Models

Tests the RawRecord -> CleanRecord -> FeatureRecord -> AnalyticRow progression.
"""
import math
from datetime import datetime
from decimal import Decimal

import numpy as np
import pandas as pd
import pytest
from pydantic import ValidationError

from src.supplytrace.models.records import (
    AnalyticRow,
    CleanRecord,
    FeatureRecord,
    QualityFlag,
    RawRecord,
    SourceKind,
    is_missing,
    merge_flags,
    to_json_safe,
)
from src.supplytrace.models.results import Forecast, LoadResult, RunReport, RunStatus
from src.supplytrace.errors import LoadError


@pytest.fixture
def raw_record():
    return RawRecord(
        source_kind=SourceKind.SQL,
        source_name="products",
        extracted_at=datetime(2024, 3, 1, 12, 0),
        data={"product_id": "P1", "price": 10.5},
    )


class TestHelpers:
    """Tests for module-level helpers."""

    def test_is_missing(self):
        """None, NaN, NaT and NA are missing; zero and empty string are not."""
        assert is_missing(None)
        assert is_missing(float("nan"))
        assert is_missing(pd.NaT)
        assert is_missing(pd.NA)
        assert not is_missing(0)
        assert not is_missing("")

    def test_merge_flags_sorted_and_unique(self):
        """Flags are merged into a sorted tuple without duplicates."""
        merged = merge_flags((QualityFlag.TYPE_COERCED,), QualityFlag.IMPUTED, QualityFlag.TYPE_COERCED)
        assert merged == (QualityFlag.IMPUTED, QualityFlag.TYPE_COERCED)

    def test_to_json_safe(self):
        """Datetimes, numpy scalars, Decimals and NaN become JSON values."""
        converted = to_json_safe({
            "when": datetime(2024, 1, 2, 3, 4, 5),
            "count": np.int64(3),
            "ratio": np.float64(0.5),
            "flag": np.bool_(True),
            "amount": Decimal("1.25"),
            "gap": float("nan"),
            "kind": SourceKind.STREAM,
            "items": (1, pd.NaT),
        })

        assert converted == {
            "when": "2024-01-02T03:04:05",
            "count": 3,
            "ratio": 0.5,
            "flag": True,
            "amount": 1.25,
            "gap": None,
            "kind": "stream",
            "items": [1, None],
        }


class TestCleanRecord:
    """Tests for CleanRecord construction and evolution."""

    def test_from_raw_keeps_provenance(self, raw_record):
        """Promotion copies source, time and data with no flags."""
        clean = CleanRecord.from_raw(raw_record)

        assert clean.source_kind == SourceKind.SQL
        assert clean.source_name == "products"
        assert clean.data == raw_record.data
        assert clean.quality_flags == ()

    def test_evolve_returns_new_instance(self, raw_record):
        """evolve never mutates the original."""
        clean = CleanRecord.from_raw(raw_record)
        evolved = clean.evolve(
            data={**clean.data, "price": 11.0},
            field_flags={"price": QualityFlag.IMPUTED},
        )

        assert clean.data["price"] == 10.5
        assert evolved.data["price"] == 11.0
        assert evolved.has_flag(QualityFlag.IMPUTED)
        assert evolved.flagged_fields == {"price": (QualityFlag.IMPUTED,)}

    def test_records_are_frozen(self, raw_record):
        """Assigning to a frozen record raises."""
        clean = CleanRecord.from_raw(raw_record)
        with pytest.raises(ValidationError):
            clean.source_name = "other"


class TestAnalyticRow:
    """Tests for AnalyticRow."""

    def test_from_feature_record_merges_fields_and_features(self, raw_record):
        """Payload holds cleaned fields plus features; key is (entity_id, as_of)."""
        clean = CleanRecord.from_raw(raw_record).evolve(flags=[QualityFlag.TYPE_COERCED])
        feature = FeatureRecord(
            clean=clean,
            entity_id="P1",
            as_of=datetime(2024, 3, 1),
            features={"age_days": 10, "avg_transfer_interval": None},
        )

        row = AnalyticRow.from_feature_record(feature, "analytics_products")

        assert row.payload == {"product_id": "P1", "price": 10.5, "age_days": 10, "avg_transfer_interval": None}
        assert row.quality_flags == ("type-coerced",)
        assert row.key == ("P1", datetime(2024, 3, 1))

    def test_feature_value_prefers_features(self, raw_record):
        """FeatureRecord.value looks at derived features before cleaned fields."""
        feature = FeatureRecord(
            clean=CleanRecord.from_raw(raw_record),
            entity_id="P1",
            as_of=datetime(2024, 3, 1),
            features={"price": 99.0},
        )
        assert feature.value("price") == 99.0
        assert feature.value("product_id") == "P1"
        assert feature.value("unknown") is None


class TestResults:
    """Tests for result models."""

    def test_load_result_counts(self, raw_record):
        """attempted and cancelled are derived from the failure list."""
        row = AnalyticRow(table="t", entity_id="P1", as_of=datetime(2024, 1, 1))
        result = LoadResult(
            table="t",
            succeeded=2,
            failed=[(row, LoadError("cancelled")), (row, LoadError("boom"))],
        )
        assert result.attempted == 4
        assert result.cancelled == 1

    def test_run_report_to_dict(self):
        """Report flattens status and timestamps."""
        report = RunReport(
            run_id="abc",
            started=datetime(2024, 1, 1, 0, 0),
            ended=datetime(2024, 1, 1, 0, 5),
            status=RunStatus.DEGRADED,
            per_source_errors={"sensor_events": "no records extracted"},
        )
        summary = report.to_dict()

        assert summary["status"] == "degraded"
        assert summary["ended"] == "2024-01-01T00:05:00"
        assert summary["per_source_errors"] == {"sensor_events": "no records extracted"}

    def test_forecast_rejects_negative_days(self):
        """Forecasts are never negative."""
        with pytest.raises(ValidationError):
            Forecast(predicted_days_until_next_transfer=-1.0)
        assert math.isclose(Forecast(predicted_days_until_next_transfer=0.0).predicted_days_until_next_transfer, 0.0)
