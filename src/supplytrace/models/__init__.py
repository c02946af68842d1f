"""
Data Models

Record progression types and pipeline/engine result types.
"""
from src.supplytrace.models.records import (
    SourceKind,
    QualityFlag,
    RawRecord,
    CleanRecord,
    FeatureRecord,
    AnalyticRow,
)
from src.supplytrace.models.results import (
    LoadResult,
    RunStatus,
    RunReport,
    AnomalyResult,
    Forecast,
)

__all__ = [
    "SourceKind",
    "QualityFlag",
    "RawRecord",
    "CleanRecord",
    "FeatureRecord",
    "AnalyticRow",
    "LoadResult",
    "RunStatus",
    "RunReport",
    "AnomalyResult",
    "Forecast",
]
