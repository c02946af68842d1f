"""
Result Models

Outcomes reported by the loader and the orchestrator, and the values the
analysis engines hand to the ingestion gateway and reporting callers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from src.supplytrace.errors import LoadError
from src.supplytrace.models.records import AnalyticRow


@dataclass
class LoadResult:
    """
    Outcome of loading one batch into one analytic table.

    Attributes:
        table: Target table name
        succeeded: Rows upserted
        failed: (row, error) for every row that did not load
    """
    table: str
    succeeded: int = 0
    failed: List[Tuple[AnalyticRow, LoadError]] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.succeeded + len(self.failed)

    @property
    def cancelled(self) -> int:
        return sum(1 for _, error in self.failed if error.message == "cancelled")


class RunStatus(str, Enum):
    """Terminal outcome of a pipeline run."""

    COMPLETED = "completed"
    DEGRADED = "degraded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RunReport:
    """
    Summary of one Extract/Clean/Transform/Load execution.
    """
    run_id: str
    started: datetime
    ended: Optional[datetime] = None
    status: RunStatus = RunStatus.COMPLETED
    records_extracted: int = 0
    records_cleaned: int = 0
    records_loaded: int = 0
    records_failed: int = 0
    records_rejected: int = 0
    duplicates_removed: int = 0
    outliers_removed: int = 0
    per_source_errors: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    load_results: List[LoadResult] = field(default_factory=list)

    def to_dict(self) -> Dict:
        """Flatten into a JSON-friendly dict for logging and persistence."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "started": self.started.isoformat(),
            "ended": self.ended.isoformat() if self.ended else None,
            "records_extracted": self.records_extracted,
            "records_cleaned": self.records_cleaned,
            "records_loaded": self.records_loaded,
            "records_failed": self.records_failed,
            "records_rejected": self.records_rejected,
            "duplicates_removed": self.duplicates_removed,
            "outliers_removed": self.outliers_removed,
            "per_source_errors": dict(self.per_source_errors),
            "error": self.error,
            "tables": {
                result.table: {"succeeded": result.succeeded, "failed": len(result.failed)}
                for result in self.load_results
            },
        }


class AnomalyResult(BaseModel):
    """
    Anomaly decision for one reading.

    Attributes:
        entity_id: Device or product the reading belongs to
        score: Anomaly score, higher = more anomalous
        is_anomaly: score above the threshold fitted at the contamination rate
        explain_vector: Per-feature standardized deviation from the training mean
        model_version: Version of the (scaler, model) pair that scored it
    """

    model_config = ConfigDict(frozen=True)

    entity_id: Optional[str] = None
    score: float
    is_anomaly: bool
    explain_vector: Dict[str, float] = Field(default_factory=dict)
    model_version: Optional[str] = None


class Forecast(BaseModel):
    """
    Lifecycle forecast for one entity.
    """

    model_config = ConfigDict(frozen=True)

    entity_id: Optional[str] = None
    predicted_days_until_next_transfer: float = Field(..., ge=0)
    feature_importances: Dict[str, float] = Field(default_factory=dict)
    model_version: Optional[str] = None
