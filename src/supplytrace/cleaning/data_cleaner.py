"""
Data Cleaner

Deduplicates, type-normalizes, imputes and bounds extracted batches.
Each operation takes and returns CleanRecords; batch statistics are computed
on a pandas DataFrame built from the batch.
"""
import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.impute import KNNImputer
from sklearn.preprocessing import StandardScaler

from config.settings import settings
from src.supplytrace.cleaning.profiles import CleaningProfile
from src.supplytrace.errors import CleaningError
from src.supplytrace.models.records import (
    CleanRecord,
    QualityFlag,
    RawRecord,
    is_missing,
    to_json_safe,
)
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)

_TRUE_STRINGS = {"true", "t", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "f", "no", "n", "0"}


@dataclass(frozen=True)
class ScalingParameters:
    """Per-field mean/std fitted by one normalize() call."""
    means: Dict[str, float]
    stds: Dict[str, float]


@dataclass
class OutlierResult:
    """Records kept and records excluded by the IQR rule."""
    kept: List[CleanRecord]
    removed: List[CleanRecord]
    bounds: Dict[str, Tuple[float, float]] = field(default_factory=dict)


@dataclass
class CleaningResult:
    """
    Outcome of cleaning one source batch.

    Attributes:
        records: Clean records ready for the transformer
        duplicates_removed: Exact duplicates dropped
        outliers_removed: Records excluded by the IQR rule
        rejected: Records missing a required field
        scaling: Parameters fitted by normalize, if it ran
    """
    records: List[CleanRecord]
    duplicates_removed: int = 0
    outliers_removed: int = 0
    rejected: int = 0
    scaling: Optional[ScalingParameters] = None


class DataCleaner:
    """
    Cleans raw batches into CleanRecords.

    Order applied by clean(): type validation, category harmonization,
    deduplication, imputation, outlier removal, optional normalization.
    """

    def __init__(self, knn_neighbors: Optional[int] = None, iqr_multiplier: Optional[float] = None):
        self.knn_neighbors = knn_neighbors or settings.knn_neighbors
        self.iqr_multiplier = settings.iqr_multiplier if iqr_multiplier is None else iqr_multiplier
        logger.info(
            "data_cleaner_initialized",
            knn_neighbors=self.knn_neighbors,
            iqr_multiplier=self.iqr_multiplier,
        )

    # ------------------------------------------------------------------
    # Full batch
    # ------------------------------------------------------------------

    def clean(self, raw_records: Sequence[RawRecord], profile: CleaningProfile) -> CleaningResult:
        """
        Clean one source batch according to its profile.

        Args:
            raw_records: Batch from a single extractor call
            profile: Cleaning configuration for that source

        Returns:
            CleaningResult

        Raises:
            CleaningError: Required fields absent from the whole batch or an
                unexpected failure while cleaning
        """
        records = [CleanRecord.from_raw(raw) for raw in raw_records]
        if not records:
            logger.info("cleaning_skipped_empty_batch", source=profile.name)
            return CleaningResult(records=[])

        self._check_schema(records, profile)

        try:
            records, rejected = self._reject_incomplete(records, profile)
            records = self.validate_types(records, profile.expected_schema)
            for category_field, mapping in profile.category_mappings.items():
                records = self.harmonize_categories(records, category_field, mapping)

            before = len(records)
            records = self.remove_duplicates(records)
            duplicates_removed = before - len(records)

            records = self.impute_missing(
                records,
                numeric_fields=profile.numeric_fields or None,
                categorical_fields=profile.categorical_fields or None,
            )

            outliers = self.remove_outliers(records, profile.outlier_fields)
            records = outliers.kept

            scaling = None
            if profile.normalize_fields:
                records, scaling = self.normalize(records, profile.normalize_fields)
        except CleaningError:
            raise
        except Exception as e:
            logger.error("cleaning_failed", source=profile.name, error=str(e), error_type=type(e).__name__)
            raise CleaningError(f"cleaning failed: {e}", source=profile.name) from e

        logger.info(
            "batch_cleaned",
            source=profile.name,
            input_records=len(raw_records),
            output_records=len(records),
            duplicates_removed=duplicates_removed,
            outliers_removed=len(outliers.removed),
            rejected=rejected,
        )

        return CleaningResult(
            records=records,
            duplicates_removed=duplicates_removed,
            outliers_removed=len(outliers.removed),
            rejected=rejected,
            scaling=scaling,
        )

    def _check_schema(self, records: List[CleanRecord], profile: CleaningProfile) -> None:
        present = set()
        for record in records:
            present.update(record.data.keys())

        absent = [name for name in profile.required_fields if name not in present]
        if absent:
            logger.error("schema_drift_detected", source=profile.name, absent_fields=absent)
            raise CleaningError(f"required fields absent from batch: {', '.join(absent)}", source=profile.name)

    @staticmethod
    def _reject_incomplete(
        records: List[CleanRecord],
        profile: CleaningProfile,
    ) -> Tuple[List[CleanRecord], int]:
        kept = [
            record for record in records
            if all(not is_missing(record.data.get(name)) for name in profile.required_fields)
        ]
        rejected = len(records) - len(kept)
        if rejected:
            logger.warning(
                "records_missing_required_fields",
                source=profile.name,
                rejected=rejected,
                required=list(profile.required_fields),
            )
        return kept, rejected

    # ------------------------------------------------------------------
    # Individual operations
    # ------------------------------------------------------------------

    def remove_duplicates(self, records: Sequence[CleanRecord]) -> List[CleanRecord]:
        """
        Drop records whose field values are identical to an earlier record.

        Returns:
            First occurrence of every distinct record, in input order
        """
        seen = set()
        unique: List[CleanRecord] = []
        for record in records:
            key = json.dumps(to_json_safe(record.data), sort_keys=True, default=str)
            if key in seen:
                continue
            seen.add(key)
            unique.append(record)

        logger.info("duplicates_removed", removed=len(records) - len(unique), remaining=len(unique))
        return unique

    def impute_missing(
        self,
        records: Sequence[CleanRecord],
        numeric_fields: Optional[Sequence[str]] = None,
        categorical_fields: Optional[Sequence[str]] = None,
    ) -> List[CleanRecord]:
        """
        Fill numeric gaps by KNN over the batch and categorical gaps by the batch mode.

        A field with no non-missing value in the batch is left empty and
        flagged `missing` on every record.

        Args:
            records: Batch to impute
            numeric_fields: Numeric fields (inferred from dtypes when None)
            categorical_fields: Categorical fields (inferred when None)

        Returns:
            New records with imputed values and flags
        """
        records = list(records)
        if not records:
            return []

        frame = self._to_frame(records)
        if numeric_fields is None:
            numeric_fields = self._infer_numeric(frame)
        if categorical_fields is None:
            categorical_fields = self._infer_categorical(frame, exclude=numeric_fields)

        updates: List[Dict[str, Any]] = [{} for _ in records]
        flags: List[Dict[str, QualityFlag]] = [{} for _ in records]
        empty_fields: List[str] = []

        numeric_present = [name for name in numeric_fields if name in frame.columns]
        usable = []
        for name in numeric_present:
            column = pd.to_numeric(frame[name], errors="coerce")
            if column.notna().sum() == 0:
                empty_fields.append(name)
            else:
                usable.append(name)

        for name in numeric_fields:
            if name not in frame.columns:
                empty_fields.append(name)

        if usable:
            matrix = frame[usable].apply(pd.to_numeric, errors="coerce").astype(float)
            missing_mask = matrix.isna().to_numpy()
            if missing_mask.any():
                imputer = KNNImputer(n_neighbors=self.knn_neighbors)
                filled = imputer.fit_transform(matrix.to_numpy())
                integral = [self._is_integral([record.data.get(name) for record in records]) for name in usable]
                rows, cols = np.nonzero(missing_mask)
                for row, col in zip(rows, cols):
                    value = float(filled[row, col])
                    updates[row][usable[col]] = int(round(value)) if integral[col] else value
                    flags[row][usable[col]] = QualityFlag.IMPUTED

        for name in categorical_fields:
            if name not in frame.columns:
                empty_fields.append(name)
                continue
            present = [value for value in frame[name].tolist() if not is_missing(value)]
            if not present:
                empty_fields.append(name)
                continue
            counts = Counter(present)
            mode_value = sorted(counts.items(), key=lambda item: (-item[1], str(item[0])))[0][0]
            for row, value in enumerate(frame[name].tolist()):
                if is_missing(value):
                    updates[row][name] = mode_value
                    flags[row][name] = QualityFlag.IMPUTED

        result = []
        imputed_count = 0
        for record, update, record_flags in zip(records, updates, flags):
            field_flags = dict(record_flags)
            for name in empty_fields:
                field_flags[name] = QualityFlag.MISSING
            if not update and not field_flags:
                result.append(record)
                continue
            if update:
                imputed_count += 1
            result.append(record.evolve(data={**record.data, **update}, field_flags=field_flags))

        if empty_fields:
            logger.warning("imputation_skipped_empty_fields", fields=sorted(set(empty_fields)))
        logger.info("missing_values_imputed", records_imputed=imputed_count, k=self.knn_neighbors)
        return result

    def handle_missing_values(self, records: Sequence[CleanRecord], **kwargs) -> List[CleanRecord]:
        """Alias of impute_missing."""
        return self.impute_missing(records, **kwargs)

    def remove_outliers(self, records: Sequence[CleanRecord], fields: Sequence[str]) -> OutlierResult:
        """
        Exclude records outside [Q1 - k*IQR, Q3 + k*IQR] on any listed field.

        Bounds for every field are computed over the input batch before any
        record is excluded.
        """
        records = list(records)
        if not records or not fields:
            return OutlierResult(kept=records, removed=[])

        frame = self._to_frame(records)
        bounds: Dict[str, Tuple[float, float]] = {}
        for name in fields:
            if name not in frame.columns:
                continue
            column = pd.to_numeric(frame[name], errors="coerce").dropna()
            if column.empty:
                continue
            q1 = float(column.quantile(0.25))
            q3 = float(column.quantile(0.75))
            iqr = q3 - q1
            bounds[name] = (q1 - self.iqr_multiplier * iqr, q3 + self.iqr_multiplier * iqr)

        kept: List[CleanRecord] = []
        removed: List[CleanRecord] = []
        for record in records:
            if self._is_outlier(record, bounds):
                removed.append(record.evolve(flags=[QualityFlag.OUTLIER_REMOVED]))
            else:
                kept.append(record)

        logger.info(
            "outliers_removed",
            fields=list(fields),
            removed=len(removed),
            remaining=len(kept),
        )
        return OutlierResult(kept=kept, removed=removed, bounds=bounds)

    @staticmethod
    def _is_outlier(record: CleanRecord, bounds: Dict[str, Tuple[float, float]]) -> bool:
        for name, (lower, upper) in bounds.items():
            value = record.data.get(name)
            if is_missing(value):
                continue
            try:
                numeric = float(value)
            except (TypeError, ValueError):
                continue
            if numeric < lower or numeric > upper:
                return True
        return False

    def normalize(
        self,
        records: Sequence[CleanRecord],
        fields: Sequence[str],
    ) -> Tuple[List[CleanRecord], ScalingParameters]:
        """
        Z-score the given fields in place, fitting the scaler on this batch only.

        Returns:
            (scaled records, fitted parameters)
        """
        records = list(records)
        frame = self._to_frame(records)
        fields = [name for name in fields if name in frame.columns]
        if not records or not fields:
            return records, ScalingParameters(means={}, stds={})

        matrix = frame[fields].apply(pd.to_numeric, errors="coerce").astype(float)
        scaler = StandardScaler()
        scaled = scaler.fit_transform(matrix.to_numpy())

        result = []
        for row, record in enumerate(records):
            data = dict(record.data)
            for col, name in enumerate(fields):
                value = scaled[row, col]
                data[name] = None if np.isnan(value) else float(value)
            result.append(record.evolve(data=data))

        parameters = ScalingParameters(
            means={name: float(mean) for name, mean in zip(fields, scaler.mean_)},
            stds={name: float(scale) for name, scale in zip(fields, scaler.scale_)},
        )
        logger.info("fields_normalized", fields=fields)
        return result, parameters

    def harmonize_categories(
        self,
        records: Sequence[CleanRecord],
        field_name: str,
        mapping: Dict[str, str],
    ) -> List[CleanRecord]:
        """Map inconsistent category spellings onto one canonical value."""
        result = []
        changed = 0
        for record in records:
            value = record.data.get(field_name)
            if isinstance(value, str) and value in mapping and mapping[value] != value:
                result.append(record.evolve(data={**record.data, field_name: mapping[value]}))
                changed += 1
            else:
                result.append(record)

        if changed:
            logger.info("categories_harmonized", field=field_name, changed=changed)
        return result

    def validate_types(
        self,
        records: Sequence[CleanRecord],
        expected_schema: Dict[str, str],
    ) -> List[CleanRecord]:
        """
        Coerce fields to the expected types.

        Values that cannot be coerced are set to None and flagged
        `coercion-failed`; the record itself is always kept.
        """
        result = []
        failures = 0
        for record in records:
            data = dict(record.data)
            field_flags: Dict[str, QualityFlag] = {}
            for name, expected in expected_schema.items():
                if name not in data or is_missing(data[name]):
                    continue
                original = data[name]
                try:
                    coerced = coerce_value(original, expected)
                except (TypeError, ValueError) as e:
                    failures += 1
                    data[name] = None
                    field_flags[name] = QualityFlag.COERCION_FAILED
                    logger.warning(
                        "type_coercion_failed",
                        source=record.source_name,
                        field=name,
                        expected=expected,
                        value=repr(original)[:80],
                        error=str(e),
                    )
                    continue
                if type(coerced) is not type(original) or coerced != original:
                    data[name] = coerced
                    field_flags[name] = QualityFlag.TYPE_COERCED

            result.append(record.evolve(data=data, field_flags=field_flags) if field_flags else record)

        if failures:
            logger.warning("type_validation_completed_with_failures", failures=failures)
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_frame(records: Sequence[CleanRecord]) -> pd.DataFrame:
        return pd.DataFrame([record.data for record in records])

    @staticmethod
    def _is_integral(values: List[Any]) -> bool:
        present = [value for value in values if not is_missing(value)]
        return bool(present) and all(
            isinstance(value, (int, np.integer)) and not isinstance(value, bool) for value in present
        )

    @staticmethod
    def _infer_numeric(frame: pd.DataFrame) -> List[str]:
        return [
            name for name in frame.columns
            if pd.api.types.is_numeric_dtype(frame[name]) and not pd.api.types.is_bool_dtype(frame[name])
        ]

    @staticmethod
    def _infer_categorical(frame: pd.DataFrame, exclude: Sequence[str]) -> List[str]:
        categorical = []
        for name in frame.columns:
            if name in exclude:
                continue
            present = [value for value in frame[name].tolist() if not is_missing(value)]
            if present and all(isinstance(value, (str, bool)) for value in present):
                categorical.append(name)
        return categorical


def coerce_value(value: Any, expected: str) -> Any:
    """
    Coerce a single value to int, float, str, bool or datetime.

    Raises:
        ValueError/TypeError: When the value cannot represent the type
    """
    if expected == "float":
        return float(value)
    if expected == "int":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        as_float = float(value)
        if not as_float.is_integer():
            raise ValueError(f"{value!r} is not integral")
        return int(as_float)
    if expected == "str":
        return value if isinstance(value, str) else str(value)
    if expected == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ValueError(f"{value!r} is not a boolean")
    if expected == "datetime":
        if isinstance(value, pd.Timestamp):
            return value.to_pydatetime()
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        if isinstance(value, str):
            parsed = pd.to_datetime(value)
            if is_missing(parsed):
                raise ValueError(f"{value!r} is not a datetime")
            return parsed.to_pydatetime()
        raise TypeError(f"{type(value).__name__} cannot be read as datetime")
    raise ValueError(f"unknown type {expected!r}")
