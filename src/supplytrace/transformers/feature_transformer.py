"""
Feature Transformer

Derives analytic features from clean records. This module is the only place
feature logic lives: the pipeline, model training and online scoring all go
through FeatureTransformer and vectorize().

All derivations are pure functions of the batch and the explicit `now`
argument, so re-running on identical input yields identical output.
"""
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from src.supplytrace.errors import TransformationError
from src.supplytrace.models.records import CleanRecord, FeatureRecord, is_missing
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)

SECONDS_PER_DAY = 86400.0


def to_naive_utc(value: Any) -> Optional[datetime]:
    """
    Normalize a date-like value to a naive UTC datetime.

    Returns None for missing or unparseable values.
    """
    if is_missing(value):
        return None
    try:
        timestamp = pd.Timestamp(value)
    except (TypeError, ValueError):
        return None
    if timestamp is pd.NaT:
        return None
    if timestamp.tzinfo is not None:
        timestamp = timestamp.tz_convert("UTC").tz_localize(None)
    return timestamp.to_pydatetime()


def _days_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / SECONDS_PER_DAY


def _to_float(value: Any) -> float:
    if is_missing(value):
        return float("nan")
    if isinstance(value, (bool, np.bool_)):
        return 1.0 if value else 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return float("nan")


class FeatureTransformer:
    """
    Turns CleanRecords into FeatureRecords.

    Features (present when their inputs exist on the record):
    - age_days: whole days since manufacturing_date
    - is_expired: age_days > shelf_life_days
    - avg_transfer_interval: mean days between consecutive transfers of the entity
    - days_until_next_transfer: days until the entity's next transfer
    - certification_duration_days: expiration_date - certification_date in days
    - is_certification_valid: expiration_date > now
    """

    def __init__(
        self,
        entity_field: str,
        as_of_field: Optional[str] = None,
        transfer_field: str = "transfer_date",
    ):
        self.entity_field = entity_field
        self.as_of_field = as_of_field
        self.transfer_field = transfer_field

    def transform(self, records: Sequence[CleanRecord], now: datetime) -> List[FeatureRecord]:
        """
        Derive features for a batch.

        Args:
            records: Clean records of one source
            now: Reference time for age/validity features

        Returns:
            One FeatureRecord per input record, same order

        Raises:
            TransformationError: A record has no entity id or a derivation fails
        """
        reference = to_naive_utc(now)
        if reference is None:
            raise TransformationError("transform requires a reference time")

        try:
            transfers = self._transfer_index(records)
            features = [self._derive(record, reference, transfers) for record in records]
        except TransformationError:
            raise
        except Exception as e:
            logger.error("transformation_failed", error=str(e), error_type=type(e).__name__)
            raise TransformationError(f"feature derivation failed: {e}") from e

        logger.info("features_derived", records=len(features), entity_field=self.entity_field)
        return features

    def _transfer_index(self, records: Sequence[CleanRecord]) -> Dict[str, List[datetime]]:
        """Distinct, sorted transfer timestamps per entity across the batch."""
        index: Dict[str, set] = defaultdict(set)
        for record in records:
            entity_id = record.data.get(self.entity_field)
            transfer = to_naive_utc(record.data.get(self.transfer_field))
            if is_missing(entity_id) or transfer is None:
                continue
            index[str(entity_id)].add(transfer)
        return {entity: sorted(stamps) for entity, stamps in index.items()}

    def _derive(
        self,
        record: CleanRecord,
        now: datetime,
        transfers: Dict[str, List[datetime]],
    ) -> FeatureRecord:
        data = record.data
        raw_entity = data.get(self.entity_field)
        if is_missing(raw_entity):
            raise TransformationError(f"record from {record.source_name} has no {self.entity_field}")
        entity_id = str(raw_entity)

        features: Dict[str, Any] = {}

        if "manufacturing_date" in data:
            manufactured = to_naive_utc(data.get("manufacturing_date"))
            age_days = (now - manufactured).days if manufactured is not None else None
            features["age_days"] = age_days
            if "shelf_life_days" in data:
                shelf_life = data.get("shelf_life_days")
                features["is_expired"] = (
                    None if age_days is None or is_missing(shelf_life) else bool(age_days > shelf_life)
                )

        if self.transfer_field in data:
            history = transfers.get(entity_id, [])
            features["avg_transfer_interval"] = self.average_interval(history)
            features["days_until_next_transfer"] = self._days_until_next(
                history, to_naive_utc(data.get(self.transfer_field))
            )

        if "certification_date" in data or "expiration_date" in data:
            certified = to_naive_utc(data.get("certification_date"))
            expires = to_naive_utc(data.get("expiration_date"))
            features["certification_duration_days"] = (
                (expires - certified).days if certified is not None and expires is not None else None
            )
            features["is_certification_valid"] = None if expires is None else bool(expires > now)

        as_of = None
        if self.as_of_field:
            as_of = to_naive_utc(data.get(self.as_of_field))
        if as_of is None:
            as_of = to_naive_utc(record.extracted_at)

        return FeatureRecord(clean=record, entity_id=entity_id, as_of=as_of, features=features)

    @staticmethod
    def average_interval(timestamps: Sequence[datetime]) -> Optional[float]:
        """Mean gap in days between consecutive timestamps; None for fewer than two."""
        if len(timestamps) < 2:
            return None
        ordered = sorted(timestamps)
        gaps = [_days_between(earlier, later) for earlier, later in zip(ordered, ordered[1:])]
        return float(sum(gaps) / len(gaps))

    @staticmethod
    def _days_until_next(history: Sequence[datetime], current: Optional[datetime]) -> Optional[float]:
        if current is None:
            return None
        for stamp in history:
            if stamp > current:
                return _days_between(current, stamp)
        return None


def vectorize(
    record: Union[FeatureRecord, Mapping[str, Any]],
    feature_names: Sequence[str],
) -> np.ndarray:
    """
    Build the numeric model input for one record.

    Derived features take precedence over cleaned fields; booleans map to
    0/1 and anything missing or non-numeric becomes NaN.
    """
    if isinstance(record, FeatureRecord):
        values = [record.value(name) for name in feature_names]
    else:
        values = [record.get(name) for name in feature_names]
    return np.asarray([_to_float(value) for value in values], dtype=float)


def vectorize_many(
    records: Sequence[Union[FeatureRecord, Mapping[str, Any]]],
    feature_names: Sequence[str],
) -> np.ndarray:
    """Stack vectorize() over a batch into an (n_records, n_features) matrix."""
    if not records:
        return np.empty((0, len(feature_names)), dtype=float)
    return np.vstack([vectorize(record, feature_names) for record in records])
