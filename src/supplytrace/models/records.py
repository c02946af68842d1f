"""
Record Models

Pydantic models for the record progression through the pipeline:
RawRecord (extracted) -> CleanRecord (cleaned) -> FeatureRecord (derived
features) -> AnalyticRow (loaded). Each stage is a distinct type so a record
cannot reach the loader without passing the cleaner and the transformer.
"""
import math
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict, Field


class SourceKind(str, Enum):
    """Kind of upstream source a record was extracted from."""

    SQL = "sql"
    DOCUMENT = "document"
    STREAM = "stream"


class QualityFlag(str, Enum):
    """Data-quality markers attached by the cleaner."""

    IMPUTED = "imputed"
    OUTLIER_REMOVED = "outlier-removed"
    TYPE_COERCED = "type-coerced"
    MISSING = "missing"
    COERCION_FAILED = "coercion-failed"


def merge_flags(current: Iterable[QualityFlag], *added: QualityFlag) -> Tuple[QualityFlag, ...]:
    """Union of flags as a sorted tuple (stable serialization)."""
    return tuple(sorted(set(current) | set(added), key=lambda flag: flag.value))


def is_missing(value: Any) -> bool:
    """True for None, NaN and pandas NaT."""
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return value is pd.NaT or value is pd.NA


def to_json_safe(value: Any) -> Any:
    """
    Convert a value into something a JSON column accepts.

    Datetimes become ISO strings, numpy scalars become Python scalars,
    NaN/NaT become None; containers are converted recursively.
    """
    if is_missing(value):
        return None
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return value.isoformat()
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return None if np.isnan(value) else float(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_safe(item) for item in value]
    return value


class RawRecord(BaseModel):
    """
    Schema-loose record exactly as extracted from a source.

    Attributes:
        source_kind: sql, document or stream
        source_name: Query label, collection or topic the record came from
        extracted_at: When the extraction call ran
        data: Field name -> raw value
    """

    model_config = ConfigDict(frozen=True)

    source_kind: SourceKind
    source_name: str
    extracted_at: datetime
    data: Dict[str, Any] = Field(default_factory=dict)


class CleanRecord(BaseModel):
    """
    Record after deduplication, imputation and type coercion.

    Built with CleanRecord.from_raw and modified only through evolve, which
    always returns a new instance.
    """

    model_config = ConfigDict(frozen=True)

    source_kind: SourceKind
    source_name: str
    extracted_at: datetime
    data: Dict[str, Any] = Field(default_factory=dict)
    quality_flags: Tuple[QualityFlag, ...] = ()
    flagged_fields: Dict[str, Tuple[QualityFlag, ...]] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: RawRecord) -> "CleanRecord":
        """Promote a raw record into the cleaning stage."""
        return cls(
            source_kind=raw.source_kind,
            source_name=raw.source_name,
            extracted_at=raw.extracted_at,
            data=dict(raw.data),
        )

    def evolve(
        self,
        data: Optional[Dict[str, Any]] = None,
        flags: Iterable[QualityFlag] = (),
        field_flags: Optional[Mapping[str, QualityFlag]] = None,
    ) -> "CleanRecord":
        """Return a copy with replaced data and additional flags."""
        flagged = dict(self.flagged_fields)
        record_flags = list(flags)
        for field, flag in (field_flags or {}).items():
            flagged[field] = merge_flags(flagged.get(field, ()), flag)
            record_flags.append(flag)

        return CleanRecord(
            source_kind=self.source_kind,
            source_name=self.source_name,
            extracted_at=self.extracted_at,
            data=dict(self.data if data is None else data),
            quality_flags=merge_flags(self.quality_flags, *record_flags),
            flagged_fields=flagged,
        )

    def has_flag(self, flag: QualityFlag) -> bool:
        return flag in self.quality_flags


class FeatureRecord(BaseModel):
    """
    Clean record plus the derived analytic features.

    Attributes:
        clean: The single CleanRecord this record was derived from
        entity_id: Product/device/certificate identifier
        as_of: Point in time the features describe
        features: Derived feature name -> value (None when not derivable)
    """

    model_config = ConfigDict(frozen=True)

    clean: CleanRecord
    entity_id: str
    as_of: datetime
    features: Dict[str, Any] = Field(default_factory=dict)

    def value(self, name: str) -> Any:
        """Look up a derived feature first, then the cleaned field."""
        if name in self.features:
            return self.features[name]
        return self.clean.data.get(name)


class AnalyticRow(BaseModel):
    """
    Unit loaded into the analytic store, keyed by (entity_id, as_of).
    """

    model_config = ConfigDict(frozen=True)

    table: str
    entity_id: str
    as_of: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)
    quality_flags: Tuple[str, ...] = ()

    @classmethod
    def from_feature_record(cls, record: FeatureRecord, table: str) -> "AnalyticRow":
        """Build the row for exactly one feature record."""
        payload = to_json_safe({**record.clean.data, **record.features})
        return cls(
            table=table,
            entity_id=record.entity_id,
            as_of=record.as_of,
            payload=payload,
            quality_flags=tuple(flag.value for flag in record.clean.quality_flags),
        )

    @property
    def key(self) -> Tuple[str, datetime]:
        return (self.entity_id, self.as_of)
