"""
Cleaning Profiles

Per-source cleaning configuration: expected schema, identifier and required
fields, outlier and normalization fields, category harmonization.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

NUMERIC_TYPES = ("int", "float")
CATEGORICAL_TYPES = ("str", "bool")


@dataclass(frozen=True)
class CleaningProfile:
    """
    How one source's batches are cleaned.

    Attributes:
        name: Source name used in logs and errors
        expected_schema: field -> one of int, float, str, bool, datetime
        required_fields: Fields that must exist in the batch; records missing them are rejected
        identifier_fields: Fields never imputed
        outlier_fields: Fields checked with the IQR rule
        normalize_fields: Fields z-scored in place (per run)
        category_mappings: field -> {variant: canonical}
    """
    name: str
    expected_schema: Dict[str, str] = field(default_factory=dict)
    required_fields: Tuple[str, ...] = ()
    identifier_fields: Tuple[str, ...] = ()
    outlier_fields: Tuple[str, ...] = ()
    normalize_fields: Tuple[str, ...] = ()
    category_mappings: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @property
    def numeric_fields(self) -> List[str]:
        return [
            name for name, kind in self.expected_schema.items()
            if kind in NUMERIC_TYPES and name not in self.identifier_fields
        ]

    @property
    def categorical_fields(self) -> List[str]:
        return [
            name for name, kind in self.expected_schema.items()
            if kind in CATEGORICAL_TYPES and name not in self.identifier_fields
        ]


PRODUCT_PROFILE = CleaningProfile(
    name="products",
    expected_schema={
        "product_id": "str",
        "name": "str",
        "category": "str",
        "price": "float",
        "quantity": "int",
        "manufacturing_date": "datetime",
        "shelf_life_days": "int",
        "transfer_date": "datetime",
    },
    required_fields=("product_id",),
    identifier_fields=("product_id",),
    outlier_fields=("price", "quantity"),
    category_mappings={
        "category": {"electronic": "Electronics", "electronics": "Electronics", "ELECTRONICS": "Electronics"},
    },
)

CERTIFICATION_PROFILE = CleaningProfile(
    name="certifications",
    expected_schema={
        "_id": "str",
        "certification_id": "str",
        "product_id": "str",
        "certification_body": "str",
        "certification_date": "datetime",
        "expiration_date": "datetime",
        "status": "str",
    },
    required_fields=("product_id",),
    identifier_fields=("_id", "certification_id", "product_id"),
)

# Sensor readings are loaded as-is; outliers here are the anomaly engine's concern.
SENSOR_EVENT_PROFILE = CleaningProfile(
    name="sensor_events",
    expected_schema={
        "device_id": "str",
        "product_id": "str",
        "timestamp": "datetime",
        "temperature": "float",
        "humidity": "float",
        "weight": "float",
        "distance": "float",
        "motion": "bool",
    },
    required_fields=("device_id",),
    identifier_fields=("device_id", "product_id"),
)
