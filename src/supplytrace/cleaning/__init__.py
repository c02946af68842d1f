"""
Cleaning Package

Deduplication, imputation, outlier removal, normalization and type validation.
"""
from src.supplytrace.cleaning.data_cleaner import (
    DataCleaner,
    CleaningResult,
    OutlierResult,
    ScalingParameters,
    coerce_value,
)
from src.supplytrace.cleaning.profiles import (
    CleaningProfile,
    PRODUCT_PROFILE,
    CERTIFICATION_PROFILE,
    SENSOR_EVENT_PROFILE,
)

__all__ = [
    "DataCleaner",
    "CleaningResult",
    "OutlierResult",
    "ScalingParameters",
    "coerce_value",
    "CleaningProfile",
    "PRODUCT_PROFILE",
    "CERTIFICATION_PROFILE",
    "SENSOR_EVENT_PROFILE",
]
