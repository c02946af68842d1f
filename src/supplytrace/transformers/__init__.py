"""
Transformers Package

Feature derivation shared by the pipeline and the analysis engines.
"""
from src.supplytrace.transformers.feature_transformer import (
    FeatureTransformer,
    to_naive_utc,
    vectorize,
    vectorize_many,
)

__all__ = [
    "FeatureTransformer",
    "to_naive_utc",
    "vectorize",
    "vectorize_many",
]
