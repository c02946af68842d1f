"""
Machine Learning Package

Anomaly and predictive engines, their versioned artifacts and training.
"""
from src.supplytrace.ml.anomaly_detector import AnomalyEngine
from src.supplytrace.ml.artifacts import ArtifactSlot, ModelArtifact
from src.supplytrace.ml.predictive_model import PredictiveEngine, TrainingSummary

__all__ = [
    "AnomalyEngine",
    "ArtifactSlot",
    "ModelArtifact",
    "PredictiveEngine",
    "TrainingSummary",
]
