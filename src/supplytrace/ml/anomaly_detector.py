"""
Anomaly detection for sensor readings using Isolation Forest.

Scores are oriented so that higher = more anomalous. The decision threshold
is the one the forest derives from the contamination rate at fit time, so
roughly that fraction of the training readings lands above it. It is raised
to the score of the training mean when the mean itself would be flagged.
"""
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from sklearn.ensemble import IsolationForest
from sklearn.metrics import classification_report, confusion_matrix
from sklearn.preprocessing import StandardScaler

from config.settings import settings
from src.supplytrace.ml.artifacts import ArtifactSlot, ModelArtifact, fill_scaled_gaps, new_version
from src.supplytrace.models.records import FeatureRecord
from src.supplytrace.models.results import AnomalyResult
from src.supplytrace.transformers.feature_transformer import vectorize, vectorize_many
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)

Reading = Union[FeatureRecord, Mapping[str, Any]]


def _entity_of(reading: Reading, entity_field: str) -> Optional[str]:
    if isinstance(reading, FeatureRecord):
        return reading.entity_id
    value = reading.get(entity_field)
    return None if value is None else str(value)


class AnomalyEngine:
    """
    Identifies anomalous sensor readings.

    fit() publishes a new (scaler, model) artifact; detect() scores against
    whatever artifact is published when the call starts.
    """

    name = "anomaly"

    def __init__(
        self,
        feature_names: Optional[Sequence[str]] = None,
        contamination: Optional[float] = None,
        n_estimators: Optional[int] = None,
        random_state: Optional[int] = None,
        entity_field: str = "device_id",
    ):
        self.feature_names = tuple(feature_names or settings.anomaly_features)
        self.contamination = contamination or settings.anomaly_contamination
        self.n_estimators = n_estimators or settings.anomaly_n_estimators
        self.random_state = settings.random_state if random_state is None else random_state
        self.entity_field = entity_field
        self._slot = ArtifactSlot(self.name)

    @property
    def artifact(self) -> ModelArtifact:
        return self._slot.current()

    @property
    def is_fitted(self) -> bool:
        return self._slot.is_ready

    def fit(self, readings: Sequence[Reading]) -> ModelArtifact:
        """
        Fit scaler and forest on a batch of readings and publish them.

        Args:
            readings: FeatureRecords or payload mappings

        Returns:
            The published artifact
        """
        matrix = vectorize_many(readings, self.feature_names)
        if len(matrix) < 2:
            raise ValueError(f"Anomaly engine needs at least 2 readings to fit, got {len(matrix)}")

        scaler = StandardScaler().fit(matrix)
        model = IsolationForest(
            n_estimators=self.n_estimators,
            contamination=self.contamination,
            random_state=self.random_state,
            n_jobs=-1,
        )
        scaled = fill_scaled_gaps(scaler.transform(matrix))
        model.fit(scaled)

        # The training mean maps to the origin in scaled space and must never
        # score above the threshold, even when it sits between clusters.
        forest_threshold = float(-model.offset_)
        mean_score = float(-model.score_samples(np.zeros((1, matrix.shape[1])))[0])
        threshold = max(forest_threshold, mean_score)
        scores = -model.score_samples(scaled)
        metrics = {
            "training_samples": int(len(matrix)),
            "anomaly_rate": float(np.mean(scores > threshold)),
            "threshold": threshold,
            "forest_threshold": forest_threshold,
            "threshold_clamped": threshold > forest_threshold,
        }
        artifact = ModelArtifact(
            engine=self.name,
            version=new_version(),
            scaler=scaler,
            model=model,
            feature_names=self.feature_names,
            trained_at=datetime.now(timezone.utc),
            threshold=threshold,
            metrics=metrics,
            params={
                "contamination": self.contamination,
                "n_estimators": self.n_estimators,
                "random_state": self.random_state,
            },
        )
        self._slot.publish(artifact)

        logger.info("anomaly_model_trained", version=artifact.version, **metrics)
        return artifact

    def detect(self, reading: Reading, entity_id: Optional[str] = None) -> AnomalyResult:
        """
        Score one reading.

        Raises:
            ModelNotFittedError: No artifact published
        """
        artifact = self._slot.current()
        scaled = artifact.scale(vectorize(reading, artifact.feature_names))
        score = float(-artifact.model.score_samples(scaled)[0])

        return AnomalyResult(
            entity_id=entity_id if entity_id is not None else _entity_of(reading, self.entity_field),
            score=score,
            is_anomaly=score > artifact.threshold,
            explain_vector={name: float(value) for name, value in zip(artifact.feature_names, scaled[0])},
            model_version=artifact.version,
        )

    def detect_batch(self, readings: Sequence[Reading]) -> List[AnomalyResult]:
        """Score a batch against one artifact."""
        artifact = self._slot.current()
        if not readings:
            return []

        scaled = artifact.scale(vectorize_many(readings, artifact.feature_names))
        scores = -artifact.model.score_samples(scaled)

        results = [
            AnomalyResult(
                entity_id=_entity_of(reading, self.entity_field),
                score=float(score),
                is_anomaly=bool(score > artifact.threshold),
                explain_vector={name: float(value) for name, value in zip(artifact.feature_names, row)},
                model_version=artifact.version,
            )
            for reading, score, row in zip(readings, scores, scaled)
        ]
        logger.info(
            "anomaly_batch_scored",
            readings=len(results),
            anomalies=sum(1 for result in results if result.is_anomaly),
            version=artifact.version,
        )
        return results

    def explain_anomalies(self, readings: Sequence[Reading]) -> List[Tuple[str, float]]:
        """
        Rank features by Pearson correlation with the anomaly score.

        Features constant across the batch get 0.0.

        Returns:
            (feature, correlation) sorted by absolute correlation, descending
        """
        artifact = self._slot.current()
        if len(readings) < 2:
            raise ValueError("explain_anomalies needs at least 2 readings")

        scaled = artifact.scale(vectorize_many(readings, artifact.feature_names))
        scores = -artifact.model.score_samples(scaled)

        correlations: Dict[str, float] = {}
        for index, name in enumerate(artifact.feature_names):
            column = scaled[:, index]
            if np.std(column) == 0 or np.std(scores) == 0:
                correlations[name] = 0.0
            else:
                correlations[name] = float(np.corrcoef(column, scores)[0, 1])

        return sorted(correlations.items(), key=lambda item: (-abs(item[1]), item[0]))

    def evaluate(self, readings: Sequence[Reading], labels: Sequence[bool]) -> Dict[str, Any]:
        """
        Compare decisions against known labels (True = anomaly).

        Returns:
            confusion_matrix (rows: actual normal/anomaly) and classification_report
        """
        if len(readings) != len(labels):
            raise ValueError("readings and labels must have the same length")

        predicted = [result.is_anomaly for result in self.detect_batch(readings)]
        actual = [bool(label) for label in labels]
        return {
            "confusion_matrix": confusion_matrix(actual, predicted, labels=[False, True]).tolist(),
            "classification_report": classification_report(
                actual,
                predicted,
                labels=[False, True],
                target_names=["normal", "anomaly"],
                output_dict=True,
                zero_division=0,
            ),
        }

    def save(self, path: Union[str, Path]) -> Path:
        return self._slot.current().save(path)

    def load(self, path: Union[str, Path]) -> ModelArtifact:
        """Load an artifact from disk and publish it."""
        artifact = ModelArtifact.load(path)
        self.publish(artifact)
        return artifact

    def publish(self, artifact: ModelArtifact) -> None:
        if artifact.threshold is None:
            raise ValueError("Anomaly artifact has no threshold")
        self._slot.publish(artifact)
        self.feature_names = artifact.feature_names
