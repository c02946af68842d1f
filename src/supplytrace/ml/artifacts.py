"""
Model Artifacts

A fitted (scaler, model) pair travels as one immutable ModelArtifact: saved
to a single joblib file, published to consumers with one reference swap.
A caller that grabbed an artifact keeps scoring with that exact pair even if
a retrained one is published meanwhile.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import joblib
import numpy as np

from src.supplytrace.errors import ModelNotFittedError
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)

ARTIFACT_KEYS = ("engine", "version", "scaler", "model", "feature_names", "trained_at")


def fill_scaled_gaps(matrix: np.ndarray) -> np.ndarray:
    """Replace NaN in a standardized matrix with 0, i.e. the training mean."""
    return np.nan_to_num(np.asarray(matrix, dtype=float), nan=0.0)


def new_version(now: Optional[datetime] = None) -> str:
    """Sortable version string, e.g. 20261018_120000_000000."""
    return (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S_%f")


@dataclass(frozen=True)
class ModelArtifact:
    """
    Versioned, immutable fitted pair.

    Attributes:
        engine: anomaly or predictive
        version: Artifact version
        scaler: Fitted StandardScaler
        model: Fitted estimator consuming scaled input
        feature_names: Input order expected by scaler and model
        trained_at: Training time (UTC)
        threshold: Anomaly decision threshold (anomaly engine only)
        metrics: Training/validation metrics
        params: Hyperparameters the model was fitted with
    """
    engine: str
    version: str
    scaler: Any
    model: Any
    feature_names: Tuple[str, ...]
    trained_at: datetime
    threshold: Optional[float] = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)

    def scale(self, matrix: np.ndarray) -> np.ndarray:
        """Standardize with the persisted scaler, filling gaps with the training mean."""
        matrix = np.asarray(matrix, dtype=float)
        if matrix.ndim == 1:
            matrix = matrix.reshape(1, -1)
        return fill_scaled_gaps(self.scaler.transform(matrix))

    def save(self, path: Union[str, Path]) -> Path:
        """
        Write the artifact to one joblib file.

        Args:
            path: Target file

        Returns:
            Path written
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(
            {
                "engine": self.engine,
                "version": self.version,
                "scaler": self.scaler,
                "model": self.model,
                "feature_names": list(self.feature_names),
                "trained_at": self.trained_at,
                "threshold": self.threshold,
                "metrics": self.metrics,
                "params": self.params,
            },
            path,
        )
        logger.info("model_artifact_saved", engine=self.engine, version=self.version, path=str(path))
        return path

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ModelArtifact":
        """
        Read an artifact written by save().

        Raises:
            FileNotFoundError: No file at path
            ValueError: File is not a model artifact
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Model artifact not found: {path}")

        payload = joblib.load(path)
        if not isinstance(payload, dict) or any(key not in payload for key in ARTIFACT_KEYS):
            raise ValueError(f"Not a model artifact: {path}")

        artifact = cls(
            engine=payload["engine"],
            version=payload["version"],
            scaler=payload["scaler"],
            model=payload["model"],
            feature_names=tuple(payload["feature_names"]),
            trained_at=payload["trained_at"],
            threshold=payload.get("threshold"),
            metrics=payload.get("metrics") or {},
            params=payload.get("params") or {},
        )
        logger.info("model_artifact_loaded", engine=artifact.engine, version=artifact.version, path=str(path))
        return artifact


class ArtifactSlot:
    """
    Holds the currently published artifact of one engine.
    """

    def __init__(self, engine: str):
        self.engine = engine
        self._artifact: Optional[ModelArtifact] = None
        self._lock = threading.Lock()

    def publish(self, artifact: ModelArtifact) -> None:
        if artifact.engine != self.engine:
            raise ValueError(f"Cannot publish {artifact.engine} artifact to the {self.engine} engine")
        with self._lock:
            previous = self._artifact
            self._artifact = artifact
        logger.info(
            "model_artifact_published",
            engine=self.engine,
            version=artifact.version,
            previous_version=previous.version if previous else None,
        )

    def current(self) -> ModelArtifact:
        """
        Return the published artifact.

        Raises:
            ModelNotFittedError: Nothing published yet
        """
        with self._lock:
            artifact = self._artifact
        if artifact is None:
            raise ModelNotFittedError(self.engine)
        return artifact

    @property
    def is_ready(self) -> bool:
        with self._lock:
            return self._artifact is not None
