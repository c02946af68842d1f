"""
Predictive model for product lifecycle timing.

Predicts days until a product's next transfer with a random forest tuned by
grid search. Scaling and gap filling sit inside the searched pipeline so
each CV fold is standardized on its own training split.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from sklearn.ensemble import RandomForestRegressor
from sklearn.metrics import mean_squared_error, r2_score
from sklearn.model_selection import GridSearchCV, train_test_split
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import FunctionTransformer, StandardScaler

from config.settings import settings
from src.supplytrace.ml.artifacts import ArtifactSlot, ModelArtifact, fill_scaled_gaps, new_version
from src.supplytrace.models.records import FeatureRecord, is_missing
from src.supplytrace.models.results import Forecast
from src.supplytrace.transformers.feature_transformer import vectorize, vectorize_many
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)

Record = Union[FeatureRecord, Mapping[str, Any]]


@dataclass
class TrainingSummary:
    """
    Metrics from one training run.

    Attributes:
        version: Published artifact version
        mse: Hold-out mean squared error
        r2: Hold-out R^2 (None with fewer than 2 hold-out rows)
        cv_mse: Mean cross-validated MSE of the best parameters
        best_params: Winning hyperparameters
        n_train: Training rows
        n_test: Hold-out rows
    """
    version: str
    mse: float
    r2: Optional[float]
    cv_mse: float
    best_params: Dict[str, Any] = field(default_factory=dict)
    n_train: int = 0
    n_test: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mse": self.mse,
            "r2": self.r2,
            "cv_mse": self.cv_mse,
            "n_train": self.n_train,
            "n_test": self.n_test,
        }


def _value_of(record: Record, name: str) -> Any:
    if isinstance(record, FeatureRecord):
        return record.value(name)
    return record.get(name)


class PredictiveEngine:
    """
    Lifecycle forecaster.
    """

    name = "predictive"

    def __init__(
        self,
        feature_names: Optional[Sequence[str]] = None,
        target: Optional[str] = None,
        param_grid: Optional[Dict[str, List[Any]]] = None,
        cv_folds: Optional[int] = None,
        test_size: Optional[float] = None,
        random_state: Optional[int] = None,
        entity_field: str = "product_id",
    ):
        self.feature_names = tuple(feature_names or settings.predictive_features)
        self.target = target or settings.predictive_target
        self.param_grid = dict(param_grid or settings.predictive_param_grid)
        self.cv_folds = cv_folds or settings.predictive_cv_folds
        self.test_size = settings.predictive_test_size if test_size is None else test_size
        self.random_state = settings.random_state if random_state is None else random_state
        self.entity_field = entity_field
        self._slot = ArtifactSlot(self.name)

    @property
    def artifact(self) -> ModelArtifact:
        return self._slot.current()

    @property
    def is_fitted(self) -> bool:
        return self._slot.is_ready

    def _build_pipeline(self) -> Pipeline:
        return Pipeline([
            ("scaler", StandardScaler()),
            ("fill", FunctionTransformer(fill_scaled_gaps)),
            ("regressor", RandomForestRegressor(random_state=self.random_state)),
        ])

    def train_model(self, records: Sequence[Record]) -> TrainingSummary:
        """
        Tune, fit and publish a forecaster.

        Rows whose target is missing are skipped.

        Args:
            records: FeatureRecords or stored payloads carrying the target

        Returns:
            TrainingSummary
        """
        usable = [record for record in records if not is_missing(_value_of(record, self.target))]
        skipped = len(records) - len(usable)

        features = vectorize_many(usable, self.feature_names)
        target = np.asarray([float(_value_of(record, self.target)) for record in usable], dtype=float)

        n_test = int(np.ceil(len(usable) * self.test_size)) if self.test_size else 0
        if len(usable) - n_test < self.cv_folds:
            raise ValueError(
                f"Not enough rows with {self.target} to train: {len(usable)} usable, "
                f"need at least {self.cv_folds} after the hold-out split"
            )

        logger.info(
            "predictive_training_started",
            rows=len(usable),
            skipped_missing_target=skipped,
            features=list(self.feature_names),
        )

        if self.test_size:
            X_train, X_test, y_train, y_test = train_test_split(
                features, target, test_size=self.test_size, random_state=self.random_state
            )
        else:
            X_train, X_test, y_train, y_test = features, features[:0], target, target[:0]

        grid = {f"regressor__{key}": list(values) for key, values in self.param_grid.items()}
        search = GridSearchCV(
            self._build_pipeline(),
            grid,
            cv=self.cv_folds,
            scoring="neg_mean_squared_error",
            n_jobs=-1,
        )
        search.fit(X_train, y_train)
        best = search.best_estimator_

        if len(y_test):
            predictions = np.clip(best.predict(X_test), 0, None)
            mse = float(mean_squared_error(y_test, predictions))
            r2 = float(r2_score(y_test, predictions)) if len(y_test) > 1 else None
        else:
            mse, r2 = float(-search.best_score_), None

        best_params = {key.split("__", 1)[1]: value for key, value in search.best_params_.items()}
        summary = TrainingSummary(
            version=new_version(),
            mse=mse,
            r2=r2,
            cv_mse=float(-search.best_score_),
            best_params=best_params,
            n_train=int(len(y_train)),
            n_test=int(len(y_test)),
        )

        self._slot.publish(ModelArtifact(
            engine=self.name,
            version=summary.version,
            scaler=best.named_steps["scaler"],
            model=best.named_steps["regressor"],
            feature_names=self.feature_names,
            trained_at=datetime.now(timezone.utc),
            metrics=summary.to_dict(),
            params=best_params,
        ))

        logger.info("predictive_model_trained", version=summary.version, best_params=best_params, **summary.to_dict())
        return summary

    def predict(self, record: Record, entity_id: Optional[str] = None) -> Forecast:
        """
        Forecast days until the next transfer.

        Raises:
            ModelNotFittedError: No artifact published
        """
        artifact = self._slot.current()
        scaled = artifact.scale(vectorize(record, artifact.feature_names))
        predicted = max(0.0, float(artifact.model.predict(scaled)[0]))

        if entity_id is None:
            if isinstance(record, FeatureRecord):
                entity_id = record.entity_id
            elif record.get(self.entity_field) is not None:
                entity_id = str(record.get(self.entity_field))

        return Forecast(
            entity_id=entity_id,
            predicted_days_until_next_transfer=predicted,
            feature_importances=dict(self._importances(artifact)),
            model_version=artifact.version,
        )

    def predict_batch(self, records: Sequence[Record]) -> List[Forecast]:
        return [self.predict(record) for record in records]

    def feature_importance(self) -> List[Tuple[str, float]]:
        """(feature, importance) pairs, most important first."""
        return self._importances(self._slot.current())

    @staticmethod
    def _importances(artifact: ModelArtifact) -> List[Tuple[str, float]]:
        pairs = zip(artifact.feature_names, artifact.model.feature_importances_)
        return sorted(((name, float(weight)) for name, weight in pairs), key=lambda item: (-item[1], item[0]))

    def save(self, path: Union[str, Path]) -> Path:
        return self._slot.current().save(path)

    def load(self, path: Union[str, Path]) -> ModelArtifact:
        """Load an artifact from disk and publish it."""
        artifact = ModelArtifact.load(path)
        self.publish(artifact)
        return artifact

    def publish(self, artifact: ModelArtifact) -> None:
        self._slot.publish(artifact)
        self.feature_names = artifact.feature_names
