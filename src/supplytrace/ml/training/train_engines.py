"""
Engine Training

Trains the anomaly and predictive engines on rows already in the analytic
store, saves versioned artifacts under settings.models_dir and promotes them
in the model registry.
"""
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import sessionmaker

from config.settings import settings
from src.supplytrace.db.models import AnalyticProduct, AnalyticSensorEvent
from src.supplytrace.db.repository import AnalyticRowRepository
from src.supplytrace.db.session import get_db_session
from src.supplytrace.errors import ModelNotFittedError
from src.supplytrace.ml.anomaly_detector import AnomalyEngine
from src.supplytrace.ml.artifacts import ModelArtifact
from src.supplytrace.ml.predictive_model import PredictiveEngine
from src.supplytrace.ml.training.model_registry import ModelRegistryManager
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)

ENGINE_NAMES = (AnomalyEngine.name, PredictiveEngine.name)

# Engine -> table its training rows come from
TRAINING_TABLES = {
    AnomalyEngine.name: AnalyticSensorEvent.__tablename__,
    PredictiveEngine.name: AnalyticProduct.__tablename__,
}


def artifact_path(models_dir: Union[str, Path], artifact: ModelArtifact) -> Path:
    return Path(models_dir) / artifact.engine / f"{artifact.version}.joblib"


def load_training_rows(
    engine_name: str,
    session_factory: Optional[sessionmaker] = None,
    limit: Optional[int] = None,
) -> List[Dict]:
    """Read stored payloads for one engine's training table."""
    repository = AnalyticRowRepository(TRAINING_TABLES[engine_name])
    with get_db_session(session_factory) as session:
        return repository.fetch_payloads(session, limit=limit)


def train_engines(
    engines: Iterable[str] = ENGINE_NAMES,
    models_dir: Optional[Union[str, Path]] = None,
    session_factory: Optional[sessionmaker] = None,
    promote: bool = True,
    limit: Optional[int] = None,
) -> Dict[str, ModelArtifact]:
    """
    Train, save, register and (optionally) promote engine artifacts.

    Args:
        engines: Engine names to train
        models_dir: Artifact root (settings.models_dir by default)
        session_factory: Analytic store session factory
        promote: Make the new versions active
        limit: Train on at most this many of the newest rows

    Returns:
        engine name -> trained artifact
    """
    models_dir = Path(models_dir or settings.models_dir)
    trained: Dict[str, ModelArtifact] = {}

    for engine_name in engines:
        if engine_name not in TRAINING_TABLES:
            raise ValueError(f"Unknown engine: {engine_name}")

        rows = load_training_rows(engine_name, session_factory, limit=limit)
        logger.info("engine_training_started", engine=engine_name, rows=len(rows))

        if engine_name == AnomalyEngine.name:
            engine = AnomalyEngine()
            artifact = engine.fit(rows)
        else:
            engine = PredictiveEngine()
            engine.train_model(rows)
            artifact = engine.artifact

        path = artifact.save(artifact_path(models_dir, artifact))

        with ModelRegistryManager(session_factory=session_factory) as registry:
            registry.register_artifact(artifact, path, description=f"Trained on {len(rows)} rows")
            if promote:
                registry.promote_model(artifact.engine, artifact.version)
            registry.cleanup_old_versions(artifact.engine, keep_count=settings.model_keep_versions)

        trained[engine_name] = artifact
        logger.info("engine_training_completed", engine=engine_name, version=artifact.version, path=str(path))

    return trained


def load_active_artifact(engine_name: str, session_factory: Optional[sessionmaker] = None) -> ModelArtifact:
    """
    Load the registry's active artifact for an engine.

    Raises:
        ModelNotFittedError: No active version registered
    """
    with ModelRegistryManager(session_factory=session_factory) as registry:
        record = registry.get_active_model(engine_name)
        if record is None:
            raise ModelNotFittedError(engine_name)
        path = record.artifact_path
    return ModelArtifact.load(path)


def load_engine(engine_name: str, session_factory: Optional[sessionmaker] = None):
    """Build an engine serving the active artifact."""
    engine = AnomalyEngine() if engine_name == AnomalyEngine.name else PredictiveEngine()
    engine.publish(load_active_artifact(engine_name, session_factory))
    return engine
