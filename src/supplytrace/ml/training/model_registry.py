"""
Model Registry Utility

Tracks engine artifact versions and which version each engine serves.
"""
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session, sessionmaker

from src.supplytrace.db.models import ModelRegistry
from src.supplytrace.db.session import get_db_session
from src.supplytrace.ml.artifacts import ModelArtifact
from src.supplytrace.models.records import to_json_safe
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)


class ModelRegistryManager:
    """
    Manages artifact metadata in the database.

    Provides functionality for:
    - Registering new artifact versions
    - Promoting a version to active (one active version per engine)
    - Retrieving the active version
    - Cleaning up old versions and their files
    """

    def __init__(self, session: Optional[Session] = None, session_factory: Optional[sessionmaker] = None):
        self._session = session
        self._session_factory = session_factory
        self._owned_session = False

    def __enter__(self):
        if self._session is None:
            self._session_ctx = get_db_session(self._session_factory)
            self._session = self._session_ctx.__enter__()
            self._owned_session = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._owned_session:
            self._session_ctx.__exit__(exc_type, exc_val, exc_tb)
            self._session = None
            self._owned_session = False

    def register_artifact(
        self,
        artifact: ModelArtifact,
        artifact_path: Path,
        description: Optional[str] = None,
    ) -> ModelRegistry:
        """
        Register a saved artifact.

        Args:
            artifact: Artifact that was saved
            artifact_path: Where it was saved
            description: Free-form notes

        Returns:
            Created ModelRegistry row (inactive)
        """
        return self.register_model(
            model_name=artifact.engine,
            version=artifact.version,
            artifact_path=str(artifact_path),
            training_date=artifact.trained_at,
            training_samples=artifact.metrics.get("training_samples", artifact.metrics.get("n_train")),
            feature_names=list(artifact.feature_names),
            hyperparameters=to_json_safe(artifact.params),
            metrics=to_json_safe(artifact.metrics),
            description=description,
        )

    def register_model(
        self,
        model_name: str,
        version: str,
        artifact_path: str,
        training_date: datetime,
        training_samples: Optional[int] = None,
        feature_names: Optional[list] = None,
        hyperparameters: Optional[dict] = None,
        metrics: Optional[dict] = None,
        description: Optional[str] = None,
    ) -> ModelRegistry:
        model_record = ModelRegistry(
            model_name=model_name,
            version=version,
            artifact_path=artifact_path,
            training_date=training_date,
            training_samples=training_samples,
            feature_names=feature_names,
            hyperparameters=hyperparameters,
            metrics=metrics,
            description=description,
            is_active=False,
        )

        self._session.add(model_record)
        self._session.commit()

        logger.info(
            "model_registered",
            model_name=model_name,
            version=version,
            artifact_path=artifact_path,
        )

        return model_record

    def promote_model(self, model_name: str, version: str) -> bool:
        """
        Make a version the active one, deactivating all others of the engine.

        Returns:
            True if the version exists and was promoted
        """
        if self.get_model_by_version(model_name, version) is None:
            logger.warning(
                "model_promotion_failed",
                model_name=model_name,
                version=version,
                reason="not_found",
            )
            return False

        now = datetime.now(timezone.utc)
        self._session.execute(
            update(ModelRegistry)
            .where(
                and_(
                    ModelRegistry.model_name == model_name,
                    ModelRegistry.is_active.is_(True),
                    ModelRegistry.version != version,
                )
            )
            .values(is_active=False, deprecated_at=now)
        )
        self._session.execute(
            update(ModelRegistry)
            .where(
                and_(
                    ModelRegistry.model_name == model_name,
                    ModelRegistry.version == version,
                )
            )
            .values(is_active=True, promoted_at=now, deprecated_at=None)
        )
        self._session.commit()

        logger.info("model_promoted", model_name=model_name, version=version)
        return True

    def get_active_model(self, model_name: str) -> Optional[ModelRegistry]:
        query = select(ModelRegistry).where(
            and_(
                ModelRegistry.model_name == model_name,
                ModelRegistry.is_active.is_(True),
            )
        )
        result = self._session.execute(query).scalar_one_or_none()

        if result:
            logger.info("active_model_retrieved", model_name=model_name, version=result.version)
        else:
            logger.warning("no_active_model_found", model_name=model_name)

        return result

    def get_model_by_version(self, model_name: str, version: str) -> Optional[ModelRegistry]:
        query = select(ModelRegistry).where(
            and_(
                ModelRegistry.model_name == model_name,
                ModelRegistry.version == version,
            )
        )
        return self._session.execute(query).scalar_one_or_none()

    def list_models(self, model_name: Optional[str] = None) -> List[ModelRegistry]:
        """
        List registered versions, newest first, optionally for one engine.
        """
        query = select(ModelRegistry)
        if model_name:
            query = query.where(ModelRegistry.model_name == model_name)
        query = query.order_by(ModelRegistry.model_name, ModelRegistry.training_date.desc())
        return list(self._session.execute(query).scalars().all())

    def cleanup_old_versions(self, model_name: str, keep_count: int = 5) -> int:
        """
        Remove old versions and their artifact files, keeping the newest N.

        The active version is never removed.

        Returns:
            Number of versions removed
        """
        all_versions = self.list_models(model_name)

        if len(all_versions) <= keep_count:
            logger.info(
                "no_cleanup_needed",
                model_name=model_name,
                current_count=len(all_versions),
                keep_count=keep_count,
            )
            return 0

        deleted_count = 0
        for version_record in all_versions[keep_count:]:
            if version_record.is_active:
                logger.warning(
                    "skipping_active_model_deletion",
                    model_name=model_name,
                    version=version_record.version,
                )
                continue

            artifact_path = Path(version_record.artifact_path)
            if artifact_path.exists():
                try:
                    artifact_path.unlink()
                    logger.info("artifact_deleted", path=str(artifact_path))
                except OSError as e:
                    logger.warning("artifact_deletion_failed", path=str(artifact_path), error=str(e))

            self._session.delete(version_record)
            deleted_count += 1

        self._session.commit()

        logger.info("old_versions_cleaned", model_name=model_name, deleted_count=deleted_count)
        return deleted_count
