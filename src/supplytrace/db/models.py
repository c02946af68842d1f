"""
Database Models

ORM tables of the analytic store: one table per source, the pipeline run
log and the model registry.
"""
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.supplytrace.db.base import AnalyticRowMixin, Base, JSONType, TimestampMixin


class AnalyticProduct(Base, AnalyticRowMixin):
    """Product state with lifecycle features, one row per product and transfer time."""
    __tablename__ = "analytics_products"

    # Columns copied from the payload on every upsert
    typed_columns: ClassVar[Tuple[str, ...]] = (
        "name",
        "category",
        "price",
        "quantity",
        "age_days",
        "is_expired",
        "avg_transfer_interval",
        "days_until_next_transfer",
    )

    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quantity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    age_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_expired: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    avg_transfer_interval: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Mean days between consecutive transfers"
    )
    days_until_next_transfer: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Training target of the predictive engine"
    )

    __table_args__ = (
        Index("idx_analytics_products_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<AnalyticProduct(entity_id={self.entity_id}, as_of={self.as_of})>"


class AnalyticCertification(Base, AnalyticRowMixin):
    """Certification validity, one row per certificate."""
    __tablename__ = "analytics_certifications"

    typed_columns: ClassVar[Tuple[str, ...]] = (
        "product_id",
        "certification_body",
        "status",
        "certification_duration_days",
        "is_certification_valid",
    )

    product_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    certification_body: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    certification_duration_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_certification_valid: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    __table_args__ = (
        Index("idx_analytics_certifications_product", "product_id"),
    )

    def __repr__(self) -> str:
        return f"<AnalyticCertification(entity_id={self.entity_id}, valid={self.is_certification_valid})>"


class AnalyticSensorEvent(Base, AnalyticRowMixin):
    """Sensor reading from the event stream, keyed by device and timestamp."""
    __tablename__ = "analytics_sensor_events"

    typed_columns: ClassVar[Tuple[str, ...]] = (
        "product_id",
        "temperature",
        "humidity",
        "weight",
        "distance",
    )

    product_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    temperature: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    humidity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    distance: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("idx_analytics_sensor_events_product", "product_id"),
    )

    def __repr__(self) -> str:
        return f"<AnalyticSensorEvent(entity_id={self.entity_id}, as_of={self.as_of})>"


class PipelineRun(Base, TimestampMixin):
    """Append-only log of pipeline run reports."""
    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="completed, degraded, failed or cancelled"
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    records_extracted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_cleaned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_loaded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_rejected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duplicates_removed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    outliers_removed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    per_source_errors: Mapped[Optional[Dict[str, str]]] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Full report as logged"
    )

    __table_args__ = (
        Index("idx_pipeline_runs_status", "status"),
        Index("idx_pipeline_runs_started", "started_at"),
    )

    def __repr__(self) -> str:
        return f"<PipelineRun(run_id={self.run_id}, status={self.status})>"


class ModelRegistry(Base, TimestampMixin):
    """
    Registry for engine artifacts and metadata.

    Tracks artifact versions, training metrics, and which version is active.
    """
    __tablename__ = "model_registry"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    model_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Engine name: anomaly or predictive"
    )
    version: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Artifact version (e.g., 20261018_120000)"
    )
    artifact_path: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        comment="Path to the joblib artifact holding scaler and model"
    )

    training_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    training_samples: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    feature_names: Mapped[Optional[List[str]]] = mapped_column(JSONType, nullable=True)
    hyperparameters: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    metrics: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    promoted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    deprecated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("model_name", "version", name="uq_model_name_version"),
        Index("idx_model_registry_name", "model_name"),
        Index("idx_model_registry_active", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<ModelRegistry(name={self.model_name}, version={self.version}, active={self.is_active})>"


# Load target name -> ORM model
ANALYTIC_TABLES = {
    AnalyticProduct.__tablename__: AnalyticProduct,
    AnalyticCertification.__tablename__: AnalyticCertification,
    AnalyticSensorEvent.__tablename__: AnalyticSensorEvent,
}


def get_table_model(table: str):
    """Resolve a load target name to its ORM model."""
    try:
        return ANALYTIC_TABLES[table]
    except KeyError:
        raise ValueError(f"Unknown analytic table: {table}") from None
