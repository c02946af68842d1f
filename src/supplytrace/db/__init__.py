"""
Database Package

SQLAlchemy models, session management and repositories for the analytic store.
"""
from src.supplytrace.db.base import Base
from src.supplytrace.db.models import (
    ANALYTIC_TABLES,
    AnalyticCertification,
    AnalyticProduct,
    AnalyticSensorEvent,
    ModelRegistry,
    PipelineRun,
    get_table_model,
)
from src.supplytrace.db.session import (
    create_all_tables,
    get_db_session,
    get_engine,
    get_session_factory,
)

__all__ = [
    "Base",
    "ANALYTIC_TABLES",
    "AnalyticCertification",
    "AnalyticProduct",
    "AnalyticSensorEvent",
    "ModelRegistry",
    "PipelineRun",
    "get_table_model",
    "create_all_tables",
    "get_db_session",
    "get_engine",
    "get_session_factory",
]
