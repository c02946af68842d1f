"""
SQLAlchemy Base and Mixins

Provides declarative base and reusable mixins for the analytic store.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """
    Base class for all database models.
    """


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamp columns.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="Timestamp when record was created"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        comment="Timestamp when record was last updated"
    )


class AnalyticRowMixin:
    """
    Columns shared by every analytic table.

    Rows are keyed by (entity_id, as_of); re-loading the same key overwrites
    the previous values.
    """

    entity_id: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
        comment="Product, certificate or device identifier"
    )
    as_of: Mapped[datetime] = mapped_column(
        DateTime,
        primary_key=True,
        comment="Point in time the row describes (naive UTC)"
    )
    payload: Mapped[Dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        comment="Cleaned fields merged with derived features"
    )
    quality_flags: Mapped[List[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Data-quality flags set by the cleaner"
    )
    run_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Pipeline run that last wrote the row"
    )
    loaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="When the row was last written"
    )


def import_all_models():
    """
    Import all models to register them with SQLAlchemy Base.

    Called before create_all and by Alembic autogenerate.
    """
    from src.supplytrace.db import models  # noqa: F401
