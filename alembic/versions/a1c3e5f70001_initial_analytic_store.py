"""initial_analytic_store

Create the analytic store: per-source analytic tables keyed by
(entity_id, as_of), the pipeline run log and the model registry.

Revision ID: a1c3e5f70001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'a1c3e5f70001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _analytic_columns() -> list:
    """Columns shared by every analytic table."""
    return [
        sa.Column('entity_id', sa.String(length=100), nullable=False,
                  comment='Product, certificate or device identifier'),
        sa.Column('as_of', sa.DateTime(), nullable=False,
                  comment='Point in time the row describes (naive UTC)'),
        sa.Column('payload', JSON_TYPE, nullable=False,
                  comment='Cleaned fields merged with derived features'),
        sa.Column('quality_flags', JSON_TYPE, nullable=False,
                  comment='Data-quality flags set by the cleaner'),
        sa.Column('run_id', sa.String(length=64), nullable=True,
                  comment='Pipeline run that last wrote the row'),
        sa.Column('loaded_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'),
                  nullable=False, comment='When the row was last written'),
    ]


def _timestamp_columns() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'),
                  nullable=False, comment='Timestamp when record was created'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'),
                  nullable=False, comment='Timestamp when record was last updated'),
    ]


def upgrade() -> None:
    """Create analytic store tables."""

    op.create_table(
        'analytics_products',
        *_analytic_columns(),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('price', sa.Float(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=True),
        sa.Column('age_days', sa.Integer(), nullable=True),
        sa.Column('is_expired', sa.Boolean(), nullable=True),
        sa.Column('avg_transfer_interval', sa.Float(), nullable=True,
                  comment='Mean days between consecutive transfers'),
        sa.Column('days_until_next_transfer', sa.Float(), nullable=True,
                  comment='Training target of the predictive engine'),
        sa.PrimaryKeyConstraint('entity_id', 'as_of'),
    )
    op.create_index('idx_analytics_products_category', 'analytics_products', ['category'])

    op.create_table(
        'analytics_certifications',
        *_analytic_columns(),
        sa.Column('product_id', sa.String(length=100), nullable=True),
        sa.Column('certification_body', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=True),
        sa.Column('certification_duration_days', sa.Integer(), nullable=True),
        sa.Column('is_certification_valid', sa.Boolean(), nullable=True),
        sa.PrimaryKeyConstraint('entity_id', 'as_of'),
    )
    op.create_index('idx_analytics_certifications_product', 'analytics_certifications', ['product_id'])

    op.create_table(
        'analytics_sensor_events',
        *_analytic_columns(),
        sa.Column('product_id', sa.String(length=100), nullable=True),
        sa.Column('temperature', sa.Float(), nullable=True),
        sa.Column('humidity', sa.Float(), nullable=True),
        sa.Column('weight', sa.Float(), nullable=True),
        sa.Column('distance', sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint('entity_id', 'as_of'),
    )
    op.create_index('idx_analytics_sensor_events_product', 'analytics_sensor_events', ['product_id'])

    op.create_table(
        'pipeline_runs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False,
                  comment='completed, degraded, failed or cancelled'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('records_extracted', sa.Integer(), nullable=False),
        sa.Column('records_cleaned', sa.Integer(), nullable=False),
        sa.Column('records_loaded', sa.Integer(), nullable=False),
        sa.Column('records_failed', sa.Integer(), nullable=False),
        sa.Column('records_rejected', sa.Integer(), nullable=False),
        sa.Column('duplicates_removed', sa.Integer(), nullable=False),
        sa.Column('outliers_removed', sa.Integer(), nullable=False),
        sa.Column('per_source_errors', JSON_TYPE, nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('details', JSON_TYPE, nullable=True, comment='Full report as logged'),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id'),
    )
    op.create_index('idx_pipeline_runs_status', 'pipeline_runs', ['status'])
    op.create_index('idx_pipeline_runs_started', 'pipeline_runs', ['started_at'])

    op.create_table(
        'model_registry',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('model_name', sa.String(length=100), nullable=False,
                  comment='Engine name: anomaly or predictive'),
        sa.Column('version', sa.String(length=50), nullable=False),
        sa.Column('artifact_path', sa.String(length=500), nullable=False,
                  comment='Path to the joblib artifact holding scaler and model'),
        sa.Column('training_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('training_samples', sa.Integer(), nullable=True),
        sa.Column('feature_names', JSON_TYPE, nullable=True),
        sa.Column('hyperparameters', JSON_TYPE, nullable=True),
        sa.Column('metrics', JSON_TYPE, nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('promoted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deprecated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('model_name', 'version', name='uq_model_name_version'),
    )
    op.create_index('idx_model_registry_name', 'model_registry', ['model_name'])
    op.create_index('idx_model_registry_active', 'model_registry', ['is_active'])


def downgrade() -> None:
    """Drop analytic store tables."""
    op.drop_index('idx_model_registry_active', table_name='model_registry')
    op.drop_index('idx_model_registry_name', table_name='model_registry')
    op.drop_table('model_registry')

    op.drop_index('idx_pipeline_runs_started', table_name='pipeline_runs')
    op.drop_index('idx_pipeline_runs_status', table_name='pipeline_runs')
    op.drop_table('pipeline_runs')

    op.drop_index('idx_analytics_sensor_events_product', table_name='analytics_sensor_events')
    op.drop_table('analytics_sensor_events')

    op.drop_index('idx_analytics_certifications_product', table_name='analytics_certifications')
    op.drop_table('analytics_certifications')

    op.drop_index('idx_analytics_products_category', table_name='analytics_products')
    op.drop_table('analytics_products')
