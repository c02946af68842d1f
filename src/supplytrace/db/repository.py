"""
Repository Pattern for Data Access

Provides upserts and reads for the analytic tables and the pipeline run log.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from sqlalchemy import desc, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from src.supplytrace.db.models import PipelineRun, get_table_model
from src.supplytrace.db.session import get_db_session, with_retry
from src.supplytrace.models.records import AnalyticRow, to_json_safe
from src.supplytrace.models.results import RunReport
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

KEY_COLUMNS = ("entity_id", "as_of")


class BaseRepository:
    """
    Base repository with common read operations.
    """

    def __init__(self, model: Type[T]):
        """
        Initialize repository with model class.

        Args:
            model: SQLAlchemy model class
        """
        self.model = model
        logger.debug("repository_initialized", model=model.__name__)

    def get_by_id(self, session: Session, id_value: Any) -> Optional[T]:
        """
        Get single record by primary key.

        Args:
            session: Database session
            id_value: Primary key value (tuple for composite keys)

        Returns:
            Model instance or None
        """
        return session.get(self.model, id_value)

    def get_all(self, session: Session, limit: Optional[int] = None, offset: int = 0) -> List[T]:
        query = select(self.model).offset(offset)
        if limit:
            query = query.limit(limit)
        return list(session.execute(query).scalars().all())

    def count(self, session: Session) -> int:
        """
        Count total records.

        Args:
            session: Database session

        Returns:
            Total count
        """
        count = session.scalar(select(func.count()).select_from(self.model))
        logger.debug("repository_count", model=self.model.__name__, count=count)
        return count


class AnalyticRowRepository(BaseRepository):
    """Repository for one analytic table, keyed by (entity_id, as_of)."""

    def __init__(self, table: Union[str, Type]):
        model = get_table_model(table) if isinstance(table, str) else table
        super().__init__(model)

    def _insert(self, session: Session):
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(self.model)
        if dialect == "sqlite":
            return sqlite.insert(self.model)
        raise NotImplementedError(f"Upsert not supported for dialect {dialect}")

    def _row_values(self, row: AnalyticRow, run_id: Optional[str]) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "entity_id": row.entity_id,
            "as_of": row.as_of,
            "payload": to_json_safe(row.payload),
            "quality_flags": list(row.quality_flags),
            "run_id": run_id,
        }
        for column in self.model.typed_columns:
            values[column] = row.payload.get(column)
        return values

    def upsert(self, session: Session, row: AnalyticRow, run_id: Optional[str] = None) -> None:
        """
        Insert a row or overwrite the existing row with the same key.

        Args:
            session: Database session
            row: Row to write
            run_id: Pipeline run writing the row
        """
        values = self._row_values(row, run_id)
        stmt = self._insert(session).values(**values)
        updates = {key: value for key, value in values.items() if key not in KEY_COLUMNS}
        updates["loaded_at"] = func.now()
        stmt = stmt.on_conflict_do_update(index_elements=list(KEY_COLUMNS), set_=updates)

        session.execute(stmt)
        logger.debug("analytic_row_upserted", table=self.model.__tablename__, entity_id=row.entity_id)

    def get(self, session: Session, entity_id: str, as_of: datetime):
        return self.get_by_id(session, (entity_id, as_of))

    def fetch_payloads(
        self,
        session: Session,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """
        Read stored payloads in (as_of, entity_id) order.

        Args:
            session: Database session
            limit: Maximum rows, newest first when set
            since: Only rows with as_of >= since

        Returns:
            Payload dicts with entity_id and as_of added
        """
        query = select(self.model)
        if since is not None:
            query = query.where(self.model.as_of >= since)
        if limit:
            query = query.order_by(desc(self.model.as_of), self.model.entity_id).limit(limit)
        else:
            query = query.order_by(self.model.as_of, self.model.entity_id)

        rows = session.execute(query).scalars().all()
        payloads = [
            {**row.payload, "entity_id": row.entity_id, "as_of": row.as_of}
            for row in rows
        ]
        if limit:
            payloads.reverse()

        logger.info("analytic_payloads_fetched", table=self.model.__tablename__, count=len(payloads))
        return payloads


class PipelineRunRepository(BaseRepository):
    """Append-only access to the pipeline run log."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        super().__init__(PipelineRun)
        self.session_factory = session_factory

    def append(self, session: Session, report: RunReport) -> PipelineRun:
        """
        Store a finished run report.

        Args:
            session: Database session
            report: Report of the finished run

        Returns:
            Created PipelineRun
        """
        run = PipelineRun(
            run_id=report.run_id,
            status=report.status.value,
            started_at=report.started,
            ended_at=report.ended,
            records_extracted=report.records_extracted,
            records_cleaned=report.records_cleaned,
            records_loaded=report.records_loaded,
            records_failed=report.records_failed,
            records_rejected=report.records_rejected,
            duplicates_removed=report.duplicates_removed,
            outliers_removed=report.outliers_removed,
            per_source_errors=dict(report.per_source_errors) or None,
            error_message=report.error,
            details=report.to_dict(),
        )
        session.add(run)
        session.flush()

        logger.info("pipeline_run_recorded", run_id=report.run_id, status=report.status.value)
        return run

    @with_retry(max_retries=3)
    def record(self, report: RunReport) -> None:
        """Append a report in its own transaction."""
        with get_db_session(self.session_factory) as session:
            self.append(session, report)

    def get_by_run_id(self, session: Session, run_id: str) -> Optional[PipelineRun]:
        query = select(PipelineRun).where(PipelineRun.run_id == run_id)
        return session.execute(query).scalar_one_or_none()

    def get_recent(self, session: Session, limit: int = 10) -> List[PipelineRun]:
        query = select(PipelineRun).order_by(desc(PipelineRun.started_at)).limit(limit)
        return list(session.execute(query).scalars().all())
