"""
ETL Loaders

Write AnalyticRows into the analytic store. Every row is upserted inside its
own SAVEPOINT so one bad row never takes the batch down with it, and every
row that does not land is reported back with the reason.
"""
import contextvars
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Mapping, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from config.settings import settings
from src.supplytrace.db.repository import AnalyticRowRepository
from src.supplytrace.errors import LoadError
from src.supplytrace.models.records import AnalyticRow
from src.supplytrace.models.results import LoadResult
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)

CANCELLED = "cancelled"


def _row_error(row: AnalyticRow, message: str) -> LoadError:
    return LoadError(message, entity_id=row.entity_id, as_of=row.as_of)


class AnalyticLoader:
    """
    Load one batch of rows into one analytic table.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        logger.info("analytic_loader_initialized")

    def load(
        self,
        rows: Sequence[AnalyticRow],
        target_table: str,
        cancel_event: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> LoadResult:
        """
        Upsert rows into target_table.

        Args:
            rows: Rows to write
            target_table: Analytic table name
            cancel_event: When set, remaining rows are reported as cancelled
            run_id: Pipeline run stamped on each written row

        Returns:
            LoadResult where succeeded + len(failed) == len(rows)
        """
        rows = list(rows)
        result = LoadResult(table=target_table)

        try:
            repository = AnalyticRowRepository(target_table)
        except ValueError as e:
            result.failed.extend((row, _row_error(row, str(e))) for row in rows)
            logger.error("load_target_unknown", table=target_table, rows=len(rows))
            return result

        written: List[AnalyticRow] = []
        session = self.session_factory()
        try:
            for index, row in enumerate(rows):
                if cancel_event is not None and cancel_event.is_set():
                    pending = rows[index:]
                    result.failed.extend((item, _row_error(item, CANCELLED)) for item in pending)
                    logger.warning("load_cancelled", table=target_table, pending=len(pending))
                    break

                if row.table != target_table:
                    result.failed.append((row, _row_error(row, f"row targets {row.table}")))
                    continue

                savepoint = session.begin_nested()
                try:
                    repository.upsert(session, row, run_id=run_id)
                    savepoint.commit()
                    written.append(row)
                except SQLAlchemyError as e:
                    savepoint.rollback()
                    result.failed.append((row, _row_error(row, str(e))))
                    logger.warning(
                        "row_load_failed",
                        table=target_table,
                        entity_id=row.entity_id,
                        error=str(e),
                        error_type=type(e).__name__
                    )

            session.commit()
            result.succeeded = len(written)
        except SQLAlchemyError as e:
            session.rollback()
            result.failed.extend((row, _row_error(row, f"commit failed: {e}")) for row in written)
            result.succeeded = 0
            logger.error("batch_commit_failed", table=target_table, rows=len(written), error=str(e))
        finally:
            session.close()

        logger.info(
            "rows_loaded",
            table=target_table,
            succeeded=result.succeeded,
            failed=len(result.failed),
            cancelled=result.cancelled
        )
        return result


class ConcurrentLoader:
    """
    Load several tables in parallel on a bounded worker pool.

    Writes to the same table are serialized by a per-table lock; all tasks are
    joined before load_all returns.
    """

    def __init__(self, loader: AnalyticLoader, max_workers: Optional[int] = None):
        self.loader = loader
        self.max_workers = max_workers or settings.loader_max_workers
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _table_lock(self, table: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(table, threading.Lock())

    def _load_table(
        self,
        table: str,
        rows: List[AnalyticRow],
        cancel_event: Optional[threading.Event],
        run_id: Optional[str],
    ) -> LoadResult:
        with self._table_lock(table):
            return self.loader.load(rows, table, cancel_event=cancel_event, run_id=run_id)

    def load_all(
        self,
        batches: Mapping[str, Sequence[AnalyticRow]],
        cancel_event: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> List[LoadResult]:
        """
        Load every table's batch and wait for all of them.

        Args:
            batches: table -> rows
            cancel_event: Shared cancellation flag
            run_id: Pipeline run stamped on written rows

        Returns:
            One LoadResult per table, ordered by table name
        """
        results: List[LoadResult] = []
        if not batches:
            return results

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="loader") as executor:
            futures = {}
            for table, rows in batches.items():
                rows = list(rows)
                future = executor.submit(
                    contextvars.copy_context().run, self._load_table, table, rows, cancel_event, run_id
                )
                futures[future] = (table, rows)

            for future in as_completed(futures):
                table, rows = futures[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.error(
                        "table_load_task_failed",
                        table=table,
                        rows=len(rows),
                        error=str(e),
                        error_type=type(e).__name__
                    )
                    results.append(LoadResult(
                        table=table,
                        failed=[(row, _row_error(row, f"load task failed: {e}")) for row in rows],
                    ))

        results.sort(key=lambda result: result.table)
        return results
