"""
Pipeline Orchestrator

Runs one Extract -> Clean -> Transform -> Load pass over the configured
sources and reports the outcome.

State machine:
    idle -> extracting -> cleaning -> transforming -> loading -> completed
                                                              -> degraded
    extracting/cleaning/transforming/loading -> failed
    any non-terminal state -> cancelled

A run where some (not all) sources failed or came back empty still loads the
healthy sources and ends degraded. Cleaning and transformation errors end
the run as failed before anything is loaded. Runs are never retried here;
the scheduler decides when the next run happens.
"""
import contextvars
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from src.supplytrace.cleaning.data_cleaner import DataCleaner
from src.supplytrace.cleaning.profiles import CleaningProfile
from src.supplytrace.db.repository import PipelineRunRepository
from src.supplytrace.errors import (
    CleaningError,
    ExtractionError,
    InvalidStateTransitionError,
    TransformationError,
)
from src.supplytrace.etl.loaders import ConcurrentLoader
from src.supplytrace.models.records import AnalyticRow, RawRecord, SourceKind
from src.supplytrace.models.results import RunReport, RunStatus
from src.supplytrace.transformers.feature_transformer import FeatureTransformer
from src.supplytrace.utils.logger import bind_run_context, clear_run_context, get_logger

logger = get_logger(__name__)

NO_RECORDS = "no records extracted"


class RunState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    CLEANING = "cleaning"
    TRANSFORMING = "transforming"
    LOADING = "loading"
    COMPLETED = "completed"
    DEGRADED = "degraded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TRANSITIONS = {
    RunState.IDLE: {RunState.EXTRACTING, RunState.CANCELLED},
    RunState.EXTRACTING: {RunState.CLEANING, RunState.FAILED, RunState.CANCELLED},
    RunState.CLEANING: {RunState.TRANSFORMING, RunState.FAILED, RunState.CANCELLED},
    RunState.TRANSFORMING: {RunState.LOADING, RunState.FAILED, RunState.CANCELLED},
    RunState.LOADING: {RunState.COMPLETED, RunState.DEGRADED, RunState.FAILED, RunState.CANCELLED},
    RunState.COMPLETED: set(),
    RunState.DEGRADED: set(),
    RunState.FAILED: set(),
    RunState.CANCELLED: set(),
}

TERMINAL_STATES = frozenset(state for state, targets in TRANSITIONS.items() if not targets)


@dataclass
class SourceSpec:
    """
    One upstream source and how its records flow to the analytic store.

    Attributes:
        name: Unique source name, used as key in per-source errors
        kind: Source kind
        extract: Zero-argument call returning the source's RawRecords
        profile: Cleaning profile for the batch
        transformer: Feature derivation for the batch
        target_table: Analytic table the rows are loaded into
        on_loaded: Acknowledgement called once the source's rows are stored
    """
    name: str
    kind: SourceKind
    extract: Callable[[], List[RawRecord]]
    profile: CleaningProfile
    transformer: FeatureTransformer
    target_table: str
    on_loaded: Optional[Callable[[], None]] = None


class PipelineOrchestrator:
    """
    Drives a run through its states and assembles the RunReport.
    """

    def __init__(
        self,
        sources: Sequence[SourceSpec],
        cleaner: DataCleaner,
        loader: ConcurrentLoader,
        run_repository: Optional[PipelineRunRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        names = [source.name for source in sources]
        if not names:
            raise ValueError("At least one source is required")
        if len(set(names)) != len(names):
            raise ValueError(f"Source names must be unique: {names}")

        self.sources = list(sources)
        self.cleaner = cleaner
        self.loader = loader
        self.run_repository = run_repository
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.state = RunState.IDLE
        self._cancel_event = threading.Event()
        self._state_lock = threading.Lock()

    def cancel(self) -> None:
        """
        Request cancellation of the current (or next) run.

        Checked at every stage boundary and by the loader between rows;
        in-flight row upserts complete.
        """
        self._cancel_event.set()
        logger.warning("pipeline_cancel_requested", state=self.state.value)

    def _transition(self, target: RunState) -> None:
        with self._state_lock:
            if target not in TRANSITIONS[self.state]:
                raise InvalidStateTransitionError(self.state.value, target.value)
            logger.info("run_state_changed", from_state=self.state.value, to_state=target.value)
            self.state = target

    def _cancelled(self) -> bool:
        if self._cancel_event.is_set():
            self._transition(RunState.CANCELLED)
            return True
        return False

    def run(self) -> RunReport:
        """
        Execute one pipeline run.

        Returns:
            RunReport with a terminal status

        Raises:
            InvalidStateTransitionError: A run is already in progress
        """
        # Claim the run in the same critical section as the check.
        with self._state_lock:
            if self.state not in TERMINAL_STATES and self.state != RunState.IDLE:
                raise InvalidStateTransitionError(self.state.value, RunState.EXTRACTING.value)
            cancelled_early = self._cancel_event.is_set()
            self.state = RunState.CANCELLED if cancelled_early else RunState.EXTRACTING

        report = RunReport(run_id=uuid.uuid4().hex, started=self.clock())
        bind_run_context(run_id=report.run_id)
        logger.info("pipeline_run_started", sources=[source.name for source in self.sources])
        logger.info("run_state_changed", from_state=RunState.IDLE.value, to_state=self.state.value)

        try:
            if not cancelled_early:
                self._execute(report)
        except Exception as e:
            if RunState.FAILED in TRANSITIONS[self.state]:
                self._transition(RunState.FAILED)
            report.error = f"{type(e).__name__}: {e}"
            logger.exception("pipeline_run_crashed", error=str(e))
            raise
        finally:
            report.ended = self.clock()
            report.status = (
                RunStatus(self.state.value) if self.state in TERMINAL_STATES else RunStatus.FAILED
            )
            self._finish(report)

        return report

    def _finish(self, report: RunReport) -> None:
        summary = report.to_dict()
        summary.pop("run_id")
        logger.info("pipeline_run_finished", **summary)
        if self.run_repository is not None:
            try:
                self.run_repository.record(report)
            except SQLAlchemyError as e:
                logger.error("pipeline_run_record_failed", error=str(e), error_type=type(e).__name__)
        clear_run_context()
        self._cancel_event.clear()

    def _execute(self, report: RunReport) -> None:
        extracted = self._extract(report)
        failed_sources = len(self.sources) - len(extracted)
        if failed_sources == len(self.sources):
            report.error = "all sources failed extraction"
            self._transition(RunState.FAILED)
            return
        if self._cancelled():
            return

        self._transition(RunState.CLEANING)
        cleaned = {}
        for source in self.sources:
            records = extracted.get(source.name)
            if not records:
                continue
            try:
                result = self.cleaner.clean(records, source.profile)
            except CleaningError as e:
                report.error = e.message
                logger.error("pipeline_cleaning_failed", source=source.name, error=e.message)
                self._transition(RunState.FAILED)
                return
            cleaned[source.name] = result.records
            report.records_cleaned += len(result.records)
            report.records_rejected += result.rejected
            report.duplicates_removed += result.duplicates_removed
            report.outliers_removed += result.outliers_removed
        if self._cancelled():
            return

        self._transition(RunState.TRANSFORMING)
        now = self.clock()
        batches: Dict[str, List[AnalyticRow]] = {}
        for source in self.sources:
            records = cleaned.get(source.name)
            if not records:
                continue
            try:
                features = source.transformer.transform(records, now)
            except TransformationError as e:
                report.error = e.message
                logger.error("pipeline_transformation_failed", source=source.name, error=e.message)
                self._transition(RunState.FAILED)
                return
            rows = [AnalyticRow.from_feature_record(record, source.target_table) for record in features]
            batches.setdefault(source.target_table, []).extend(rows)
        if self._cancelled():
            return

        self._transition(RunState.LOADING)
        results = self.loader.load_all(batches, cancel_event=self._cancel_event, run_id=report.run_id)
        report.load_results = results
        report.records_loaded = sum(result.succeeded for result in results)
        report.records_failed = sum(len(result.failed) for result in results)
        if self._cancelled():
            return

        self._acknowledge(cleaned, report)
        self._transition(RunState.DEGRADED if report.per_source_errors else RunState.COMPLETED)

    def _extract(self, report: RunReport) -> Dict[str, List[RawRecord]]:
        """
        Extract every source concurrently.

        Returns:
            source name -> records for the sources that did not raise
        """
        extracted: Dict[str, List[RawRecord]] = {}
        with ThreadPoolExecutor(max_workers=len(self.sources), thread_name_prefix="extract") as executor:
            futures = {
                source.name: executor.submit(contextvars.copy_context().run, source.extract)
                for source in self.sources
            }
            for source in self.sources:
                try:
                    records = list(futures[source.name].result())
                except ExtractionError as e:
                    report.per_source_errors[source.name] = e.message
                    logger.error(
                        "source_extraction_failed",
                        source=source.name,
                        kind=source.kind.value,
                        transient=e.transient,
                        error=e.message
                    )
                    continue

                extracted[source.name] = records
                report.records_extracted += len(records)
                if not records:
                    report.per_source_errors[source.name] = NO_RECORDS
                    logger.warning("source_returned_no_records", source=source.name)

        return extracted

    def _acknowledge(self, cleaned: Dict[str, list], report: RunReport) -> None:
        """Call on_loaded for sources whose rows all reached the store."""
        failed_tables = {result.table for result in report.load_results if result.failed}
        for source in self.sources:
            if source.on_loaded is None or source.name not in cleaned:
                continue
            if source.target_table in failed_tables:
                logger.warning("source_acknowledgement_skipped", source=source.name, table=source.target_table)
                continue
            try:
                source.on_loaded()
            except ExtractionError as e:
                report.per_source_errors[source.name] = e.message
                logger.warning("source_acknowledgement_failed", source=source.name, error=e.message)
