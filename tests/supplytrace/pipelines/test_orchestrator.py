"""
Tests for Pipeline Orchestrator

Runs the full Extract -> Clean -> Transform -> Load pass against fake
sources and a temporary SQLite analytic store.
"""
import threading
from datetime import datetime, timedelta

import pytest
import structlog

from src.supplytrace.cleaning.data_cleaner import DataCleaner
from src.supplytrace.cleaning.profiles import PRODUCT_PROFILE, SENSOR_EVENT_PROFILE
from src.supplytrace.db.repository import AnalyticRowRepository, PipelineRunRepository
from src.supplytrace.db.session import build_engine, create_all_tables, create_session_factory, get_db_session
from src.supplytrace.errors import ExtractionError, InvalidStateTransitionError
from src.supplytrace.etl.loaders import AnalyticLoader, ConcurrentLoader
from src.supplytrace.models.records import RawRecord, SourceKind
from src.supplytrace.models.results import RunStatus
from src.supplytrace.pipelines.orchestrator import NO_RECORDS, PipelineOrchestrator, RunState, SourceSpec
from src.supplytrace.transformers import FeatureTransformer

NOW = datetime(2024, 3, 1, 12, 0)


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'analytics.db'}")
    create_all_tables(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def loader(session_factory):
    return ConcurrentLoader(AnalyticLoader(session_factory), max_workers=2)


def product_records():
    return [
        RawRecord(
            source_kind=SourceKind.SQL,
            source_name="products",
            extracted_at=NOW,
            data={
                "product_id": f"P{i}",
                "name": f"Product {i}",
                "category": "Electronics",
                "price": 10.0 + i,
                "quantity": 5 + i,
                "manufacturing_date": datetime(2024, 1, 1),
                "shelf_life_days": 90,
                "transfer_date": datetime(2024, 2, 1) + timedelta(days=i),
            },
        )
        for i in range(3)
    ]


def sensor_records():
    return [
        RawRecord(
            source_kind=SourceKind.STREAM,
            source_name="supplychain_events",
            extracted_at=NOW,
            data={
                "device_id": "D1",
                "product_id": "P1",
                "timestamp": datetime(2024, 3, 1, 11, minute),
                "temperature": 4.0 + minute / 10,
                "humidity": 50.0,
                "weight": 12.0,
                "distance": 100.0 + minute,
            },
        )
        for minute in range(4)
    ]


def raise_extraction(kind):
    def extract():
        raise ExtractionError(kind, "connection refused", transient=True)
    return extract


class Acknowledger:
    def __init__(self, error=None):
        self.calls = 0
        self.error = error

    def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error


def make_sources(products=product_records, sensors=sensor_records, on_loaded=None):
    return [
        SourceSpec(
            name="products",
            kind=SourceKind.SQL,
            extract=products,
            profile=PRODUCT_PROFILE,
            transformer=FeatureTransformer("product_id", as_of_field="transfer_date"),
            target_table="analytics_products",
        ),
        SourceSpec(
            name="sensor_events",
            kind=SourceKind.STREAM,
            extract=sensors,
            profile=SENSOR_EVENT_PROFILE,
            transformer=FeatureTransformer("device_id", as_of_field="timestamp"),
            target_table="analytics_sensor_events",
            on_loaded=on_loaded,
        ),
    ]


def make_orchestrator(sources, loader, run_repository=None):
    return PipelineOrchestrator(
        sources,
        cleaner=DataCleaner(knn_neighbors=3),
        loader=loader,
        run_repository=run_repository,
        clock=lambda: NOW,
    )


def count_rows(session_factory, table):
    with get_db_session(session_factory) as session:
        return AnalyticRowRepository(table).count(session)


class TestSuccessfulRuns:
    """Tests for completed and degraded runs."""

    def test_completed_run(self, loader, session_factory):
        ack = Acknowledger()
        runs = PipelineRunRepository(session_factory)
        orchestrator = make_orchestrator(make_sources(on_loaded=ack), loader, run_repository=runs)

        report = orchestrator.run()

        assert report.status == RunStatus.COMPLETED
        assert orchestrator.state == RunState.COMPLETED
        assert report.records_extracted == 7
        assert report.records_cleaned == 7
        assert report.records_loaded == 7
        assert report.records_failed == 0
        assert report.per_source_errors == {}
        assert ack.calls == 1
        assert count_rows(session_factory, "analytics_products") == 3
        assert count_rows(session_factory, "analytics_sensor_events") == 4

        with get_db_session(session_factory) as session:
            stored = runs.get_by_run_id(session, report.run_id)
            assert stored.status == "completed"
            assert stored.records_loaded == 7

    def test_rejected_records_are_reported(self, loader, session_factory):
        """Records without their identifier are dropped in cleaning and counted."""
        def products_with_orphan():
            records = product_records()
            orphan = records[0].data.copy()
            del orphan["product_id"]
            return records + [records[0].model_copy(update={"data": orphan})]

        runs = PipelineRunRepository(session_factory)
        report = make_orchestrator(make_sources(products=products_with_orphan), loader, run_repository=runs).run()

        assert report.status == RunStatus.COMPLETED
        assert report.records_extracted == 8
        assert report.records_rejected == 1
        assert report.records_cleaned == 7
        assert report.records_loaded == 7
        assert report.to_dict()["records_rejected"] == 1
        with get_db_session(session_factory) as session:
            assert runs.get_by_run_id(session, report.run_id).records_rejected == 1

    def test_features_reach_the_store(self, loader, session_factory):
        report = make_orchestrator(make_sources(), loader).run()

        assert report.status == RunStatus.COMPLETED
        with get_db_session(session_factory) as session:
            product = AnalyticRowRepository("analytics_products").get(session, "P0", datetime(2024, 2, 1))
            assert product.age_days == 60
            assert product.is_expired is False
            assert product.avg_transfer_interval is None

    def test_rerun_does_not_duplicate_rows(self, loader, session_factory):
        orchestrator = make_orchestrator(make_sources(), loader)

        orchestrator.run()
        orchestrator.run()

        assert count_rows(session_factory, "analytics_products") == 3
        assert count_rows(session_factory, "analytics_sensor_events") == 4

    def test_failed_source_degrades_run(self, loader, session_factory):
        ack = Acknowledger()
        sources = make_sources(sensors=raise_extraction("stream"), on_loaded=ack)

        report = make_orchestrator(sources, loader).run()

        assert report.status == RunStatus.DEGRADED
        assert "sensor_events" in report.per_source_errors
        assert "connection refused" in report.per_source_errors["sensor_events"]
        assert report.records_loaded == 3
        assert ack.calls == 0
        assert count_rows(session_factory, "analytics_products") == 3

    def test_empty_source_degrades_run(self, loader):
        report = make_orchestrator(make_sources(sensors=lambda: []), loader).run()

        assert report.status == RunStatus.DEGRADED
        assert report.per_source_errors == {"sensor_events": NO_RECORDS}
        assert report.records_loaded == 3

    def test_failed_acknowledgement_degrades_run(self, loader):
        ack = Acknowledger(error=ExtractionError("stream", "offset commit failed"))

        report = make_orchestrator(make_sources(on_loaded=ack), loader).run()

        assert report.status == RunStatus.DEGRADED
        assert report.records_loaded == 7
        assert "offset commit failed" in report.per_source_errors["sensor_events"]


class TestFailedRuns:
    """Tests for runs that end failed."""

    def test_all_sources_failed(self, loader, session_factory):
        sources = make_sources(products=raise_extraction("sql"), sensors=raise_extraction("stream"))

        report = make_orchestrator(sources, loader).run()

        assert report.status == RunStatus.FAILED
        assert set(report.per_source_errors) == {"products", "sensor_events"}
        assert report.records_loaded == 0

    def test_schema_drift_fails_run_before_loading(self, loader, session_factory):
        def drifted_sensors():
            return [
                RawRecord(
                    source_kind=SourceKind.STREAM,
                    source_name="supplychain_events",
                    extracted_at=NOW,
                    data={"sensor": "D1", "temperature": 4.0},
                )
            ]

        report = make_orchestrator(make_sources(sensors=drifted_sensors), loader).run()

        assert report.status == RunStatus.FAILED
        assert "device_id" in report.error
        assert count_rows(session_factory, "analytics_products") == 0

    def test_unexpected_error_propagates(self, loader):
        def broken():
            raise RuntimeError("driver bug")

        orchestrator = make_orchestrator(make_sources(products=broken), loader)

        with pytest.raises(RuntimeError):
            orchestrator.run()

        assert orchestrator.state == RunState.FAILED


class TestCancellation:
    """Tests for cancelled runs."""

    def test_cancel_before_run(self, loader, session_factory):
        orchestrator = make_orchestrator(make_sources(), loader)
        orchestrator.cancel()

        report = orchestrator.run()

        assert report.status == RunStatus.CANCELLED
        assert report.records_extracted == 0
        assert count_rows(session_factory, "analytics_products") == 0

    def test_cancel_during_extraction(self, loader, session_factory):
        orchestrator = None

        def cancelling_products():
            orchestrator.cancel()
            return product_records()

        orchestrator = make_orchestrator(make_sources(products=cancelling_products), loader)

        report = orchestrator.run()

        assert report.status == RunStatus.CANCELLED
        assert report.records_loaded == 0
        assert count_rows(session_factory, "analytics_products") == 0

    def test_next_run_after_cancel(self, loader):
        orchestrator = make_orchestrator(make_sources(), loader)
        orchestrator.cancel()
        orchestrator.run()

        assert orchestrator.run().status == RunStatus.COMPLETED


class TestStateMachine:
    """Tests for state transitions and construction."""

    def test_invalid_transition(self, loader):
        orchestrator = make_orchestrator(make_sources(), loader)

        with pytest.raises(InvalidStateTransitionError):
            orchestrator._transition(RunState.LOADING)

        assert orchestrator.state == RunState.IDLE

    def test_terminal_states_have_no_exits(self, loader):
        orchestrator = make_orchestrator(make_sources(), loader)
        orchestrator.run()

        with pytest.raises(InvalidStateTransitionError):
            orchestrator._transition(RunState.CANCELLED)

    def test_run_rejected_while_another_is_in_progress(self, loader):
        """The run is claimed as soon as run() starts; a second caller is refused."""
        entered = threading.Event()
        release = threading.Event()
        observed = {}

        def blocking_products():
            entered.set()
            release.wait(timeout=10)
            return product_records()

        orchestrator = make_orchestrator(make_sources(products=blocking_products), loader)
        worker = threading.Thread(target=lambda: observed.setdefault("report", orchestrator.run()))
        worker.start()
        assert entered.wait(timeout=10)

        try:
            assert orchestrator.state == RunState.EXTRACTING
            with pytest.raises(InvalidStateTransitionError):
                orchestrator.run()
            assert orchestrator.state == RunState.EXTRACTING
        finally:
            release.set()
            worker.join(timeout=30)

        assert observed["report"].status == RunStatus.COMPLETED
        assert orchestrator.state == RunState.COMPLETED

    def test_run_id_bound_in_extraction_threads(self, loader):
        seen = []

        def products():
            seen.append(structlog.contextvars.get_contextvars().get("run_id"))
            return product_records()

        report = make_orchestrator(make_sources(products=products), loader).run()

        assert seen == [report.run_id]
        assert "run_id" not in structlog.contextvars.get_contextvars()

    def test_duplicate_source_names(self, loader):
        sources = make_sources()
        sources[1].name = "products"

        with pytest.raises(ValueError):
            make_orchestrator(sources, loader)

    def test_no_sources(self, loader):
        with pytest.raises(ValueError):
            make_orchestrator([], loader)
