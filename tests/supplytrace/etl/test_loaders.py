"""
Tests for ETL Loaders

Tests per-row failure isolation, cancellation and concurrent table loads.
"""
import threading
from datetime import datetime, timedelta

import pytest
import structlog

from src.supplytrace.db.repository import AnalyticRowRepository
from src.supplytrace.db.session import build_engine, create_all_tables, create_session_factory, get_db_session
from src.supplytrace.etl.loaders import CANCELLED, AnalyticLoader, ConcurrentLoader
from src.supplytrace.models.records import AnalyticRow
from src.supplytrace.utils.logger import bind_run_context, clear_run_context

AS_OF = datetime(2024, 1, 1)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'analytics.db'}")
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def loader(session_factory):
    return AnalyticLoader(session_factory)


def make_row(entity_id, table="analytics_products", offset=0, **payload):
    return AnalyticRow(
        table=table,
        entity_id=entity_id,
        as_of=AS_OF + timedelta(hours=offset),
        payload=payload or {"price": 1.0},
    )


def count_rows(session_factory, table):
    with get_db_session(session_factory) as session:
        return AnalyticRowRepository(table).count(session)


class TestAnalyticLoader:
    """Tests for AnalyticLoader.load."""

    def test_all_rows_loaded(self, loader, session_factory):
        rows = [make_row(f"P{i}") for i in range(5)]

        result = loader.load(rows, "analytics_products", run_id="run-1")

        assert result.succeeded == 5
        assert result.failed == []
        assert count_rows(session_factory, "analytics_products") == 5

    def test_bad_row_isolated(self, loader, session_factory):
        """A row the database rejects fails alone; its neighbors still land."""
        bad = make_row("P2", extra=object())
        rows = [make_row("P1"), bad, make_row("P3")]

        result = loader.load(rows, "analytics_products")

        assert result.succeeded == 2
        assert len(result.failed) == 1
        failed_row, error = result.failed[0]
        assert failed_row is bad
        assert error.entity_id == "P2"
        assert result.attempted == len(rows)
        assert count_rows(session_factory, "analytics_products") == 2

    def test_row_for_other_table_rejected(self, loader):
        rows = [make_row("P1"), make_row("D1", table="analytics_sensor_events")]

        result = loader.load(rows, "analytics_products")

        assert result.succeeded == 1
        assert result.failed[0][0].entity_id == "D1"

    def test_unknown_table_fails_every_row(self, loader):
        rows = [make_row("P1", table="analytics_unknown"), make_row("P2", table="analytics_unknown")]

        result = loader.load(rows, "analytics_unknown")

        assert result.succeeded == 0
        assert len(result.failed) == 2

    def test_reload_is_idempotent(self, loader, session_factory):
        rows = [make_row("P1", price=1.0), make_row("P2", price=2.0)]

        loader.load(rows, "analytics_products")
        result = loader.load(rows, "analytics_products")

        assert result.succeeded == 2
        assert count_rows(session_factory, "analytics_products") == 2

    def test_cancelled_before_start(self, loader, session_factory):
        """Once cancelled, unattempted rows are reported, never dropped."""
        cancel = threading.Event()
        cancel.set()
        rows = [make_row(f"P{i}") for i in range(3)]

        result = loader.load(rows, "analytics_products", cancel_event=cancel)

        assert result.succeeded == 0
        assert result.cancelled == 3
        assert all(error.message == CANCELLED for _, error in result.failed)
        assert count_rows(session_factory, "analytics_products") == 0

    def test_cancelled_midway(self, loader, session_factory, monkeypatch):
        cancel = threading.Event()
        rows = [make_row(f"P{i}") for i in range(4)]
        original_upsert = AnalyticRowRepository.upsert

        def upsert_then_cancel(self, session, row, run_id=None):
            original_upsert(self, session, row, run_id=run_id)
            if row.entity_id == "P1":
                cancel.set()

        monkeypatch.setattr(AnalyticRowRepository, "upsert", upsert_then_cancel)

        result = loader.load(rows, "analytics_products", cancel_event=cancel)

        assert result.succeeded == 2
        assert result.cancelled == 2
        assert result.attempted == 4
        assert count_rows(session_factory, "analytics_products") == 2


class TestConcurrentLoader:
    """Tests for ConcurrentLoader.load_all."""

    def test_tables_loaded_in_parallel(self, loader, session_factory):
        batches = {
            "analytics_sensor_events": [make_row(f"D{i}", table="analytics_sensor_events", temperature=4.0)
                                        for i in range(20)],
            "analytics_products": [make_row(f"P{i}") for i in range(20)],
            "analytics_certifications": [make_row(f"C{i}", table="analytics_certifications", status="active")
                                         for i in range(5)],
        }

        results = ConcurrentLoader(loader, max_workers=3).load_all(batches, run_id="run-1")

        assert [result.table for result in results] == [
            "analytics_certifications",
            "analytics_products",
            "analytics_sensor_events",
        ]
        assert sum(result.succeeded for result in results) == 45
        assert all(not result.failed for result in results)
        assert count_rows(session_factory, "analytics_sensor_events") == 20

    def test_crashed_task_fails_its_rows(self, session_factory):
        class ExplodingLoader(AnalyticLoader):
            def load(self, rows, target_table, cancel_event=None, run_id=None):
                if target_table == "analytics_products":
                    raise RuntimeError("worker crashed")
                return super().load(rows, target_table, cancel_event=cancel_event, run_id=run_id)

        batches = {
            "analytics_products": [make_row("P1"), make_row("P2")],
            "analytics_sensor_events": [make_row("D1", table="analytics_sensor_events")],
        }

        results = ConcurrentLoader(ExplodingLoader(session_factory), max_workers=2).load_all(batches)

        products, sensors = results
        assert products.succeeded == 0
        assert len(products.failed) == 2
        assert sensors.succeeded == 1

    def test_worker_threads_inherit_log_context(self, session_factory):
        seen = {}

        class RecordingLoader(AnalyticLoader):
            def load(self, rows, target_table, cancel_event=None, run_id=None):
                seen[target_table] = structlog.contextvars.get_contextvars().get("run_id")
                return super().load(rows, target_table, cancel_event=cancel_event, run_id=run_id)

        batches = {
            "analytics_products": [make_row("P1")],
            "analytics_sensor_events": [make_row("D1", table="analytics_sensor_events")],
        }

        bind_run_context(run_id="run-7")
        try:
            ConcurrentLoader(RecordingLoader(session_factory), max_workers=2).load_all(batches)
        finally:
            clear_run_context()

        assert seen == {"analytics_products": "run-7", "analytics_sensor_events": "run-7"}

    def test_empty_batches(self, loader):
        assert ConcurrentLoader(loader).load_all({}) == []
