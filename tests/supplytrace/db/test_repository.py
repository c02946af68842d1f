"""
Tests for Repository Pattern

Tests analytic row upserts, payload reads and the pipeline run log on SQLite.
"""
from datetime import datetime

import pytest

from src.supplytrace.db.models import AnalyticProduct, AnalyticSensorEvent, get_table_model
from src.supplytrace.db.repository import AnalyticRowRepository, PipelineRunRepository
from src.supplytrace.db.session import (
    build_engine,
    create_all_tables,
    create_session_factory,
    get_db_session,
    health_check,
)
from src.supplytrace.models.records import AnalyticRow
from src.supplytrace.models.results import RunReport, RunStatus


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


def product_row(entity_id="P1", as_of=datetime(2024, 1, 1), **payload):
    payload.setdefault("price", 10.0)
    return AnalyticRow(
        table="analytics_products",
        entity_id=entity_id,
        as_of=as_of,
        payload={"product_id": entity_id, **payload},
        quality_flags=("imputed",),
    )


class TestAnalyticRowRepository:
    """Tests for AnalyticRowRepository."""

    def test_upsert_inserts_row(self, session_factory):
        repository = AnalyticRowRepository("analytics_products")

        with get_db_session(session_factory) as session:
            repository.upsert(session, product_row(category="Electronics", age_days=12), run_id="run-1")

        with get_db_session(session_factory) as session:
            stored = repository.get(session, "P1", datetime(2024, 1, 1))
            assert stored.price == 10.0
            assert stored.category == "Electronics"
            assert stored.age_days == 12
            assert stored.quality_flags == ["imputed"]
            assert stored.run_id == "run-1"
            assert stored.payload["product_id"] == "P1"

    def test_upsert_is_idempotent(self, session_factory):
        """Loading the same key twice leaves one row with the latest values."""
        repository = AnalyticRowRepository("analytics_products")

        with get_db_session(session_factory) as session:
            repository.upsert(session, product_row(price=10.0))
        with get_db_session(session_factory) as session:
            repository.upsert(session, product_row(price=12.5), run_id="run-2")

        with get_db_session(session_factory) as session:
            assert repository.count(session) == 1
            stored = repository.get(session, "P1", datetime(2024, 1, 1))
            assert stored.price == 12.5
            assert stored.payload["price"] == 12.5
            assert stored.run_id == "run-2"

    def test_same_entity_different_as_of(self, session_factory):
        repository = AnalyticRowRepository(AnalyticProduct)

        with get_db_session(session_factory) as session:
            repository.upsert(session, product_row(as_of=datetime(2024, 1, 1)))
            repository.upsert(session, product_row(as_of=datetime(2024, 1, 2)))

        with get_db_session(session_factory) as session:
            assert repository.count(session) == 2

    def test_fetch_payloads_order_and_limit(self, session_factory):
        repository = AnalyticRowRepository(AnalyticSensorEvent)

        with get_db_session(session_factory) as session:
            for day in (3, 1, 2):
                repository.upsert(session, AnalyticRow(
                    table="analytics_sensor_events",
                    entity_id="D1",
                    as_of=datetime(2024, 1, day),
                    payload={"temperature": float(day)},
                ))

        with get_db_session(session_factory) as session:
            everything = repository.fetch_payloads(session)
            newest = repository.fetch_payloads(session, limit=2)
            recent = repository.fetch_payloads(session, since=datetime(2024, 1, 2))

        assert [payload["temperature"] for payload in everything] == [1.0, 2.0, 3.0]
        assert [payload["temperature"] for payload in newest] == [2.0, 3.0]
        assert len(recent) == 2
        assert everything[0]["entity_id"] == "D1"
        assert everything[0]["as_of"] == datetime(2024, 1, 1)

    def test_unknown_table(self):
        with pytest.raises(ValueError):
            AnalyticRowRepository("analytics_unknown")
        with pytest.raises(ValueError):
            get_table_model("products")


class TestPipelineRunRepository:
    """Tests for PipelineRunRepository."""

    def test_record_and_read_back(self, session_factory):
        repository = PipelineRunRepository(session_factory)
        report = RunReport(
            run_id="abc123",
            started=datetime(2024, 1, 1, 0, 0),
            ended=datetime(2024, 1, 1, 0, 1),
            status=RunStatus.DEGRADED,
            records_extracted=10,
            records_loaded=9,
            records_failed=1,
            per_source_errors={"sensor_events": "no records extracted"},
        )

        repository.record(report)

        with get_db_session(session_factory) as session:
            run = repository.get_by_run_id(session, "abc123")
            assert run.status == "degraded"
            assert run.records_loaded == 9
            assert run.per_source_errors == {"sensor_events": "no records extracted"}
            assert run.details["records_failed"] == 1
            assert [recent.run_id for recent in repository.get_recent(session)] == ["abc123"]

    def test_missing_run(self, session_factory):
        repository = PipelineRunRepository(session_factory)
        with get_db_session(session_factory) as session:
            assert repository.get_by_run_id(session, "nope") is None


class TestSession:
    """Tests for session helpers."""

    def test_health_check(self, session_factory):
        assert health_check(session_factory) is True

    def test_session_rolls_back_on_error(self, session_factory):
        repository = AnalyticRowRepository("analytics_products")

        with pytest.raises(RuntimeError):
            with get_db_session(session_factory) as session:
                repository.upsert(session, product_row())
                raise RuntimeError("boom")

        with get_db_session(session_factory) as session:
            assert repository.count(session) == 0
