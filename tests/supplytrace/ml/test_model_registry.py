"""
Tests for Model Registry
"""
from datetime import datetime, timedelta, timezone

import pytest

from src.supplytrace.db.session import build_engine, create_all_tables, create_session_factory
from src.supplytrace.ml.training.model_registry import ModelRegistryManager

TRAINED = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    create_all_tables(engine)
    yield create_session_factory(engine)
    engine.dispose()


def register(registry, version, days=0, path="models/anomaly/x.joblib"):
    return registry.register_model(
        model_name="anomaly",
        version=version,
        artifact_path=str(path),
        training_date=TRAINED + timedelta(days=days),
        training_samples=100,
        metrics={"anomaly_rate": 0.1},
    )


class TestModelRegistryManager:
    """Tests for ModelRegistryManager."""

    def test_register_is_inactive(self, session_factory):
        with ModelRegistryManager(session_factory=session_factory) as registry:
            record = register(registry, "v1")
            assert record.is_active is False
            assert registry.get_active_model("anomaly") is None

    def test_promote_keeps_single_active_version(self, session_factory):
        with ModelRegistryManager(session_factory=session_factory) as registry:
            register(registry, "v1")
            register(registry, "v2", days=1)

            assert registry.promote_model("anomaly", "v1") is True
            assert registry.promote_model("anomaly", "v2") is True

            active = registry.get_active_model("anomaly")
            assert active.version == "v2"
            previous = registry.get_model_by_version("anomaly", "v1")
            assert previous.is_active is False
            assert previous.deprecated_at is not None

    def test_promote_unknown_version(self, session_factory):
        with ModelRegistryManager(session_factory=session_factory) as registry:
            assert registry.promote_model("anomaly", "missing") is False

    def test_list_models_newest_first(self, session_factory):
        with ModelRegistryManager(session_factory=session_factory) as registry:
            register(registry, "v1")
            register(registry, "v2", days=2)
            register(registry, "v3", days=1)

            assert [record.version for record in registry.list_models("anomaly")] == ["v2", "v3", "v1"]
            assert registry.list_models("predictive") == []

    def test_cleanup_keeps_newest_and_active(self, session_factory, tmp_path):
        files = []
        with ModelRegistryManager(session_factory=session_factory) as registry:
            for day in range(4):
                path = tmp_path / f"v{day}.joblib"
                path.write_bytes(b"artifact")
                files.append(path)
                register(registry, f"v{day}", days=day, path=path)
            registry.promote_model("anomaly", "v0")

            deleted = registry.cleanup_old_versions("anomaly", keep_count=2)

            assert deleted == 1
            assert sorted(record.version for record in registry.list_models("anomaly")) == ["v0", "v2", "v3"]

        assert files[0].exists()
        assert not files[1].exists()

    def test_external_session_not_closed(self, session_factory):
        session = session_factory()
        try:
            with ModelRegistryManager(session=session) as registry:
                register(registry, "v1")
            assert ModelRegistryManager(session=session).get_model_by_version("anomaly", "v1") is not None
        finally:
            session.close()
