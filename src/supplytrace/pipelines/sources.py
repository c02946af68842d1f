"""
Source Wiring

Builds the production sources (SQL products, MongoDB certifications, Kafka
sensor events) and a ready-to-run orchestrator from settings.
"""
from typing import List, Optional

from kafka import KafkaConsumer
from pymongo import MongoClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from config.settings import settings
from src.supplytrace.cleaning.data_cleaner import DataCleaner
from src.supplytrace.cleaning.profiles import (
    CERTIFICATION_PROFILE,
    PRODUCT_PROFILE,
    SENSOR_EVENT_PROFILE,
)
from src.supplytrace.db.models import AnalyticCertification, AnalyticProduct, AnalyticSensorEvent
from src.supplytrace.db.repository import PipelineRunRepository
from src.supplytrace.db.session import build_engine, get_session_factory
from src.supplytrace.etl.loaders import AnalyticLoader, ConcurrentLoader
from src.supplytrace.extractors.base import ExtractionWindow
from src.supplytrace.extractors.document_extractor import DocumentExtractor
from src.supplytrace.extractors.sql_extractor import SqlExtractor
from src.supplytrace.extractors.stream_extractor import StreamExtractor
from src.supplytrace.models.records import SourceKind
from src.supplytrace.pipelines.orchestrator import PipelineOrchestrator, SourceSpec
from src.supplytrace.transformers.feature_transformer import FeatureTransformer
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)


def create_source_engine() -> Engine:
    """Engine for the relational product/transfer database."""
    return build_engine(settings.source_database_url)


def create_mongo_client() -> MongoClient:
    return MongoClient(settings.mongo_url, serverSelectionTimeoutMS=5000)


def create_kafka_consumer() -> KafkaConsumer:
    """
    Consumer for the sensor event topic.

    Auto-commit is off; offsets are committed after the run has loaded.
    """
    return KafkaConsumer(
        settings.kafka_topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.kafka_consumer_group,
        enable_auto_commit=False,
        auto_offset_reset="earliest",
    )


def build_default_sources(
    source_engine: Optional[Engine] = None,
    mongo_client: Optional[MongoClient] = None,
    consumer: Optional[KafkaConsumer] = None,
) -> List[SourceSpec]:
    """
    Wire the three production sources.

    Args:
        source_engine: Relational source engine (created from settings if omitted)
        mongo_client: MongoDB client (created from settings if omitted)
        consumer: Kafka consumer (created from settings if omitted)

    Returns:
        SourceSpecs for products, certifications and sensor events
    """
    sql_extractor = SqlExtractor(source_engine or create_source_engine())
    document_extractor = DocumentExtractor(mongo_client or create_mongo_client(), settings.mongo_database)
    stream_extractor = StreamExtractor(consumer or create_kafka_consumer())

    def extract_products():
        window = ExtractionWindow.trailing(settings.extraction_window_hours)
        return sql_extractor.extract_sql(settings.product_query, window)

    def extract_certifications():
        return document_extractor.extract_documents(
            settings.certification_collection,
            dict(settings.certification_filter),
        )

    def extract_sensor_events():
        return stream_extractor.extract_stream(settings.stream_timeout_ms)

    sources = [
        SourceSpec(
            name="products",
            kind=SourceKind.SQL,
            extract=extract_products,
            profile=PRODUCT_PROFILE,
            transformer=FeatureTransformer("product_id", as_of_field="transfer_date"),
            target_table=AnalyticProduct.__tablename__,
        ),
        SourceSpec(
            name="certifications",
            kind=SourceKind.DOCUMENT,
            extract=extract_certifications,
            profile=CERTIFICATION_PROFILE,
            transformer=FeatureTransformer("_id", as_of_field="certification_date"),
            target_table=AnalyticCertification.__tablename__,
        ),
        SourceSpec(
            name="sensor_events",
            kind=SourceKind.STREAM,
            extract=extract_sensor_events,
            profile=SENSOR_EVENT_PROFILE,
            transformer=FeatureTransformer("device_id", as_of_field="timestamp"),
            target_table=AnalyticSensorEvent.__tablename__,
            on_loaded=stream_extractor.commit,
        ),
    ]
    logger.info("default_sources_built", sources=[source.name for source in sources])
    return sources


def build_orchestrator(
    sources: Optional[List[SourceSpec]] = None,
    session_factory: Optional[sessionmaker] = None,
    record_runs: bool = True,
) -> PipelineOrchestrator:
    """
    Assemble an orchestrator writing to the analytic store from settings.
    """
    session_factory = session_factory or get_session_factory()
    loader = ConcurrentLoader(AnalyticLoader(session_factory), max_workers=settings.loader_max_workers)
    return PipelineOrchestrator(
        sources=sources if sources is not None else build_default_sources(),
        cleaner=DataCleaner(),
        loader=loader,
        run_repository=PipelineRunRepository(session_factory) if record_runs else None,
    )
