"""
Stream Extractor

Drains sensor and transfer events from a Kafka consumer group.

Delivery is at-least-once: offsets are committed only when the caller
acknowledges the batch through commit(), after it has been loaded. The
loader's idempotent upsert absorbs redelivered messages.
"""
import json
import time
from typing import Any, Callable, Dict, List, Optional

from kafka import KafkaConsumer
from kafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError, NoBrokersAvailable

from config.settings import settings
from src.supplytrace.errors import ExtractionError
from src.supplytrace.extractors.base import BaseExtractor
from src.supplytrace.models.records import RawRecord, SourceKind
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)


class StreamExtractor(BaseExtractor):
    """
    Drain whatever messages are available within a timeout.

    Never blocks past the timeout; an empty list is a normal result.
    """

    source_kind = SourceKind.STREAM
    transient_errors = (KafkaTimeoutError, KafkaConnectionError, NoBrokersAvailable)

    def __init__(
        self,
        consumer: KafkaConsumer,
        max_records: Optional[int] = None,
        monotonic: Callable[[], float] = time.monotonic,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.consumer = consumer
        self.max_records = max_records or settings.stream_max_records
        self.monotonic = monotonic

    def extract_stream(self, timeout_ms: Optional[int] = None) -> List[RawRecord]:
        """
        Poll until the timeout elapses or a poll returns nothing.

        Args:
            timeout_ms: Upper bound on the whole drain in milliseconds

        Returns:
            Consumed messages as RawRecords (possibly empty)
        """
        timeout_ms = settings.stream_timeout_ms if timeout_ms is None else timeout_ms
        deadline = self.monotonic() + timeout_ms / 1000.0
        extracted_at = self.clock()
        records: List[RawRecord] = []
        skipped = 0

        while True:
            remaining_ms = int((deadline - self.monotonic()) * 1000)
            if remaining_ms <= 0:
                break

            try:
                batch = self._retry(
                    lambda: self.consumer.poll(timeout_ms=remaining_ms, max_records=self.max_records)
                )
            except ExtractionError:
                raise
            except KafkaError as e:
                logger.error("stream_extraction_failed", error=str(e))
                raise ExtractionError(self.source_kind.value, f"poll failed: {e}") from e

            if not batch:
                break

            for partition_messages in batch.values():
                for message in partition_messages:
                    payload = self._decode(message.value)
                    if payload is None:
                        skipped += 1
                        logger.warning(
                            "stream_message_undecodable",
                            topic=message.topic,
                            partition=message.partition,
                            offset=message.offset,
                        )
                        continue
                    records.append(
                        RawRecord(
                            source_kind=self.source_kind,
                            source_name=message.topic,
                            extracted_at=extracted_at,
                            data=self._normalize_row(payload),
                        )
                    )

        logger.info(
            "stream_records_extracted",
            count=len(records),
            skipped=skipped,
            timeout_ms=timeout_ms,
        )
        return records

    def commit(self) -> None:
        """Commit consumed offsets once the batch has been loaded."""
        try:
            self.consumer.commit()
        except KafkaError as e:
            raise ExtractionError(self.source_kind.value, f"offset commit failed: {e}") from e
        logger.info("stream_offsets_committed")

    @staticmethod
    def _decode(value: Any) -> Optional[Dict[str, Any]]:
        if isinstance(value, dict):
            return value
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("utf-8", errors="replace")
        if isinstance(value, str):
            try:
                decoded = json.loads(value)
            except json.JSONDecodeError:
                return None
            return decoded if isinstance(decoded, dict) else None
        return None
