"""
SQL Extractor

Pulls windowed batches of product/transfer rows from the relational source.
"""
from typing import List

import pandas as pd
from sqlalchemy import exc, text
from sqlalchemy.engine import Engine

from src.supplytrace.errors import ExtractionError
from src.supplytrace.extractors.base import BaseExtractor, ExtractionWindow
from src.supplytrace.models.records import RawRecord, SourceKind
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)


class SqlExtractor(BaseExtractor):
    """
    Extract rows from a SQL source with a time-window predicate.

    Queries bind the window through the :window_start and :window_end
    parameters.
    """

    source_kind = SourceKind.SQL
    transient_errors = (exc.OperationalError, exc.DisconnectionError, exc.TimeoutError)

    def __init__(self, engine: Engine, **kwargs):
        super().__init__(**kwargs)
        self.engine = engine
        logger.info("sql_extractor_initialized", dialect=engine.dialect.name)

    def extract_sql(
        self,
        query: str,
        window: ExtractionWindow,
        source_name: str = "products",
    ) -> List[RawRecord]:
        """
        Run a windowed query and return one RawRecord per result row.

        Args:
            query: SQL text using :window_start / :window_end
            window: Time window to bind
            source_name: Label recorded on each record

        Returns:
            List of RawRecord

        Raises:
            ExtractionError: Non-transient failure or retries exhausted
        """
        params = {"window_start": window.start, "window_end": window.end}

        def _read() -> pd.DataFrame:
            with self.engine.connect() as connection:
                return pd.read_sql(text(query), connection, params=params)

        try:
            frame = self._retry(_read)
        except ExtractionError:
            raise
        except exc.SQLAlchemyError as e:
            logger.error("sql_extraction_failed", source=source_name, error=str(e))
            raise ExtractionError(self.source_kind.value, f"query failed: {e}") from e

        extracted_at = self.clock()
        records = [
            RawRecord(
                source_kind=self.source_kind,
                source_name=source_name,
                extracted_at=extracted_at,
                data=self._normalize_row(row),
            )
            for row in frame.to_dict(orient="records")
        ]

        logger.info(
            "sql_records_extracted",
            source=source_name,
            count=len(records),
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
        )
        return records
