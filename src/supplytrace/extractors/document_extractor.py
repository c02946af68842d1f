"""
Document Extractor

Pulls certification documents from the document store.
"""
from typing import Any, Dict, List, Optional

from pymongo import MongoClient
from pymongo.errors import AutoReconnect, PyMongoError, ServerSelectionTimeoutError

from src.supplytrace.errors import ExtractionError
from src.supplytrace.extractors.base import BaseExtractor
from src.supplytrace.models.records import RawRecord, SourceKind
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)


class DocumentExtractor(BaseExtractor):
    """Extract documents matching a filter from a MongoDB collection."""

    source_kind = SourceKind.DOCUMENT
    # NetworkTimeout is a subclass of AutoReconnect
    transient_errors = (AutoReconnect, ServerSelectionTimeoutError)

    def __init__(self, client: MongoClient, database: str, **kwargs):
        super().__init__(**kwargs)
        self.client = client
        self.database = database

    def extract_documents(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[RawRecord]:
        """
        Fetch all documents in a collection matching a filter.

        Args:
            collection: Collection name
            filter: MongoDB filter document

        Returns:
            List of RawRecord, document _id stringified
        """
        query = dict(filter or {})

        def _find() -> List[Dict[str, Any]]:
            return list(self.client[self.database][collection].find(query))

        try:
            documents = self._retry(_find)
        except ExtractionError:
            raise
        except PyMongoError as e:
            logger.error("document_extraction_failed", collection=collection, error=str(e))
            raise ExtractionError(self.source_kind.value, f"find on {collection} failed: {e}") from e

        extracted_at = self.clock()
        records = []
        for document in documents:
            data = self._normalize_row(document)
            if "_id" in data:
                data["_id"] = str(data["_id"])
            records.append(
                RawRecord(
                    source_kind=self.source_kind,
                    source_name=collection,
                    extracted_at=extracted_at,
                    data=data,
                )
            )

        logger.info("documents_extracted", collection=collection, count=len(records))
        return records
