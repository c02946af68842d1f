"""
Extractors Package

Batch extraction from the relational, document and streaming sources.
"""
from src.supplytrace.extractors.base import ExtractionWindow, retry_with_backoff
from src.supplytrace.extractors.sql_extractor import SqlExtractor
from src.supplytrace.extractors.document_extractor import DocumentExtractor
from src.supplytrace.extractors.stream_extractor import StreamExtractor

__all__ = [
    "ExtractionWindow",
    "retry_with_backoff",
    "SqlExtractor",
    "DocumentExtractor",
    "StreamExtractor",
]
