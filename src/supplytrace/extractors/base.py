"""
Extractor Base

Shared retry/backoff policy and value normalization for all source extractors.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

import numpy as np
import pandas as pd

from config.settings import settings
from src.supplytrace.errors import ExtractionError
from src.supplytrace.models.records import SourceKind, is_missing
from src.supplytrace.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ExtractionWindow:
    """Half-open time window [start, end) bound into SQL window predicates."""
    start: datetime
    end: datetime

    @classmethod
    def trailing(cls, hours: int, end: Optional[datetime] = None) -> "ExtractionWindow":
        end = end or datetime.now(timezone.utc)
        return cls(start=end - timedelta(hours=hours), end=end)


def retry_with_backoff(
    operation: Callable[[], T],
    source_kind: SourceKind,
    transient: Tuple[Type[BaseException], ...],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run an extraction call, retrying transient failures with exponential backoff.

    Non-transient exceptions propagate unchanged on the first attempt. When all
    attempts fail transiently an ExtractionError(transient=True) is raised.

    Args:
        operation: Zero-argument callable performing the extraction
        source_kind: Source tag for logging and errors
        transient: Exception types considered retryable
        max_attempts: Total attempts including the first
        base_delay: Delay before the second attempt in seconds
        max_delay: Upper bound for any single delay
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever the operation returns
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except transient as e:
            last_exception = e
            if attempt < max_attempts:
                delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
                logger.warning(
                    "extraction_retry",
                    source_kind=source_kind.value,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    error=str(e),
                )
                sleep(delay)
            else:
                logger.error(
                    "extraction_failed_after_retries",
                    source_kind=source_kind.value,
                    max_attempts=max_attempts,
                    error=str(e),
                )

    raise ExtractionError(
        source_kind.value,
        f"transient failure persisted after {max_attempts} attempts: {last_exception}",
        transient=True,
    ) from last_exception


def normalize_value(value: Any) -> Any:
    """Convert pandas/numpy scalars into plain Python values, missing into None."""
    if isinstance(value, (list, dict)):
        return value
    if is_missing(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, np.generic):
        return value.item()
    return value


class BaseExtractor:
    """
    Common plumbing for extractors: retry policy, clock and record tagging.
    """

    source_kind: SourceKind
    transient_errors: Tuple[Type[BaseException], ...] = ()

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.max_attempts = max_attempts or settings.extract_max_attempts
        self.base_delay = settings.extract_backoff_seconds if base_delay is None else base_delay
        self.max_delay = settings.extract_backoff_max_seconds if max_delay is None else max_delay
        self.sleep = sleep
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _retry(self, operation: Callable[[], T]) -> T:
        return retry_with_backoff(
            operation,
            source_kind=self.source_kind,
            transient=self.transient_errors,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            sleep=self.sleep,
        )

    @staticmethod
    def _normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
        return {str(key): normalize_value(value) for key, value in row.items()}
