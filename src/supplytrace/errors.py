"""
Error taxonomy for the analytics pipeline.

Per-source and per-row errors are collected into run and load reports;
stage errors abort the run. Model errors are always raised to the caller.
"""
from typing import Optional


class SupplyTraceError(Exception):
    """Base error for all analytics pipeline failures."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)


class ExtractionError(SupplyTraceError):
    """Raised when a source cannot be read; aborts only that source's contribution."""

    def __init__(self, source_kind: str, message: str, transient: bool = False) -> None:
        super().__init__(f"[{source_kind}] {message}")
        self.source_kind = source_kind
        self.transient = transient


class CleaningError(SupplyTraceError):
    """Raised when a batch cannot be cleaned, usually schema drift upstream."""

    def __init__(self, message: str, source: Optional[str] = None) -> None:
        super().__init__(message if source is None else f"[{source}] {message}")
        self.source = source


class TransformationError(SupplyTraceError):
    """Raised when features cannot be derived from a clean batch."""


class LoadError(SupplyTraceError):
    """Per-row load failure, collected into LoadResult.failed."""

    def __init__(self, message: str, entity_id: Optional[str] = None, as_of=None) -> None:
        super().__init__(message)
        self.entity_id = entity_id
        self.as_of = as_of


class ModelNotFittedError(SupplyTraceError):
    """Raised when predict/detect is called before a model has been fitted or loaded."""

    def __init__(self, engine: str) -> None:
        super().__init__(f"{engine} has no fitted model; call fit/train_model or load an artifact first")
        self.engine = engine


class InvalidStateTransitionError(SupplyTraceError):
    """Raised when the orchestrator is asked to move to an unreachable state."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid run state transition: {current} -> {target}")
        self.current = current
        self.target = target
