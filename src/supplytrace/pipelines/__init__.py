"""
Pipelines Package

Run orchestration and production source wiring.
"""
from src.supplytrace.pipelines.orchestrator import (
    PipelineOrchestrator,
    RunState,
    SourceSpec,
)

__all__ = ["PipelineOrchestrator", "RunState", "SourceSpec"]
