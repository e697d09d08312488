"""
Coordinator package.

- AnalysisCoordinator: phase-boundary and failure decisions, watchdog,
  cancel / retry / stale-run sweep
- AnalysisPipeline: wires store, runtime, coordinator and agents together
"""

from tradeflow.coordinator.coordinator import AnalysisCoordinator
from tradeflow.coordinator.pipeline import (
    AnalysisPipeline,
    PipelineConfig,
    PipelineResult,
    run_analysis,
)

__all__ = [
    "AnalysisCoordinator",
    "AnalysisPipeline",
    "PipelineConfig",
    "PipelineResult",
    "run_analysis",
]
