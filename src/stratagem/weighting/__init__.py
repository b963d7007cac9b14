"""Per-strategy performance aggregation and unified weight computation."""

from stratagem.weighting.repository import (
    D1PerformanceRepository,
    MemoryPerformanceRepository,
    PerformanceRecord,
)
from stratagem.weighting.tracker import (
    NormalizationDriftError,
    SelectionResult,
    StrategyPerformanceTracker,
    StrategyWeight,
    WeightArtifact,
)

__all__ = [
    "PerformanceRecord",
    "MemoryPerformanceRepository",
    "D1PerformanceRepository",
    "StrategyPerformanceTracker",
    "StrategyWeight",
    "WeightArtifact",
    "SelectionResult",
    "NormalizationDriftError",
]
